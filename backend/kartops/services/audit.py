"""
Best-effort side records: score entry log, character usage, audit trail.

None of these may block a score report or a bracket operation. A failed write is
rolled back and logged as a warning; the caller carries on. The readers at the
bottom serve the admin views over these records.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from kartops.models.logs import AuditLog, CharacterUsage, ScoreEntryLog
from kartops.models.match import Match
from kartops.services.scoring_rules import rules_for

logger = logging.getLogger(__name__)


def _write_best_effort(session: Session, record: SQLModel, what: str) -> bool:
    try:
        session.add(record)
        session.commit()
        return True
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("Failed to write %s: %s", what, exc)
        return False


def log_score_entry(
    session: Session,
    tournament_id: int,
    match_id: int,
    event_type: str,
    player_id: Optional[int],
    reported_data: Dict[str, Any],
) -> bool:
    entry = ScoreEntryLog(
        tournament_id=tournament_id,
        match_id=match_id,
        event_type=event_type,
        player_id=player_id,
        reported_data=reported_data,
    )
    return _write_best_effort(session, entry, f"score entry log for match {match_id}")


def log_character_usage(session: Session, match_id: int, event_type: str, player_id: int, character: str) -> bool:
    usage = CharacterUsage(match_id=match_id, event_type=event_type, player_id=player_id, character=character)
    return _write_best_effort(session, usage, f"character usage for match {match_id}")


def record_audit(
    session: Session,
    action: str,
    target_type: str,
    target_id: Optional[int],
    actor: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    row = AuditLog(action=action, target_type=target_type, target_id=target_id, actor=actor, details=details)
    return _write_best_effort(session, row, f"audit log {action} for {target_type} {target_id}")


def score_entry_logs(session: Session, tournament_id: int) -> Dict[int, List[ScoreEntryLog]]:
    """Every submitted report for a tournament, grouped by match, newest first."""
    logs = session.exec(
        select(ScoreEntryLog)
        .where(ScoreEntryLog.tournament_id == tournament_id)
        .order_by(ScoreEntryLog.created_at.desc(), ScoreEntryLog.id.desc())
    ).all()
    by_match: Dict[int, List[ScoreEntryLog]] = {}
    for log in logs:
        by_match.setdefault(log.match_id, []).append(log)
    return by_match


@dataclass
class CharacterStat:
    character: str
    match_count: int = 0
    win_count: int = 0

    @property
    def win_rate(self) -> float:
        return self.win_count / self.match_count if self.match_count else 0.0


def _won(match: Optional[Match], player_id: int) -> bool:
    if match is None or not match.completed or match.score1 is None or match.score2 is None:
        return False
    outcome = rules_for(match.event_type).outcome(match.score1, match.score2, match.stage)
    if outcome.winner == 1:
        return match.player1_id == player_id
    if outcome.winner == 2:
        return match.player2_id == player_id
    return False


def character_stats(session: Session, player_id: int) -> List[CharacterStat]:
    """Matches played and won per character, most used first."""
    usages = session.exec(
        select(CharacterUsage).where(CharacterUsage.player_id == player_id).order_by(CharacterUsage.id)
    ).all()
    stats: Dict[str, CharacterStat] = {}
    for usage in usages:
        stat = stats.setdefault(usage.character, CharacterStat(character=usage.character))
        stat.match_count += 1
        if _won(session.get(Match, usage.match_id), player_id):
            stat.win_count += 1
    return sorted(stats.values(), key=lambda s: (-s.match_count, s.character))
