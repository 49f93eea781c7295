"""
Dual-report score reconciliation.

Each player reports the match result independently. A report is stored in that
player's reported_* columns with a version-conditioned write; once both reports
are in, reconcile() compares them:

  - identical (aggregate and per-race detail): confirmed and completed
  - same aggregate, different per-race detail: "races" mismatch
  - different aggregate: "score" mismatch

Mismatches stay open until an admin sets the score with admin_set_score().
Neither side is ever picked automatically.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlmodel import Session

from kartops.auth import CallerIdentity
from kartops.errors import (
    AlreadyCompletedError,
    DisputedError,
    InvalidInputError,
    UnauthorizedError,
)
from kartops.models.match import Match
from kartops.services import audit, version_store
from kartops.services.match_lifecycle import (
    CompletionEffects,
    MatchState,
    match_state,
    on_match_completed,
)
from kartops.services.scoring_rules import (
    EventRules,
    EventType,
    MatchOutcome,
    ReportedResult,
    rules_for,
    validate_character,
)

logger = logging.getLogger(__name__)

STATUS_WAITING = "waiting"
STATUS_AUTO_CONFIRMED = "auto_confirmed"
STATUS_MISMATCH = "mismatch"

MISMATCH_SCORE = "score"
MISMATCH_RACES = "races"


@dataclass(frozen=True)
class PlayerReport:
    score1: int
    score2: int
    races: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"score1": self.score1, "score2": self.score2, "races": self.races}


@dataclass(frozen=True)
class Decision:
    status: str
    waiting_for: Optional[int] = None
    mismatch_kind: Optional[str] = None
    confirmed: Optional[PlayerReport] = None
    outcome: Optional[MatchOutcome] = None


@dataclass
class ReportResult:
    status: str
    match: Match
    waiting_for: Optional[int] = None
    mismatch_kind: Optional[str] = None
    player1_report: Optional[PlayerReport] = None
    player2_report: Optional[PlayerReport] = None
    effects: Optional[CompletionEffects] = None

    @property
    def auto_confirmed(self) -> bool:
        return self.status == STATUS_AUTO_CONFIRMED

    @property
    def mismatch(self) -> bool:
        return self.status == STATUS_MISMATCH


def reported(match: Match, player: int) -> Optional[PlayerReport]:
    score1 = getattr(match, f"player{player}_reported_score1")
    score2 = getattr(match, f"player{player}_reported_score2")
    if score1 is None or score2 is None:
        return None
    return PlayerReport(score1=score1, score2=score2, races=getattr(match, f"player{player}_reported_races"))


def reconcile(match: Match, rules: Optional[EventRules] = None) -> Decision:
    """
    Decide what the two stored reports mean. Pure; reads only the match passed in.

    Per-race detail is compared only when both players sent it. If just one did,
    the aggregates decide and the detailed report supplies the confirmed races.
    """
    rules = rules or rules_for(match.event_type)
    report1 = reported(match, 1)
    report2 = reported(match, 2)
    if report1 is None:
        return Decision(status=STATUS_WAITING, waiting_for=1)
    if report2 is None:
        return Decision(status=STATUS_WAITING, waiting_for=2)

    if (report1.score1, report1.score2) != (report2.score1, report2.score2):
        return Decision(status=STATUS_MISMATCH, mismatch_kind=MISMATCH_SCORE)
    if report1.races is not None and report2.races is not None and report1.races != report2.races:
        return Decision(status=STATUS_MISMATCH, mismatch_kind=MISMATCH_RACES)

    races = report1.races if report1.races is not None else report2.races
    confirmed = PlayerReport(score1=report1.score1, score2=report1.score2, races=races)
    return Decision(
        status=STATUS_AUTO_CONFIRMED,
        confirmed=confirmed,
        outcome=rules.outcome(confirmed.score1, confirmed.score2, match.stage),
    )


def _check_reporting_player(reporting_player: Any) -> int:
    if reporting_player not in (1, 2) or isinstance(reporting_player, bool):
        raise InvalidInputError("reporting_player must be 1 or 2", field="reporting_player")
    return reporting_player


def _report_fields(player: int, report: ReportedResult) -> Dict[str, Any]:
    return {
        f"player{player}_reported_score1": report.score1,
        f"player{player}_reported_score2": report.score2,
        f"player{player}_reported_races": report.details,
    }


def _write_side_records(
    session: Session,
    match: Match,
    player: int,
    payload: Mapping[str, Any],
    report: ReportedResult,
    character: Optional[str],
) -> None:
    player_id = getattr(match, f"player{player}_id")
    audit.log_score_entry(
        session,
        tournament_id=match.tournament_id,
        match_id=match.id,
        event_type=match.event_type,
        player_id=player_id,
        reported_data={
            "reporting_player": player,
            "score1": report.score1,
            "score2": report.score2,
            "races": report.details,
            "cup": report.cup,
            "character": character,
        },
    )
    if character:
        audit.log_character_usage(session, match.id, match.event_type, player_id, character)


def report_score(
    session: Session,
    match_id: int,
    reporting_player: int,
    payload: Mapping[str, Any],
    caller: CallerIdentity,
    max_attempts: Optional[int] = None,
) -> ReportResult:
    """
    Record one player's report and reconcile it against the other player's.

    Checks run in order: match exists, match not completed, payload is valid,
    caller may report for that side, both players are assigned. The report write
    and the confirmation write are each retried on version conflicts up to
    max_attempts times.
    """
    reporting_player = _check_reporting_player(reporting_player)
    match = version_store.read(session, match_id)
    if match.completed:
        raise AlreadyCompletedError(f"Match {match_id} is already completed")

    rules = rules_for(match.event_type)
    report = rules.parse_report(payload, match.stage)
    character = validate_character(payload.get("character"))
    if not caller.may_report_for(getattr(match, f"player{reporting_player}_id")):
        raise UnauthorizedError(f"Not allowed to report as player {reporting_player} for match {match_id}")
    if not match.is_playable:
        raise InvalidInputError(f"Match {match_id} is not ready: both players must be assigned", field="match_id")

    def write_report() -> Match:
        current = version_store.read(session, match_id)
        if current.completed:
            raise AlreadyCompletedError(f"Match {match_id} is already completed")
        if match_state(current) == MatchState.DISPUTED:
            raise DisputedError(f"Match {match_id} has conflicting reports; an admin must set the score")
        fields = _report_fields(reporting_player, report)
        if report.cup and current.cup is None:
            fields["cup"] = report.cup
        return version_store.conditional_update(session, match_id, current.version, **fields)

    match = version_store.run_with_retries(write_report, max_attempts, description="score report")
    logger.info(
        "Player %d reported %d-%d for match %s (%s %s)",
        reporting_player,
        report.score1,
        report.score2,
        match_id,
        match.event_type,
        match.stage,
    )

    _write_side_records(session, match, reporting_player, payload, report, character)

    def confirm() -> Tuple[Match, Decision, bool]:
        current = version_store.read(session, match_id)
        if current.completed:
            # The other report's request confirmed it first
            confirmed = PlayerReport(current.score1, current.score2, current.rounds)
            return current, Decision(status=STATUS_AUTO_CONFIRMED, confirmed=confirmed), False
        decision = reconcile(current, rules)
        if decision.status != STATUS_AUTO_CONFIRMED:
            return current, decision, False
        updated = version_store.conditional_update(
            session,
            match_id,
            current.version,
            score1=decision.confirmed.score1,
            score2=decision.confirmed.score2,
            rounds=decision.confirmed.races,
            completed=True,
            completed_at=datetime.utcnow(),
        )
        return updated, decision, True

    match, decision, completed_here = version_store.run_with_retries(
        confirm, max_attempts, description="score confirmation"
    )

    result = ReportResult(
        status=decision.status,
        match=match,
        waiting_for=decision.waiting_for,
        mismatch_kind=decision.mismatch_kind,
    )
    if decision.status == STATUS_MISMATCH:
        result.player1_report = reported(match, 1)
        result.player2_report = reported(match, 2)
        logger.warning("Reports for match %s disagree (%s); waiting for an admin", match_id, decision.mismatch_kind)
    elif completed_here:
        logger.info("Match %s auto-confirmed at %d-%d", match_id, match.score1, match.score2)
        result.effects = on_match_completed(session, match)
        match = version_store.read(session, match_id)
        result.match = match
    return result


def admin_set_score(
    session: Session,
    match_id: int,
    score1: int,
    score2: int,
    rounds: Optional[List[Dict[str, Any]]],
    caller: CallerIdentity,
    completed: bool = True,
    max_attempts: Optional[int] = None,
) -> Match:
    """
    Set the confirmed score directly, bypassing the dual report.

    Used to settle disputes and to correct completed matches. Goes through the
    same version-conditioned write and, when completing, the same downstream
    recalculation as an auto-confirmed report.
    """
    match = version_store.read(session, match_id)
    if not caller.is_admin:
        raise UnauthorizedError("Only admins can set match scores directly")
    if match.completed and not completed:
        raise AlreadyCompletedError(f"Match {match_id} is completed and cannot be reopened")
    if not match.is_playable:
        raise InvalidInputError(f"Match {match_id} is not ready: both players must be assigned", field="match_id")

    rules = rules_for(match.event_type)
    detail_key = "races" if rules.event_type == EventType.GP else "rounds"
    payload: Dict[str, Any] = {"score1": score1, "score2": score2, detail_key: rounds}
    if rules.event_type == EventType.GP and rounds is None:
        rules.validate_scores(score1, score2, match.stage)
        report = ReportedResult(score1=score1, score2=score2)
    else:
        report = rules.parse_report(payload, match.stage)

    previous = {"score1": match.score1, "score2": match.score2, "completed": match.completed}

    def write_score() -> Match:
        current = version_store.read(session, match_id)
        if current.completed and not completed:
            raise AlreadyCompletedError(f"Match {match_id} is completed and cannot be reopened")
        return version_store.conditional_update(
            session,
            match_id,
            current.version,
            score1=report.score1,
            score2=report.score2,
            rounds=report.details,
            completed=completed,
            completed_at=datetime.utcnow() if completed else None,
        )

    match = version_store.run_with_retries(write_score, max_attempts, description="admin score")
    logger.info("Admin set match %s to %d-%d (completed=%s)", match_id, report.score1, report.score2, completed)

    audit.record_audit(
        session,
        "ADMIN_SET_SCORE",
        "match",
        match_id,
        actor=caller.actor,
        details={"previous": previous, "score1": report.score1, "score2": report.score2, "completed": completed},
    )

    if completed:
        on_match_completed(session, match)
    return version_store.read(session, match_id)
