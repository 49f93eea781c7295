"""
Time Attack entries: per-course times, totals and stage rankings.

Entry edits are version-conditioned like match writes, but are not retried: the
client sends the version it last saw and gets a 409 if someone else got there
first. Ranks are derived data and rewritten without bumping the version.

Stage flow: qualification ranks 17-24 go to revival_1, ranks 13-16 plus the
revival_1 survivors to revival_2, ranks 1-12 plus the revival_2 survivors to
the finals. Revival rounds knock out the slowest player per course until four
are left. Finals rounds take a life from the slower half; lives reset when 8, 4
or 2 players remain.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from kartops.auth import CallerIdentity
from kartops.constants import COURSES
from kartops.errors import ConflictError, InvalidInputError, NotFoundError, UnauthorizedError
from kartops.models.player import Player
from kartops.models.time_trial_entry import TimeTrialEntry
from kartops.models.tournament import Tournament
from kartops.services import audit
from kartops.utils.time_format import parse_time, total_time

logger = logging.getLogger(__name__)

TA_STAGE_QUALIFICATION = "qualification"
TA_STAGE_REVIVAL_1 = "revival_1"
TA_STAGE_REVIVAL_2 = "revival_2"
TA_STAGE_FINALS = "finals"
TA_STAGES = (TA_STAGE_QUALIFICATION, TA_STAGE_REVIVAL_1, TA_STAGE_REVIVAL_2, TA_STAGE_FINALS)

FINALS_LIVES = 3
REVIVAL_LIVES = 1
REVIVAL_SURVIVORS = 4
LIFE_RESET_AT = (8, 4, 2)

# Qualification rank band feeding each later stage
PROMOTION_BANDS = {
    TA_STAGE_REVIVAL_1: (17, 24),
    TA_STAGE_REVIVAL_2: (13, 16),
    TA_STAGE_FINALS: (1, 12),
}


def _check_stage(stage: str) -> str:
    if stage not in TA_STAGES:
        raise InvalidInputError(f"Unknown Time Attack stage: {stage}", field="stage")
    return stage


def get_entry(session: Session, entry_id: int) -> TimeTrialEntry:
    entry = session.get(TimeTrialEntry, entry_id, populate_existing=True)
    if not entry:
        raise NotFoundError(f"Time Attack entry {entry_id} not found", field="entry_id")
    return entry


def list_entries(session: Session, tournament_id: int, stage: str) -> List[TimeTrialEntry]:
    return list(
        session.exec(
            select(TimeTrialEntry)
            .where(TimeTrialEntry.tournament_id == tournament_id, TimeTrialEntry.stage == _check_stage(stage))
            .order_by(TimeTrialEntry.id)
            .execution_options(populate_existing=True)
        ).all()
    )


def add_entries(
    session: Session,
    tournament_id: int,
    player_ids: Sequence[int],
    stage: str = TA_STAGE_QUALIFICATION,
    caller: Optional[CallerIdentity] = None,
) -> List[TimeTrialEntry]:
    """Register players for a Time Attack stage; already registered players are left as they are."""
    if caller is not None and not caller.is_admin:
        raise UnauthorizedError("Only admins can add Time Attack entries")
    tournament = session.get(Tournament, tournament_id)
    if not tournament or tournament.deleted_at is not None:
        raise NotFoundError(f"Tournament {tournament_id} not found", field="tournament_id")
    _check_stage(stage)

    existing = {e.player_id: e for e in list_entries(session, tournament_id, stage)}
    added = []
    for i, player_id in enumerate(player_ids):
        player = session.get(Player, player_id)
        if not player or player.deleted_at is not None:
            raise NotFoundError(f"Player {player_id} not found", field=f"player_ids[{i}]")
        if player_id in existing:
            continue
        entry = TimeTrialEntry(tournament_id=tournament_id, player_id=player_id, stage=stage)
        session.add(entry)
        existing[player_id] = entry
        added.append(entry)
    session.commit()
    for entry in added:
        session.refresh(entry)
    return added


def _merge_times(current: Optional[Mapping[str, str]], changes: Mapping[str, Optional[str]]) -> Dict[str, str]:
    merged = dict(current or {})
    for course, value in changes.items():
        if course not in COURSES:
            raise InvalidInputError(f"Unknown course '{course}'", field=f"times.{course}")
        if value is None or not str(value).strip():
            merged.pop(course, None)
            continue
        if parse_time(value) is None:
            raise InvalidInputError(f"Invalid time '{value}', expected M:SS.mmm", field=f"times.{course}")
        merged[course] = value.strip()
    return merged


def update_entry_times(
    session: Session,
    entry_id: int,
    expected_version: int,
    times: Mapping[str, Optional[str]],
    caller: Optional[CallerIdentity] = None,
) -> TimeTrialEntry:
    """
    Merge course times into an entry (empty value clears a course) and re-rank its stage.

    total_time is only set once all 20 courses have a time.
    """
    entry = get_entry(session, entry_id)
    if caller is not None and not caller.may_report_for(entry.player_id):
        raise UnauthorizedError(f"Not allowed to edit Time Attack entry {entry_id}")

    merged = _merge_times(entry.times, times)
    total = total_time(merged, COURSES)

    result = session.execute(
        update(TimeTrialEntry)
        .where(TimeTrialEntry.id == entry_id, TimeTrialEntry.version == expected_version)
        .values(times=merged, total_time=total, version=TimeTrialEntry.version + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise ConflictError(
            f"Time Attack entry {entry_id} was modified by someone else; refresh and try again", field="version"
        )
    session.commit()

    recalculate_ranks(session, entry.tournament_id, entry.stage)
    return get_entry(session, entry_id)


def _rank_key(stage: str):
    if stage == TA_STAGE_FINALS:
        # Survivors first, then more lives, then faster total
        return lambda e: (e.eliminated, -e.lives, e.total_time is None, e.total_time or 0, e.id)
    return lambda e: (e.eliminated, e.total_time is None, e.total_time or 0, e.id)


def ranked_entries(session: Session, tournament_id: int, stage: str) -> List[TimeTrialEntry]:
    """Entries of a stage in rank order, without writing anything."""
    return sorted(list_entries(session, tournament_id, stage), key=_rank_key(stage))


def recalculate_ranks(session: Session, tournament_id: int, stage: str) -> List[TimeTrialEntry]:
    """
    Rewrite ranks for a stage and return entries in rank order.

    Outside the finals only entries with a complete total are ranked.
    """
    entries = sorted(list_entries(session, tournament_id, stage), key=_rank_key(stage))
    rank = 0
    for entry in entries:
        if stage == TA_STAGE_FINALS or entry.total_time is not None:
            rank += 1
            new_rank = rank
        else:
            new_rank = None
        if entry.rank != new_rank:
            entry.rank = new_rank
            session.add(entry)
    session.commit()
    logger.debug("Re-ranked %d Time Attack entries for tournament %s stage %s", len(entries), tournament_id, stage)
    return entries


# (from_stage, to_stage) moves that promote() accepts
PROMOTIONS = (
    (TA_STAGE_QUALIFICATION, TA_STAGE_REVIVAL_1),
    (TA_STAGE_QUALIFICATION, TA_STAGE_REVIVAL_2),
    (TA_STAGE_QUALIFICATION, TA_STAGE_FINALS),
    (TA_STAGE_REVIVAL_1, TA_STAGE_REVIVAL_2),
    (TA_STAGE_REVIVAL_2, TA_STAGE_FINALS),
)


@dataclass
class PromotionResult:
    entries: List[TimeTrialEntry] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)  # player ids without a total time


@dataclass
class RoundResult:
    eliminated: List[int] = field(default_factory=list)
    lost_life: List[int] = field(default_factory=list)
    lives_reset: bool = False
    remaining: int = 0


def _require_admin(caller: Optional[CallerIdentity], what: str) -> None:
    if caller is not None and not caller.is_admin:
        raise UnauthorizedError(f"Only admins can {what}")


def _promotion_candidates(
    session: Session,
    tournament_id: int,
    from_stage: str,
    ranks: Optional[Tuple[int, int]],
) -> List[TimeTrialEntry]:
    ordered = ranked_entries(session, tournament_id, from_stage)
    if from_stage != TA_STAGE_QUALIFICATION:
        survivors = [e for e in ordered if not e.eliminated]
        if ranks is None:
            return survivors[:REVIVAL_SURVIVORS]
        ordered = survivors
    first, last = ranks
    return [e for e in ordered if e.rank is not None and first <= e.rank <= last]


def promote(
    session: Session,
    tournament_id: int,
    from_stage: str,
    to_stage: str,
    ranks: Optional[Tuple[int, int]] = None,
    caller: Optional[CallerIdentity] = None,
) -> PromotionResult:
    """
    Copy ranked players from one stage into a later one.

    ranks is an inclusive (first, last) band of from_stage ranks. Without it,
    qualification promotes its default band for to_stage and a revival stage
    promotes its top four survivors. Revival entries keep their times and start
    on one life; finals entries start clean on three lives. Players without a
    total time are reported as skipped, players already in to_stage are left alone.
    """
    _require_admin(caller, "promote Time Attack players")
    tournament = session.get(Tournament, tournament_id)
    if not tournament or tournament.deleted_at is not None:
        raise NotFoundError(f"Tournament {tournament_id} not found", field="tournament_id")
    _check_stage(from_stage)
    _check_stage(to_stage)
    if (from_stage, to_stage) not in PROMOTIONS:
        raise InvalidInputError(f"Cannot promote from {from_stage} to {to_stage}", field="to_stage")
    if ranks is None and from_stage == TA_STAGE_QUALIFICATION:
        ranks = PROMOTION_BANDS[to_stage]
    if ranks is not None:
        first, last = ranks
        if first < 1 or last < first:
            raise InvalidInputError(f"Invalid rank band {first}-{last}", field="ranks")

    candidates = _promotion_candidates(session, tournament_id, from_stage, ranks)
    if not candidates:
        raise InvalidInputError(f"No {from_stage} players to promote to {to_stage}", field="ranks")

    already = {e.player_id for e in list_entries(session, tournament_id, to_stage)}
    result = PromotionResult()
    for source in candidates:
        if source.total_time is None:
            result.skipped.append(source.player_id)
            continue
        if source.player_id in already:
            continue
        if to_stage == TA_STAGE_FINALS:
            entry = TimeTrialEntry(
                tournament_id=tournament_id, player_id=source.player_id, stage=to_stage, lives=FINALS_LIVES
            )
        else:
            entry = TimeTrialEntry(
                tournament_id=tournament_id,
                player_id=source.player_id,
                stage=to_stage,
                times=dict(source.times or {}),
                total_time=source.total_time,
                rank=source.rank,
                lives=REVIVAL_LIVES,
            )
        session.add(entry)
        already.add(source.player_id)
        result.entries.append(entry)
    session.commit()

    recalculate_ranks(session, tournament_id, to_stage)
    logger.info(
        "Promoted %d players from %s to %s for tournament %s (%d skipped)",
        len(result.entries),
        from_stage,
        to_stage,
        tournament_id,
        len(result.skipped),
    )
    audit.record_audit(
        session,
        "PROMOTE_TA",
        "tournament",
        tournament_id,
        actor=caller.actor if caller else None,
        details={
            "from_stage": from_stage,
            "to_stage": to_stage,
            "ranks": list(ranks) if ranks else None,
            "player_ids": [e.player_id for e in result.entries],
            "skipped": result.skipped,
        },
    )
    return result


def _parse_round_times(active: Sequence[TimeTrialEntry], results: Mapping[int, str]) -> Dict[int, int]:
    active_ids = {e.player_id for e in active}
    missing = sorted(active_ids - set(results))
    extra = sorted(set(results) - active_ids)
    if missing or extra:
        raise InvalidInputError(
            f"Round needs exactly one time per active player (missing {missing}, not active {extra})",
            field="results",
        )
    parsed = {}
    for player_id, value in results.items():
        ms = parse_time(value)
        if ms is None:
            raise InvalidInputError(f"Invalid time '{value}', expected M:SS.mmm", field=f"results.{player_id}")
        parsed[player_id] = ms
    return parsed


def _write_round_state(session: Session, entry: TimeTrialEntry, lives: int, eliminated: bool) -> None:
    result = session.execute(
        update(TimeTrialEntry)
        .where(TimeTrialEntry.id == entry.id, TimeTrialEntry.version == entry.version)
        .values(lives=lives, eliminated=eliminated, version=TimeTrialEntry.version + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise ConflictError(
            f"Time Attack entry {entry.id} was modified by someone else; refresh and try again", field="version"
        )


def record_round(
    session: Session,
    tournament_id: int,
    stage: str,
    results: Mapping[int, str],
    caller: Optional[CallerIdentity] = None,
) -> RoundResult:
    """
    Apply one course of a revival or finals stage. results maps every active
    player id to their time on the course.

    Revival: the slowest player is eliminated while more than four remain.
    Finals: the slower half each lose a life and are out at zero; when 8, 4 or
    2 players remain everyone goes back to three lives. Equal times go against
    the player with the worse current rank.
    """
    _require_admin(caller, "record Time Attack rounds")
    _check_stage(stage)
    if stage == TA_STAGE_QUALIFICATION:
        raise InvalidInputError("Qualification has no elimination rounds", field="stage")

    active = [e for e in ranked_entries(session, tournament_id, stage) if not e.eliminated]
    floor = 1 if stage == TA_STAGE_FINALS else REVIVAL_SURVIVORS
    if len(active) <= floor:
        return RoundResult(remaining=len(active))

    times = _parse_round_times(active, results)
    slowest_last = sorted(
        active, key=lambda e: (times[e.player_id], e.rank if e.rank is not None else len(active) + 1, e.id)
    )

    outcome = RoundResult()
    if stage == TA_STAGE_FINALS:
        cut = math.ceil(len(slowest_last) / 2)
        new_state = {e.id: (e.lives, False) for e in slowest_last}
        for entry in slowest_last[cut:]:
            lives = max(entry.lives - 1, 0)
            new_state[entry.id] = (lives, lives == 0)
            outcome.lost_life.append(entry.player_id)
            if lives == 0:
                outcome.eliminated.append(entry.player_id)
        survivors = [e for e in slowest_last if not new_state[e.id][1]]
        if len(survivors) in LIFE_RESET_AT:
            for entry in survivors:
                new_state[entry.id] = (FINALS_LIVES, False)
            outcome.lives_reset = True
        outcome.remaining = len(survivors)
        for entry in slowest_last:
            if new_state[entry.id] != (entry.lives, entry.eliminated):
                _write_round_state(session, entry, *new_state[entry.id])
    else:
        slowest = slowest_last[-1]
        _write_round_state(session, slowest, 0, True)
        outcome.eliminated.append(slowest.player_id)
        outcome.remaining = len(active) - 1
    session.commit()

    recalculate_ranks(session, tournament_id, stage)
    logger.info(
        "Time Attack %s round for tournament %s: eliminated %s, %d remaining",
        stage,
        tournament_id,
        outcome.eliminated,
        outcome.remaining,
    )
    audit.record_audit(
        session,
        "TA_ROUND",
        "tournament",
        tournament_id,
        actor=caller.actor if caller else None,
        details={
            "stage": stage,
            "times": {str(pid): ms for pid, ms in times.items()},
            "eliminated": outcome.eliminated,
            "lost_life": outcome.lost_life,
            "lives_reset": outcome.lives_reset,
        },
    )
    return outcome
