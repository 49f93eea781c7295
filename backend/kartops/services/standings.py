"""
Qualification standings.

Aggregates are never adjusted incrementally: recalculate() rebuilds a player's row
from every completed qualification match they played, so re-running it (after a
retry, a partial failure, or an admin correction) always converges on the same
numbers.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlmodel import Session, select

from kartops.errors import NotFoundError
from kartops.models.match import Match
from kartops.models.qualification import Qualification
from kartops.services import version_store
from kartops.services.scoring_rules import (
    RESULT_LOSS,
    RESULT_TIE,
    RESULT_WIN,
    STAGE_QUALIFICATION,
    EventType,
    rules_for,
)

logger = logging.getLogger(__name__)

_AGGREGATE_FIELDS = ("mp", "wins", "ties", "losses", "win_rounds", "loss_rounds", "points", "score")


def get_qualification(session: Session, tournament_id: int, event_type: str, player_id: int) -> Optional[Qualification]:
    return session.exec(
        select(Qualification).where(
            Qualification.tournament_id == tournament_id,
            Qualification.event_type == event_type,
            Qualification.player_id == player_id,
            Qualification.deleted_at.is_(None),
        )
    ).first()


def compute_aggregates(matches: List[Match], player_id: int, event_type: str) -> dict:
    """Fold a player's completed matches into the aggregate columns of a Qualification row."""
    rules = rules_for(event_type)
    totals = dict.fromkeys(_AGGREGATE_FIELDS, 0)

    for match in matches:
        if match.score1 is None or match.score2 is None:
            logger.warning("Completed match %s has no confirmed score; skipped in standings", match.id)
            continue
        if match.player1_id == player_id:
            mine, theirs = match.score1, match.score2
            result = rules.outcome(match.score1, match.score2, match.stage).result1
        elif match.player2_id == player_id:
            mine, theirs = match.score2, match.score1
            result = rules.outcome(match.score1, match.score2, match.stage).result2
        else:
            continue

        totals["mp"] += 1
        totals["win_rounds"] += mine
        totals["loss_rounds"] += theirs
        if result == RESULT_WIN:
            totals["wins"] += 1
        elif result == RESULT_TIE:
            totals["ties"] += 1
        elif result == RESULT_LOSS:
            totals["losses"] += 1

    if rules.event_type == EventType.GP:
        totals["points"] = totals["win_rounds"]
    else:
        totals["points"] = totals["win_rounds"] - totals["loss_rounds"]
    totals["score"] = 2 * totals["wins"] + totals["ties"]
    return totals


def recalculate(session: Session, tournament_id: int, event_type: str, player_id: int) -> Qualification:
    """Replace a player's qualification aggregates with a full recount."""
    qualification = get_qualification(session, tournament_id, event_type, player_id)
    if not qualification:
        raise NotFoundError(
            f"Player {player_id} has no {event_type} qualification entry in tournament {tournament_id}",
            field="player_id",
        )

    matches = version_store.find_many(
        session,
        tournament_id,
        event_type=event_type,
        stage=STAGE_QUALIFICATION,
        player_id=player_id,
        completed=True,
    )
    totals = compute_aggregates(matches, player_id, event_type)

    changed = any(getattr(qualification, name) != value for name, value in totals.items())
    if changed:
        for name, value in totals.items():
            setattr(qualification, name, value)
        qualification.updated_at = datetime.utcnow()
        session.add(qualification)
        session.commit()
        session.refresh(qualification)
    return qualification


def recalculate_for_match(session: Session, match: Match) -> List[Qualification]:
    """Recount both participants of a qualification match. Finals matches do not touch standings."""
    if match.stage != STAGE_QUALIFICATION:
        return []
    updated = []
    for player_id in (match.player1_id, match.player2_id):
        if player_id is None:
            continue
        updated.append(recalculate(session, match.tournament_id, match.event_type, player_id))
    return updated


def _sort_key(q: Qualification):
    return (q.group_name or "", -q.score, -q.points, q.seeding if q.seeding is not None else 10**6, q.player_id)


def ranked_standings(session: Session, tournament_id: int, event_type: str) -> List[Tuple[int, Qualification]]:
    """
    Standings as (rank, qualification) pairs, grouped by group_name.

    Ranks restart at 1 in each group; players level on score and points share a rank.
    """
    rows = session.exec(
        select(Qualification).where(
            Qualification.tournament_id == tournament_id,
            Qualification.event_type == event_type,
            Qualification.deleted_at.is_(None),
        )
    ).all()
    rows = sorted(rows, key=_sort_key)

    ranked: List[Tuple[int, Qualification]] = []
    prev = None
    rank = 0
    position_in_group = 0
    for q in rows:
        if prev is None or prev.group_name != q.group_name:
            position_in_group = 1
            rank = 1
        else:
            position_in_group += 1
            if (q.score, q.points) != (prev.score, prev.points):
                rank = position_in_group
        ranked.append((rank, q))
        prev = q
    return ranked


def seeding_order(ranked: List[Tuple[int, Qualification]]) -> List[int]:
    """
    Flatten grouped standings into one seed list.

    Group winners come first (in group order), then every group's runner-up, and so
    on; within a rank tier the better score/points goes first.
    """
    placed = []
    group_positions = {}
    for _, q in ranked:
        pos = group_positions.get(q.group_name, 0) + 1
        group_positions[q.group_name] = pos
        placed.append((pos, -q.score, -q.points, q.group_name or "", q.player_id))
    placed.sort()
    return [player_id for *_, player_id in placed]
