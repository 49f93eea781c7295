"""
Bracket advancement: when a finals match is completed, put its winner and loser
into the downstream matches that list it as a source.

Slot writes are version-conditioned and never retried. Filling a slot that
already holds the same player is a no-op, so re-running advancement for a match
(retried request, repair tooling) cannot double-advance anyone. A slot holding a
different player is left alone and logged for manual repair.
"""
import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from kartops.errors import AdvancementConflictError, InvalidInputError, VersionConflict
from kartops.models.match import Match
from kartops.services import version_store
from kartops.services.bracket_builder import (
    BRACKET_GRAND_FINAL,
    ROLE_LOSER,
    ROLE_WINNER,
    ROUND_GRAND_FINAL,
    ROUND_GRAND_FINAL_RESET,
)
from kartops.services.scoring_rules import STAGE_FINALS, rules_for

logger = logging.getLogger(__name__)


def winner_and_loser(match: Match) -> Tuple[int, int]:
    """Player ids (winner, loser) of a completed finals match."""
    if not match.completed or match.score1 is None or match.score2 is None:
        raise InvalidInputError(f"Match {match.id} is not completed", field="match_id")
    outcome = rules_for(match.event_type).outcome(match.score1, match.score2, STAGE_FINALS)
    if outcome.winner == 1:
        return match.player1_id, match.player2_id
    if outcome.winner == 2:
        return match.player2_id, match.player1_id
    raise InvalidInputError(f"Finals match {match.id} has no winner ({match.score1}-{match.score2})", field="score1")


def _downstream(session: Session, match: Match) -> List[Match]:
    return list(
        session.exec(
            select(Match)
            .where(
                Match.tournament_id == match.tournament_id,
                Match.event_type == match.event_type,
                Match.stage == STAGE_FINALS,
                (Match.source1_match_number == match.match_number)
                | (Match.source2_match_number == match.match_number),
            )
            .order_by(Match.match_number)
            .execution_options(populate_existing=True)
        ).all()
    )


def _fill_slot(session: Session, target: Match, slot: int, player_id: int, source: Match) -> bool:
    """Write player_id into target's slot. Returns True if a write happened."""
    column = f"player{slot}_id"
    current = getattr(target, column)
    if current == player_id:
        return False
    if current is not None:
        logger.error(
            "Match %s slot %d already holds player %s; not overwriting with player %s from match %s",
            target.id,
            slot,
            current,
            player_id,
            source.id,
        )
        return False

    try:
        version_store.conditional_update(session, target.id, target.version, **{column: player_id})
    except VersionConflict:
        fresh = version_store.read(session, target.id)
        if getattr(fresh, column) == player_id:
            return False
        raise AdvancementConflictError(
            f"Match {target.id} changed while advancing match {source.id}; repair required",
            field=column,
            match_id=target.id,
        )
    logger.info("Advanced player %s from match %s into match %s slot %d", player_id, source.id, target.id, slot)
    return True


def _find_reset(session: Session, grand_final: Match) -> Optional[Match]:
    return session.exec(
        select(Match).where(
            Match.tournament_id == grand_final.tournament_id,
            Match.event_type == grand_final.event_type,
            Match.stage == STAGE_FINALS,
            Match.round == ROUND_GRAND_FINAL_RESET,
        )
    ).first()


def _create_reset(session: Session, grand_final: Match) -> Optional[Match]:
    """Grand final lost by the winners-bracket champion: add the deciding rematch."""
    if _find_reset(session, grand_final):
        return None

    last_number = session.exec(
        select(func.max(Match.match_number)).where(
            Match.tournament_id == grand_final.tournament_id,
            Match.event_type == grand_final.event_type,
            Match.stage == STAGE_FINALS,
        )
    ).one()
    reset = Match(
        tournament_id=grand_final.tournament_id,
        event_type=grand_final.event_type,
        stage=STAGE_FINALS,
        match_number=(last_number or 0) + 1,
        bracket=BRACKET_GRAND_FINAL,
        round=ROUND_GRAND_FINAL_RESET,
        player1_id=grand_final.player1_id,
        player2_id=grand_final.player2_id,
        source1_match_number=grand_final.match_number,
        source1_role=ROLE_LOSER,
        source2_match_number=grand_final.match_number,
        source2_role=ROLE_WINNER,
    )
    session.add(reset)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        if _find_reset(session, grand_final):
            return None
        raise AdvancementConflictError(
            f"Could not create the grand final reset after match {grand_final.id}", field="match_number"
        )
    session.refresh(reset)
    logger.info("Grand final %s won from the losers bracket; created reset match %s", grand_final.id, reset.id)
    return reset


def advance_from(session: Session, match_id: int) -> List[int]:
    """
    Propagate a completed finals match into the bracket.

    Returns ids of matches that were written (slot fills and a newly created
    grand-final reset). Matches outside a bracket advance nothing.
    """
    match = version_store.read(session, match_id)
    if match.stage != STAGE_FINALS or match.bracket is None:
        return []

    winner_id, loser_id = winner_and_loser(match)
    affected: List[int] = []

    for target in _downstream(session, match):
        for slot in (1, 2):
            if getattr(target, f"source{slot}_match_number") != match.match_number:
                continue
            role = getattr(target, f"source{slot}_role")
            player_id = winner_id if role == ROLE_WINNER else loser_id
            if _fill_slot(session, target, slot, player_id, match):
                affected.append(target.id)
                target = version_store.read(session, target.id)

    if match.round == ROUND_GRAND_FINAL:
        if winner_id == match.player1_id:
            logger.info("Grand final %s won by the winners-bracket champion %s", match.id, winner_id)
        else:
            reset = _create_reset(session, match)
            if reset:
                affected.append(reset.id)

    return affected
