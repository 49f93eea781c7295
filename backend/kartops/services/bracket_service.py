"""
Finals bracket persistence: seed from qualification standings, build the plan and
store every shell as a finals Match row carrying its upstream edges.
"""
import logging
from typing import List, Optional

from sqlmodel import Session

from kartops.auth import CallerIdentity
from kartops.config import get_settings
from kartops.errors import ConflictError, InvalidInputError, NotFoundError, UnauthorizedError
from kartops.models.match import Match
from kartops.models.tournament import Tournament
from kartops.services import audit, bracket_builder, standings, version_store
from kartops.services.bracket_advancer import winner_and_loser
from kartops.services.bracket_builder import (
    ROUND_GRAND_FINAL,
    ROUND_GRAND_FINAL_RESET,
    BracketPlan,
    MatchShell,
)
from kartops.services.scoring_rules import STAGE_FINALS, rules_for

logger = logging.getLogger(__name__)


def _shell_to_match(shell: MatchShell, tournament_id: int, event_type: str) -> Match:
    return Match(
        tournament_id=tournament_id,
        event_type=event_type,
        stage=STAGE_FINALS,
        match_number=shell.match_number,
        bracket=shell.bracket,
        round=shell.round,
        player1_id=shell.player1_id,
        player2_id=shell.player2_id,
        source1_match_number=shell.source1.match_number if shell.source1 else None,
        source1_role=shell.source1.role if shell.source1 else None,
        source2_match_number=shell.source2.match_number if shell.source2 else None,
        source2_role=shell.source2.role if shell.source2 else None,
    )


def finals_matches(session: Session, tournament_id: int, event_type: str) -> List[Match]:
    return version_store.find_many(session, tournament_id, event_type=event_type, stage=STAGE_FINALS)


def build_bracket(
    session: Session,
    tournament_id: int,
    event_type: str,
    top_n: int,
    replace: bool = False,
    caller: Optional[CallerIdentity] = None,
) -> BracketPlan:
    """
    Seed the top_n qualifiers into a double-elimination bracket and persist it.

    An existing bracket is only replaced when replace=True and none of its matches
    has been reported or completed.
    """
    if caller is not None and not caller.is_admin:
        raise UnauthorizedError("Only admins can build a finals bracket")
    tournament = session.get(Tournament, tournament_id)
    if not tournament or tournament.deleted_at is not None:
        raise NotFoundError(f"Tournament {tournament_id} not found", field="tournament_id")
    event_type = rules_for(event_type).event_type.value

    max_size = get_settings().max_bracket_size
    if top_n < bracket_builder.MIN_ENTRANTS or top_n > max_size:
        raise InvalidInputError(
            f"top_n must be between {bracket_builder.MIN_ENTRANTS} and {max_size}", field="top_n"
        )

    existing = finals_matches(session, tournament_id, event_type)
    if existing:
        if not replace:
            raise ConflictError(
                f"A {event_type} finals bracket already exists for tournament {tournament_id}",
                field="replace",
                requires_refresh=False,
            )
        started = [m.id for m in existing if m.completed or m.player1_reported_score1 is not None
                   or m.player2_reported_score1 is not None]
        if started:
            raise InvalidInputError(
                f"Cannot replace a bracket with reported matches: {started}", field="replace"
            )

    seeds = standings.seeding_order(standings.ranked_standings(session, tournament_id, event_type))
    if len(seeds) < top_n:
        raise InvalidInputError(f"Only {len(seeds)} players have {event_type} qualification entries", field="top_n")

    plan = bracket_builder.build(seeds[:top_n], event_type, max_entrants=max_size)

    # Old bracket goes in the same commit as the new one
    for m in existing:
        session.delete(m)
    if existing:
        session.flush()
        logger.info("Replacing %d finals matches for tournament %s %s", len(existing), tournament_id, event_type)
    session.add_all([_shell_to_match(shell, tournament_id, event_type) for shell in plan.all_matches])
    session.commit()

    logger.info(
        "Built %s bracket for tournament %s: %d entrants, %d winners / %d losers / %d grand final matches",
        event_type,
        tournament_id,
        len(plan.entrants),
        len(plan.winner_bracket),
        len(plan.loser_bracket),
        len(plan.grand_final),
    )
    audit.record_audit(
        session,
        "BUILD_BRACKET",
        "tournament",
        tournament_id,
        actor=caller.actor if caller else None,
        details={"event_type": event_type, "top_n": top_n, "entrants": plan.entrants},
    )
    return plan


def champion(matches: List[Match]) -> Optional[int]:
    """Tournament winner once the grand final (and reset, if played) is decided."""
    grand_final = next((m for m in matches if m.round == ROUND_GRAND_FINAL), None)
    reset = next((m for m in matches if m.round == ROUND_GRAND_FINAL_RESET), None)
    if reset is not None:
        return winner_and_loser(reset)[0] if reset.completed else None
    if grand_final is None or not grand_final.completed:
        return None
    winner_id, _ = winner_and_loser(grand_final)
    return winner_id if winner_id == grand_final.player1_id else None
