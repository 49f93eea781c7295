"""
Match lifecycle: derived state plus the bookkeeping that follows a completion.

State is not stored; it is read off the report and confirmation columns:
  pending -> awaiting_confirmation -> completed
                                   -> disputed -> completed (admin only)
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from sqlmodel import Session

from kartops.models.match import Match
from kartops.services import bracket_advancer, standings
from kartops.services.scoring_rules import STAGE_FINALS

logger = logging.getLogger(__name__)


class MatchState(str, Enum):
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DISPUTED = "disputed"
    COMPLETED = "completed"


def has_reported(match: Match, player: int) -> bool:
    return getattr(match, f"player{player}_reported_score1") is not None


def match_state(match: Match) -> MatchState:
    if match.completed:
        return MatchState.COMPLETED
    reported = [has_reported(match, 1), has_reported(match, 2)]
    if all(reported):
        from kartops.services.score_reconciliation import STATUS_MISMATCH, reconcile

        # Agreeing reports are only unconfirmed while the confirming write is in flight
        if reconcile(match).status == STATUS_MISMATCH:
            return MatchState.DISPUTED
        return MatchState.AWAITING_CONFIRMATION
    if any(reported):
        return MatchState.AWAITING_CONFIRMATION
    return MatchState.PENDING


@dataclass
class CompletionEffects:
    standings_updated: List[int] = field(default_factory=list)
    advanced_match_ids: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def on_match_completed(session: Session, match: Match) -> CompletionEffects:
    """
    Recount both players' standings, then advance the bracket for finals matches.

    The match result is already durable when this runs, so nothing here is
    raised to the caller: failures are logged and listed in the returned effects.
    """
    effects = CompletionEffects()

    try:
        updated = standings.recalculate_for_match(session, match)
        effects.standings_updated = [q.player_id for q in updated]
    except Exception as exc:
        session.rollback()
        logger.exception("Standings recalculation failed after match %s completed: %s", match.id, exc)
        effects.errors.append(f"standings: {exc}")

    if match.stage == STAGE_FINALS and match.bracket is not None:
        try:
            effects.advanced_match_ids = bracket_advancer.advance_from(session, match.id)
        except Exception as exc:
            session.rollback()
            logger.exception("Bracket advancement failed after match %s completed; repair required: %s", match.id, exc)
            effects.errors.append(f"advancement: {exc}")

    return effects
