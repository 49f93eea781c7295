"""
Optimistic-locking access to Match rows.

Every write goes through conditional_update(), which only lands if the stored
version still equals the version the caller read, and bumps it by one. Losing
writers get VersionConflict and decide for themselves whether to re-read and try
again (run_with_retries) or give up.
"""
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from kartops.config import get_settings
from kartops.errors import ConflictError, DependencyFailureError, NotFoundError, VersionConflict
from kartops.models.match import Match

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Columns a caller may never set directly
_PROTECTED = {"id", "version", "tournament_id", "created_at"}


def read(session: Session, match_id: int) -> Match:
    """Fresh read of a match, bypassing anything cached in the session."""
    match = session.get(Match, match_id, populate_existing=True)
    if not match:
        raise NotFoundError(f"Match {match_id} not found", field="match_id")
    return match


def conditional_update(session: Session, match_id: int, expected_version: int, **fields: Any) -> Match:
    """
    Apply `fields` to the match iff its version is still `expected_version`.

    The version is incremented in the same statement. On success the change is
    committed and the fresh row returned; on a lost race nothing is written and
    VersionConflict is raised.
    """
    bad = _PROTECTED.intersection(fields)
    if bad:
        raise ValueError(f"Cannot set protected columns: {sorted(bad)}")

    stmt = (
        update(Match)
        .where(Match.id == match_id, Match.version == expected_version)
        .values(**fields, version=Match.version + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
    except OperationalError as exc:
        session.rollback()
        raise DependencyFailureError(f"Storage unavailable while updating match {match_id}") from exc

    if result.rowcount != 1:
        session.rollback()
        # Distinguish a missing row from a stale version
        if session.get(Match, match_id) is None:
            raise NotFoundError(f"Match {match_id} not found", field="match_id")
        logger.debug("Version conflict on match %s at version %s", match_id, expected_version)
        raise VersionConflict(match_id, expected_version)

    session.commit()
    return read(session, match_id)


def find_many(
    session: Session,
    tournament_id: int,
    event_type: Optional[str] = None,
    stage: Optional[str] = None,
    player_id: Optional[int] = None,
    completed: Optional[bool] = None,
) -> List[Match]:
    """Matches for a tournament, filtered, in match_number order."""
    stmt = select(Match).where(Match.tournament_id == tournament_id)
    if event_type is not None:
        stmt = stmt.where(Match.event_type == event_type)
    if stage is not None:
        stmt = stmt.where(Match.stage == stage)
    if player_id is not None:
        stmt = stmt.where((Match.player1_id == player_id) | (Match.player2_id == player_id))
    if completed is not None:
        stmt = stmt.where(Match.completed == completed)
    stmt = stmt.order_by(Match.stage, Match.match_number).execution_options(populate_existing=True)
    return list(session.exec(stmt).all())


def run_with_retries(
    operation: Callable[[], T],
    max_attempts: Optional[int] = None,
    description: str = "update",
) -> T:
    """
    Run `operation` until it stops raising VersionConflict, at most max_attempts times.

    The operation must re-read whatever it depends on each time it is called.
    Once the budget is spent a ConflictError (requires_refresh) is raised.
    """
    attempts = max_attempts if max_attempts is not None else get_settings().score_report_max_attempts
    if attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last: Optional[VersionConflict] = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except VersionConflict as exc:
            last = exc
            logger.info(
                "Version conflict during %s on match %s (attempt %d/%d)",
                description,
                exc.match_id,
                attempt,
                attempts,
            )

    raise ConflictError(
        f"Match {last.match_id} was modified concurrently; refresh and try again",
        field="version",
    )
