"""
Lookup guards shared by the route modules.

Each guard loads a row or raises NotFoundError, and checks that the row belongs
to the tournament (and event) named in the URL.
"""
from sqlmodel import Session

from kartops.errors import NotFoundError
from kartops.models.match import Match
from kartops.models.tournament import Tournament
from kartops.services import version_store


def get_tournament_or_404(session: Session, tournament_id: int) -> Tournament:
    """
    Get a tournament or raise 404.

    Soft-deleted tournaments count as missing.
    """
    tournament = session.get(Tournament, tournament_id)
    if not tournament or tournament.deleted_at is not None:
        raise NotFoundError(f"Tournament {tournament_id} not found", field="tournament_id")
    return tournament


def get_match_or_404(session: Session, tournament_id: int, event_type: str, match_id: int) -> Match:
    """
    Get a match or raise 404.

    Raises:
        NotFoundError: match missing, or it belongs to another tournament or event
    """
    match = version_store.read(session, match_id)
    if match.tournament_id != tournament_id or match.event_type != event_type:
        raise NotFoundError(
            f"Match {match_id} does not belong to tournament {tournament_id} {event_type}", field="match_id"
        )
    return match
