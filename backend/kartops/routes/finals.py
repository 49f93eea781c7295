from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from kartops.auth import CallerIdentity, get_caller
from kartops.database import get_session
from kartops.errors import NotFoundError
from kartops.routes.matches import MatchResponse, event_code, match_to_response
from kartops.services import bracket_service
from kartops.services.bracket_builder import BRACKET_GRAND_FINAL, BRACKET_LOSERS, BRACKET_WINNERS
from kartops.utils.guards import get_tournament_or_404

router = APIRouter()


class BracketBuildRequest(BaseModel):
    top_n: int = 8
    replace: bool = False


class BracketResponse(BaseModel):
    event_type: str
    winner_bracket: List[MatchResponse]
    loser_bracket: List[MatchResponse]
    grand_final: List[MatchResponse]
    champion_id: Optional[int] = None


def _bracket_response(session: Session, tournament_id: int, event_type: str) -> BracketResponse:
    matches = bracket_service.finals_matches(session, tournament_id, event_type)
    if not matches:
        raise NotFoundError(f"No {event_type} finals bracket for tournament {tournament_id}", field="event")
    by_bracket = {BRACKET_WINNERS: [], BRACKET_LOSERS: [], BRACKET_GRAND_FINAL: []}
    for m in matches:
        by_bracket.setdefault(m.bracket, []).append(match_to_response(m))
    return BracketResponse(
        event_type=event_type,
        winner_bracket=by_bracket[BRACKET_WINNERS],
        loser_bracket=by_bracket[BRACKET_LOSERS],
        grand_final=by_bracket[BRACKET_GRAND_FINAL],
        champion_id=bracket_service.champion(matches),
    )


@router.post("/tournaments/{tournament_id}/{event}/finals/bracket", response_model=BracketResponse, status_code=201)
def build_finals_bracket(
    tournament_id: int,
    event: str,
    payload: BracketBuildRequest,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> BracketResponse:
    """Seed the top qualifiers into a double-elimination bracket (admin)."""
    event_type = event_code(event)
    bracket_service.build_bracket(
        session, tournament_id, event_type, payload.top_n, replace=payload.replace, caller=caller
    )
    return _bracket_response(session, tournament_id, event_type)


@router.get("/tournaments/{tournament_id}/{event}/finals/bracket", response_model=BracketResponse)
def get_finals_bracket(tournament_id: int, event: str, session: Session = Depends(get_session)) -> BracketResponse:
    """Current finals bracket, grouped by winners / losers / grand final."""
    get_tournament_or_404(session, tournament_id)
    return _bracket_response(session, tournament_id, event_code(event))
