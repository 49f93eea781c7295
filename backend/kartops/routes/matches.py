"""
Match endpoints: listing, dual score reports, admin override and advancement repair.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlmodel import Session

from kartops.auth import CallerIdentity, get_caller
from kartops.database import get_session
from kartops.errors import InvalidInputError, UnauthorizedError
from kartops.models.match import Match
from kartops.services import bracket_advancer, score_reconciliation, version_store
from kartops.services.match_lifecycle import match_state
from kartops.services.scoring_rules import STAGES, parse_event_type
from kartops.utils.guards import get_match_or_404, get_tournament_or_404

router = APIRouter()


class RaceResult(BaseModel):
    course: str
    winner: Optional[int] = None  # BM/MR
    position1: Optional[int] = None  # GP
    position2: Optional[int] = None  # GP


class ScoreReport(BaseModel):
    reporting_player: int
    score1: Optional[int] = None
    score2: Optional[int] = None
    rounds: Optional[List[RaceResult]] = None
    races: Optional[List[RaceResult]] = None
    cup: Optional[str] = None
    character: Optional[str] = None

    @field_validator("reporting_player")
    @classmethod
    def validate_reporting_player(cls, v):
        if v not in (1, 2):
            raise ValueError("reporting_player must be 1 or 2")
        return v


class AdminScoreUpdate(BaseModel):
    score1: int
    score2: int
    rounds: Optional[List[RaceResult]] = None
    completed: bool = True


class MatchResponse(BaseModel):
    id: int
    tournament_id: int
    event_type: str
    stage: str
    match_number: int
    group_name: Optional[str] = None
    tv_number: Optional[int] = None
    cup: Optional[str] = None
    player1_id: Optional[int] = None
    player2_id: Optional[int] = None
    bracket: Optional[str] = None
    round: Optional[str] = None
    source1_match_number: Optional[int] = None
    source1_role: Optional[str] = None
    source2_match_number: Optional[int] = None
    source2_role: Optional[str] = None
    player1_reported_score1: Optional[int] = None
    player1_reported_score2: Optional[int] = None
    player1_reported_races: Optional[List[Dict[str, Any]]] = None
    player2_reported_score1: Optional[int] = None
    player2_reported_score2: Optional[int] = None
    player2_reported_races: Optional[List[Dict[str, Any]]] = None
    score1: Optional[int] = None
    score2: Optional[int] = None
    rounds: Optional[List[Dict[str, Any]]] = None
    completed: bool
    completed_at: Optional[datetime] = None
    version: int
    state: str

    class Config:
        from_attributes = True


class ReportResponse(BaseModel):
    status: str
    match: MatchResponse
    auto_confirmed: bool = False
    mismatch: bool = False
    waiting_for: Optional[str] = None
    mismatch_kind: Optional[str] = None
    player1_report: Optional[Dict[str, Any]] = None
    player2_report: Optional[Dict[str, Any]] = None
    advanced_match_ids: List[int] = []


class AdvanceResponse(BaseModel):
    match_id: int
    affected_match_ids: List[int]


def match_to_response(m: Match) -> MatchResponse:
    # getattr reloads rows expired by an earlier commit; model_dump() would not
    fields = {name: getattr(m, name) for name in MatchResponse.model_fields if name != "state"}
    return MatchResponse(**fields, state=match_state(m).value)


def event_code(event: str) -> str:
    return parse_event_type(event).value


@router.get("/tournaments/{tournament_id}/{event}/matches", response_model=List[MatchResponse])
def list_matches(
    tournament_id: int,
    event: str,
    stage: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
) -> List[MatchResponse]:
    """List matches for an event in match_number order, optionally for one stage."""
    get_tournament_or_404(session, tournament_id)
    if stage is not None and stage not in STAGES:
        raise InvalidInputError(f"Unknown stage: {stage}", field="stage")
    matches = version_store.find_many(session, tournament_id, event_type=event_code(event), stage=stage)
    return [match_to_response(m) for m in matches]


@router.get("/tournaments/{tournament_id}/{event}/matches/{match_id}", response_model=MatchResponse)
def get_match(tournament_id: int, event: str, match_id: int, session: Session = Depends(get_session)):
    """Get one match with its derived lifecycle state."""
    get_tournament_or_404(session, tournament_id)
    return match_to_response(get_match_or_404(session, tournament_id, event_code(event), match_id))


@router.post("/tournaments/{tournament_id}/{event}/matches/{match_id}/report", response_model=ReportResponse)
def report_match_score(
    tournament_id: int,
    event: str,
    match_id: int,
    payload: ScoreReport,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> ReportResponse:
    """Submit one player's result. Both players report; matching reports confirm the match."""
    get_tournament_or_404(session, tournament_id)
    get_match_or_404(session, tournament_id, event_code(event), match_id)

    data = payload.model_dump(exclude={"reporting_player"}, exclude_none=True)
    result = score_reconciliation.report_score(session, match_id, payload.reporting_player, data, caller)

    response = ReportResponse(
        status=result.status,
        match=match_to_response(result.match),
        auto_confirmed=result.auto_confirmed,
        mismatch=result.mismatch,
        waiting_for=f"player{result.waiting_for}" if result.waiting_for else None,
        mismatch_kind=result.mismatch_kind,
        player1_report=result.player1_report.to_dict() if result.player1_report else None,
        player2_report=result.player2_report.to_dict() if result.player2_report else None,
    )
    if result.effects:
        response.advanced_match_ids = result.effects.advanced_match_ids
    return response


@router.put("/tournaments/{tournament_id}/{event}/matches/{match_id}/score", response_model=MatchResponse)
def set_match_score(
    tournament_id: int,
    event: str,
    match_id: int,
    payload: AdminScoreUpdate,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> MatchResponse:
    """Admin override: set the confirmed score directly (settles disputes, corrects results)."""
    get_tournament_or_404(session, tournament_id)
    get_match_or_404(session, tournament_id, event_code(event), match_id)

    rounds = [r.model_dump(exclude_none=True) for r in payload.rounds] if payload.rounds is not None else None
    match = score_reconciliation.admin_set_score(
        session,
        match_id,
        payload.score1,
        payload.score2,
        rounds,
        caller,
        completed=payload.completed,
    )
    return match_to_response(match)


@router.post("/tournaments/{tournament_id}/{event}/matches/{match_id}/advance", response_model=AdvanceResponse)
def advance_match(
    tournament_id: int,
    event: str,
    match_id: int,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> AdvanceResponse:
    """Manually re-run advancement for a completed finals match (repair tooling)."""
    get_tournament_or_404(session, tournament_id)
    get_match_or_404(session, tournament_id, event_code(event), match_id)
    if not caller.is_admin:
        raise UnauthorizedError("Only admins can run bracket advancement")

    affected = bracket_advancer.advance_from(session, match_id)
    return AdvanceResponse(match_id=match_id, affected_match_ids=affected)
