from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlmodel import Session

from kartops.auth import CallerIdentity, get_caller
from kartops.database import get_session
from kartops.routes.matches import MatchResponse, event_code, match_to_response
from kartops.services import standings
from kartops.services.qualification_setup import QualificationEntry, setup_qualification
from kartops.utils.guards import get_tournament_or_404

router = APIRouter()


class QualificationEntryIn(BaseModel):
    player_id: int
    group: str
    seeding: Optional[int] = None

    @field_validator("group")
    @classmethod
    def validate_group(cls, v):
        if not v or not v.strip():
            raise ValueError("group is required")
        return v.strip()


class QualificationSetup(BaseModel):
    entries: List[QualificationEntryIn]


class StandingRow(BaseModel):
    rank: int
    player_id: int
    group_name: Optional[str] = None
    seeding: Optional[int] = None
    mp: int
    wins: int
    ties: int
    losses: int
    win_rounds: int
    loss_rounds: int
    points: int
    score: int


class QualificationSetupResponse(BaseModel):
    standings: List[StandingRow]
    matches: List[MatchResponse]


def _standing_rows(session: Session, tournament_id: int, event_type: str) -> List[StandingRow]:
    return [
        StandingRow(rank=rank, **{name: getattr(q, name) for name in StandingRow.model_fields if name != "rank"})
        for rank, q in standings.ranked_standings(session, tournament_id, event_type)
    ]


@router.post(
    "/tournaments/{tournament_id}/{event}/qualification",
    response_model=QualificationSetupResponse,
    status_code=201,
)
def create_qualification(
    tournament_id: int,
    event: str,
    payload: QualificationSetup,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> QualificationSetupResponse:
    """Put players into groups and generate each group's round-robin matches (admin)."""
    event_type = event_code(event)
    entries = [QualificationEntry(player_id=e.player_id, group=e.group, seeding=e.seeding) for e in payload.entries]
    result = setup_qualification(session, tournament_id, event_type, entries, caller=caller)
    return QualificationSetupResponse(
        standings=_standing_rows(session, tournament_id, event_type),
        matches=[match_to_response(m) for m in result.matches],
    )


@router.get("/tournaments/{tournament_id}/{event}/standings", response_model=List[StandingRow])
def get_standings(tournament_id: int, event: str, session: Session = Depends(get_session)) -> List[StandingRow]:
    """Qualification standings, ranked within each group."""
    get_tournament_or_404(session, tournament_id)
    return _standing_rows(session, tournament_id, event_code(event))
