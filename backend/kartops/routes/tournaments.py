from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlmodel import Session, select

from kartops.auth import CallerIdentity, get_caller
from kartops.database import get_session
from kartops.errors import UnauthorizedError
from kartops.models.tournament import Tournament
from kartops.services import audit
from kartops.utils.guards import get_tournament_or_404

router = APIRouter()

TOURNAMENT_STATUSES = ("draft", "active", "completed")


class TournamentCreate(BaseModel):
    name: str
    held_on: date
    status: str = "draft"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("name is required")
        return v.strip()

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in TOURNAMENT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(TOURNAMENT_STATUSES)}")
        return v


class TournamentResponse(BaseModel):
    id: int
    name: str
    held_on: date
    status: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.get("/tournaments", response_model=List[TournamentResponse])
def list_tournaments(session: Session = Depends(get_session)):
    """List all tournaments"""
    return session.exec(
        select(Tournament).where(Tournament.deleted_at.is_(None)).order_by(Tournament.held_on.desc())
    ).all()


@router.post("/tournaments", response_model=TournamentResponse, status_code=201)
def create_tournament(tournament_data: TournamentCreate, session: Session = Depends(get_session)):
    """Create a new tournament"""
    tournament = Tournament(**tournament_data.model_dump())
    session.add(tournament)
    session.commit()
    session.refresh(tournament)
    return tournament


@router.get("/tournaments/{tournament_id}", response_model=TournamentResponse)
def get_tournament(tournament_id: int, session: Session = Depends(get_session)):
    """Get a tournament by ID"""
    return get_tournament_or_404(session, tournament_id)


class ScoreEntryLogResponse(BaseModel):
    id: int
    match_id: int
    event_type: str
    player_id: Optional[int] = None
    reported_data: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ScoreEntryLogsResponse(BaseModel):
    tournament_id: int
    total_count: int
    logs_by_match: Dict[int, List[ScoreEntryLogResponse]]


@router.get("/tournaments/{tournament_id}/score-entry-logs", response_model=ScoreEntryLogsResponse)
def get_score_entry_logs(
    tournament_id: int,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
):
    """Every submitted score report, grouped by match (admin)."""
    if not caller.is_admin:
        raise UnauthorizedError("Only admins can read score entry logs")
    get_tournament_or_404(session, tournament_id)
    by_match = audit.score_entry_logs(session, tournament_id)
    return ScoreEntryLogsResponse(
        tournament_id=tournament_id,
        total_count=sum(len(logs) for logs in by_match.values()),
        logs_by_match={
            match_id: [ScoreEntryLogResponse.model_validate(log) for log in logs] for match_id, logs in by_match.items()
        },
    )
