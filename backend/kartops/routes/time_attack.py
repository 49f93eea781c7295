from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlmodel import Session

from kartops.auth import CallerIdentity, get_caller
from kartops.database import get_session
from kartops.errors import InvalidInputError, NotFoundError
from kartops.models.time_trial_entry import TimeTrialEntry
from kartops.services import time_attack
from kartops.utils.guards import get_tournament_or_404
from kartops.utils.time_format import format_time

router = APIRouter()


class EntryCreate(BaseModel):
    player_ids: List[int]
    stage: str = time_attack.TA_STAGE_QUALIFICATION


class EntryTimesUpdate(BaseModel):
    version: int
    times: Dict[str, Optional[str]]


class PromoteRequest(BaseModel):
    from_stage: str
    to_stage: str
    rank_from: Optional[int] = None
    rank_to: Optional[int] = None


class RoundTime(BaseModel):
    player_id: int
    time: str


class RoundRequest(BaseModel):
    results: List[RoundTime]


class EntryResponse(BaseModel):
    id: int
    tournament_id: int
    player_id: int
    stage: str
    times: Optional[Dict[str, str]] = None
    total_time: Optional[int] = None
    total_time_display: Optional[str] = None
    rank: Optional[int] = None
    lives: int
    eliminated: bool
    version: int
    updated_at: datetime


def _entry_response(entry: TimeTrialEntry) -> EntryResponse:
    fields = {name: getattr(entry, name) for name in EntryResponse.model_fields if name != "total_time_display"}
    return EntryResponse(**fields, total_time_display=format_time(entry.total_time))


@router.post("/tournaments/{tournament_id}/ta/entries", response_model=List[EntryResponse], status_code=201)
def add_entries(
    tournament_id: int,
    payload: EntryCreate,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> List[EntryResponse]:
    """Register players for a Time Attack stage (admin). Returns the newly added entries."""
    added = time_attack.add_entries(session, tournament_id, payload.player_ids, payload.stage, caller=caller)
    return [_entry_response(e) for e in added]


@router.put("/tournaments/{tournament_id}/ta/entries/{entry_id}", response_model=EntryResponse)
def update_entry(
    tournament_id: int,
    entry_id: int,
    payload: EntryTimesUpdate,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> EntryResponse:
    """Set course times on an entry. Send the version you last read; stale versions get 409."""
    get_tournament_or_404(session, tournament_id)
    entry = time_attack.get_entry(session, entry_id)
    if entry.tournament_id != tournament_id:
        raise NotFoundError(f"Time Attack entry {entry_id} not found", field="entry_id")
    updated = time_attack.update_entry_times(session, entry_id, payload.version, payload.times, caller=caller)
    return _entry_response(updated)


@router.get("/tournaments/{tournament_id}/ta/standings", response_model=List[EntryResponse])
def get_standings(
    tournament_id: int,
    stage: str = Query(default=time_attack.TA_STAGE_QUALIFICATION),
    session: Session = Depends(get_session),
) -> List[EntryResponse]:
    """Entries of a stage in rank order."""
    get_tournament_or_404(session, tournament_id)
    entries = time_attack.ranked_entries(session, tournament_id, stage)
    return [_entry_response(e) for e in entries]


class PromoteResponse(BaseModel):
    entries: List[EntryResponse]
    skipped: List[int]


class RoundResponse(BaseModel):
    stage: str
    eliminated: List[int]
    lost_life: List[int]
    lives_reset: bool
    remaining: int
    standings: List[EntryResponse]


@router.post("/tournaments/{tournament_id}/ta/promote", response_model=PromoteResponse, status_code=201)
def promote(
    tournament_id: int,
    payload: PromoteRequest,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> PromoteResponse:
    """
    Move ranked players into a later stage (admin). rank_from and rank_to go
    together; leave both out to use the stage's default band.
    """
    if (payload.rank_from is None) != (payload.rank_to is None):
        raise InvalidInputError("rank_from and rank_to must be given together", field="ranks")
    ranks = (payload.rank_from, payload.rank_to) if payload.rank_from is not None else None
    result = time_attack.promote(session, tournament_id, payload.from_stage, payload.to_stage, ranks, caller=caller)
    return PromoteResponse(entries=[_entry_response(e) for e in result.entries], skipped=result.skipped)


@router.post("/tournaments/{tournament_id}/ta/{stage}/rounds", response_model=RoundResponse)
def record_round(
    tournament_id: int,
    stage: str,
    payload: RoundRequest,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
) -> RoundResponse:
    """Record one course of a revival or finals stage (admin) and apply eliminations."""
    get_tournament_or_404(session, tournament_id)
    results = {}
    for i, row in enumerate(payload.results):
        if row.player_id in results:
            raise InvalidInputError(f"Player {row.player_id} has more than one time", field=f"results[{i}]")
        results[row.player_id] = row.time
    outcome = time_attack.record_round(session, tournament_id, stage, results, caller=caller)
    return RoundResponse(
        stage=stage,
        eliminated=outcome.eliminated,
        lost_life=outcome.lost_life,
        lives_reset=outcome.lives_reset,
        remaining=outcome.remaining,
        standings=[_entry_response(e) for e in time_attack.ranked_entries(session, tournament_id, stage)],
    )
