from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator
from sqlmodel import Session, select

from kartops.auth import CallerIdentity, get_caller
from kartops.database import get_session
from kartops.errors import UnauthorizedError
from kartops.models.player import Player
from kartops.services import audit

router = APIRouter()


class PlayerCreate(BaseModel):
    name: str
    nickname: str
    country: Optional[str] = None

    @field_validator("name", "nickname")
    @classmethod
    def validate_required(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class PlayerResponse(BaseModel):
    id: int
    name: str
    nickname: str
    country: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("/players", response_model=List[PlayerResponse])
def list_players(session: Session = Depends(get_session)):
    """List active players by nickname"""
    return session.exec(select(Player).where(Player.deleted_at.is_(None)).order_by(Player.nickname)).all()


@router.post("/players", response_model=PlayerResponse, status_code=201)
def create_player(player_data: PlayerCreate, session: Session = Depends(get_session)):
    """Register a player. Nicknames are unique."""
    existing = session.exec(select(Player).where(Player.nickname == player_data.nickname)).first()
    if existing:
        raise HTTPException(status_code=409, detail=f"Nickname '{player_data.nickname}' is already taken")
    player = Player(**player_data.model_dump())
    session.add(player)
    session.commit()
    session.refresh(player)
    return player


@router.get("/players/{player_id}", response_model=PlayerResponse)
def get_player(player_id: int, session: Session = Depends(get_session)):
    """Get a player by ID"""
    player = session.get(Player, player_id)
    if not player or player.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Player not found")
    return player


class CharacterStatRow(BaseModel):
    character: str
    match_count: int
    win_count: int
    win_rate: float


class CharacterStatsResponse(BaseModel):
    player_id: int
    nickname: str
    total_matches: int
    most_used_character: Optional[str] = None
    character_stats: List[CharacterStatRow]


@router.get("/players/{player_id}/character-stats", response_model=CharacterStatsResponse)
def get_character_stats(
    player_id: int,
    session: Session = Depends(get_session),
    caller: CallerIdentity = Depends(get_caller),
):
    """Characters a player has reported, with wins per character (admin)."""
    if not caller.is_admin:
        raise UnauthorizedError("Only admins can read character statistics")
    player = get_player(player_id, session)
    stats = audit.character_stats(session, player_id)
    return CharacterStatsResponse(
        player_id=player.id,
        nickname=player.nickname,
        total_matches=sum(s.match_count for s in stats),
        most_used_character=stats[0].character if stats else None,
        character_stats=[
            CharacterStatRow(character=s.character, match_count=s.match_count, win_count=s.win_count, win_rate=s.win_rate)
            for s in stats
        ],
    )
