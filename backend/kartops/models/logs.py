"""Append-only records written on a best-effort basis."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel


class ScoreEntryLog(SQLModel, table=True):
    """Every score report as submitted, kept for dispute resolution."""

    __tablename__ = "score_entry_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    match_id: int = Field(foreign_key="match.id", index=True)
    event_type: str
    player_id: Optional[int] = Field(default=None, foreign_key="player.id")
    reported_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow)


class CharacterUsage(SQLModel, table=True):
    """Character picked by a player for a match (post-tournament statistics)."""

    __tablename__ = "character_usage"

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(foreign_key="match.id", index=True)
    event_type: str
    player_id: int = Field(foreign_key="player.id", index=True)
    character: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    action: str  # REPORT_SCORE | ADMIN_SET_SCORE | BUILD_BRACKET | ...
    target_type: str
    target_id: Optional[int] = Field(default=None)
    actor: Optional[str] = Field(default=None)
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow)
