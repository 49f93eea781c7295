from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import JSON, UniqueConstraint as SAUniqueConstraint
from sqlmodel import Column, Field, SQLModel


class TimeTrialEntry(SQLModel, table=True):
    __table_args__ = (
        SAUniqueConstraint("tournament_id", "player_id", "stage", name="uq_tt_entry_stage"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    player_id: int = Field(foreign_key="player.id")
    stage: str = Field(default="qualification")  # "qualification" | "revival_1" | "revival_2" | "finals"
    times: Optional[Dict[str, str]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    total_time: Optional[int] = Field(default=None)  # ms, null until every course has a time
    rank: Optional[int] = Field(default=None)
    lives: int = Field(default=3)
    eliminated: bool = Field(default=False)
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
