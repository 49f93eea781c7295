from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, SQLModel


class Qualification(SQLModel, table=True):
    __table_args__ = (
        SAUniqueConstraint("tournament_id", "event_type", "player_id", name="uq_qualification_player"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    event_type: str  # "BM" | "MR" | "GP"
    player_id: int = Field(foreign_key="player.id")
    group_name: Optional[str] = Field(default=None)
    seeding: Optional[int] = Field(default=None)

    # Aggregates, always a full recomputation over completed qualification matches
    mp: int = Field(default=0)
    wins: int = Field(default=0)
    ties: int = Field(default=0)
    losses: int = Field(default=0)
    win_rounds: int = Field(default=0)
    loss_rounds: int = Field(default=0)
    points: int = Field(default=0)  # BM/MR: round differential, GP: driver points
    score: int = Field(default=0)  # 2 per win, 1 per tie

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = Field(default=None)
