from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, UniqueConstraint as SAUniqueConstraint
from sqlmodel import Column, Field, SQLModel


class Match(SQLModel, table=True):
    __table_args__ = (
        SAUniqueConstraint("tournament_id", "event_type", "stage", "match_number", name="uq_match_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    event_type: str = Field(index=True)  # "BM" | "MR" | "GP"
    stage: str = Field(default="qualification")  # "qualification" | "finals"
    match_number: int  # dense per tournament/event/stage; listing order
    group_name: Optional[str] = Field(default=None)  # qualification group
    tv_number: Optional[int] = Field(default=None)
    cup: Optional[str] = Field(default=None)  # GP only

    # Participants (null until a bye or feeder match resolves)
    player1_id: Optional[int] = Field(default=None, foreign_key="player.id")
    player2_id: Optional[int] = Field(default=None, foreign_key="player.id")

    # Bracket placement (finals only)
    bracket: Optional[str] = Field(default=None)  # "winners" | "losers" | "grand_final"
    round: Optional[str] = Field(default=None)

    # Upstream match (by match_number) that fills each slot, and which side of it
    source1_match_number: Optional[int] = Field(default=None)
    source1_role: Optional[str] = Field(default=None)  # "WINNER" | "LOSER"
    source2_match_number: Optional[int] = Field(default=None)
    source2_role: Optional[str] = Field(default=None)

    # Reported but unconfirmed
    player1_reported_score1: Optional[int] = Field(default=None)
    player1_reported_score2: Optional[int] = Field(default=None)
    player1_reported_races: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    player2_reported_score1: Optional[int] = Field(default=None)
    player2_reported_score2: Optional[int] = Field(default=None)
    player2_reported_races: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON, nullable=True))

    # Confirmed
    score1: Optional[int] = Field(default=None)
    score2: Optional[int] = Field(default=None)
    rounds: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    completed: bool = Field(default=False)
    completed_at: Optional[datetime] = Field(default=None)

    # Optimistic concurrency token, bumped on every write
    version: int = Field(default=0)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_playable(self) -> bool:
        return self.player1_id is not None and self.player2_id is not None
