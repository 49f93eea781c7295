"""
Caller identity handed to the core by the authentication layer.

Credential checks (sessions, OAuth, tournament tokens) happen upstream; the core
only sees a resolved CallerIdentity and decides what it may do with a match.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from kartops.errors import InvalidInputError

ROLE_ADMIN = "admin"
ROLE_PLAYER = "player"
ROLE_TOKEN = "token"


@dataclass(frozen=True)
class CallerIdentity:
    is_admin: bool = False
    player_id: Optional[int] = None
    has_tournament_token: bool = False

    @property
    def actor(self) -> str:
        if self.is_admin:
            return "admin"
        if self.player_id is not None:
            return f"player:{self.player_id}"
        if self.has_tournament_token:
            return "token"
        return "anonymous"

    def may_report_for(self, player_id: Optional[int]) -> bool:
        """Admins and tournament-token holders may report any slot; players only their own."""
        if self.is_admin or self.has_tournament_token:
            return True
        return self.player_id is not None and player_id is not None and self.player_id == player_id


ANONYMOUS = CallerIdentity()


def get_caller(
    x_caller_role: Optional[str] = Header(default=None),
    x_caller_player_id: Optional[int] = Header(default=None),
) -> CallerIdentity:
    """Build the caller identity from headers set by the upstream auth layer."""
    role = (x_caller_role or "").strip().lower()
    if role and role not in (ROLE_ADMIN, ROLE_PLAYER, ROLE_TOKEN):
        raise InvalidInputError(f"Unknown caller role: {x_caller_role}", field="X-Caller-Role")
    if role == ROLE_PLAYER and x_caller_player_id is None:
        raise InvalidInputError("Player callers must send X-Caller-Player-Id", field="X-Caller-Player-Id")
    return CallerIdentity(
        is_admin=role == ROLE_ADMIN,
        player_id=x_caller_player_id if role == ROLE_PLAYER else None,
        has_tournament_token=role == ROLE_TOKEN,
    )
