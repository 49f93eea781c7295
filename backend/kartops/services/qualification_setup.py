"""
Qualification setup: register players into groups and generate each group's
round-robin matches.

Re-running setup for an event rewrites its groups as long as no qualification
match has been reported yet. Players dropped from the entry list keep their
qualification row, soft-deleted.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlmodel import Session, select

from kartops.auth import CallerIdentity
from kartops.errors import InvalidInputError, NotFoundError, UnauthorizedError
from kartops.models.match import Match
from kartops.models.player import Player
from kartops.models.qualification import Qualification
from kartops.models.tournament import Tournament
from kartops.services import audit, version_store
from kartops.services.scoring_rules import STAGE_QUALIFICATION, rules_for
from kartops.utils.round_robin import rr_pairings_by_round

logger = logging.getLogger(__name__)

_RESET_AGGREGATES = dict(mp=0, wins=0, ties=0, losses=0, win_rounds=0, loss_rounds=0, points=0, score=0)


@dataclass(frozen=True)
class QualificationEntry:
    player_id: int
    group: str
    seeding: Optional[int] = None


@dataclass
class SetupResult:
    qualifications: List[Qualification]
    matches: List[Match]


def _validate_entries(session: Session, entries: Sequence[QualificationEntry]) -> None:
    if not entries:
        raise InvalidInputError("At least one player is required", field="entries")
    seen = set()
    for i, entry in enumerate(entries):
        if entry.player_id in seen:
            raise InvalidInputError(f"Player {entry.player_id} is listed twice", field=f"entries[{i}].player_id")
        seen.add(entry.player_id)
        if not entry.group or not entry.group.strip():
            raise InvalidInputError("Group is required", field=f"entries[{i}].group")
        player = session.get(Player, entry.player_id)
        if not player or player.deleted_at is not None:
            raise NotFoundError(f"Player {entry.player_id} not found", field=f"entries[{i}].player_id")


def _group_members(entries: Sequence[QualificationEntry]) -> Dict[str, List[QualificationEntry]]:
    groups: Dict[str, list] = defaultdict(list)
    for index, entry in enumerate(entries):
        groups[entry.group.strip()].append((entry, index))
    ordered = {}
    for name in sorted(groups):
        # Seeded players first (by seeding), then in the order given
        members = sorted(groups[name], key=lambda item: (item[0].seeding is None, item[0].seeding or 0, item[1]))
        ordered[name] = [entry for entry, _ in members]
    return ordered


def setup_qualification(
    session: Session,
    tournament_id: int,
    event_type: str,
    entries: Sequence[QualificationEntry],
    caller: Optional[CallerIdentity] = None,
) -> SetupResult:
    """
    Create (or rewrite) qualification rows and round-robin matches for one event.

    Match numbers are dense across groups: group A's matches round by round, then
    group B's, and so on.
    """
    if caller is not None and not caller.is_admin:
        raise UnauthorizedError("Only admins can set up qualification")
    tournament = session.get(Tournament, tournament_id)
    if not tournament or tournament.deleted_at is not None:
        raise NotFoundError(f"Tournament {tournament_id} not found", field="tournament_id")
    event_type = rules_for(event_type).event_type.value
    _validate_entries(session, entries)

    existing_matches = version_store.find_many(session, tournament_id, event_type=event_type, stage=STAGE_QUALIFICATION)
    started = [
        m.match_number
        for m in existing_matches
        if m.completed or m.player1_reported_score1 is not None or m.player2_reported_score1 is not None
    ]
    if started:
        raise InvalidInputError(
            f"Qualification already under way (matches {started} reported); cannot set up again",
            field="entries",
        )
    for m in existing_matches:
        session.delete(m)

    current = {
        q.player_id: q
        for q in session.exec(
            select(Qualification).where(
                Qualification.tournament_id == tournament_id,
                Qualification.event_type == event_type,
            )
        ).all()
    }
    now = datetime.utcnow()
    listed = {e.player_id for e in entries}
    for player_id, q in current.items():
        if player_id not in listed and q.deleted_at is None:
            q.deleted_at = now
            session.add(q)

    groups = _group_members(entries)
    qualifications: List[Qualification] = []
    for group_name, members in groups.items():
        for position, entry in enumerate(members, start=1):
            q = current.get(entry.player_id)
            if q is None:
                q = Qualification(tournament_id=tournament_id, event_type=event_type, player_id=entry.player_id)
            q.group_name = group_name
            q.seeding = entry.seeding if entry.seeding is not None else position
            q.deleted_at = None
            q.updated_at = now
            for name, value in _RESET_AGGREGATES.items():
                setattr(q, name, value)
            session.add(q)
            qualifications.append(q)

    # Old match rows must be gone before their numbers are reused
    session.flush()

    matches: List[Match] = []
    match_number = 0
    for group_name, members in groups.items():
        for _round, _seq, idx_a, idx_b in rr_pairings_by_round(len(members)):
            match_number += 1
            match = Match(
                tournament_id=tournament_id,
                event_type=event_type,
                stage=STAGE_QUALIFICATION,
                match_number=match_number,
                group_name=group_name,
                player1_id=members[idx_a].player_id,
                player2_id=members[idx_b].player_id,
            )
            session.add(match)
            matches.append(match)

    session.commit()
    for row in qualifications + matches:
        session.refresh(row)

    logger.info(
        "Set up %s qualification for tournament %s: %d players in %d groups, %d matches",
        event_type,
        tournament_id,
        len(qualifications),
        len(groups),
        len(matches),
    )
    audit.record_audit(
        session,
        "SETUP_QUALIFICATION",
        "tournament",
        tournament_id,
        actor=caller.actor if caller else None,
        details={"event_type": event_type, "players": len(qualifications), "matches": len(matches)},
    )
    return SetupResult(qualifications=qualifications, matches=matches)
