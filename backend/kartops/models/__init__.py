from kartops.models.logs import AuditLog, CharacterUsage, ScoreEntryLog
from kartops.models.match import Match
from kartops.models.player import Player
from kartops.models.qualification import Qualification
from kartops.models.time_trial_entry import TimeTrialEntry
from kartops.models.tournament import Tournament

__all__ = [
    "Tournament",
    "Player",
    "Match",
    "Qualification",
    "TimeTrialEntry",
    "ScoreEntryLog",
    "CharacterUsage",
    "AuditLog",
]
