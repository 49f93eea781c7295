# Force SQLModel table registration at test discovery time
# This ensures all models are registered before any test database creation
from kartops.models.logs import AuditLog, CharacterUsage, ScoreEntryLog  # noqa: F401
from kartops.models.match import Match  # noqa: F401
from kartops.models.player import Player  # noqa: F401
from kartops.models.qualification import Qualification  # noqa: F401
from kartops.models.time_trial_entry import TimeTrialEntry  # noqa: F401
from kartops.models.tournament import Tournament  # noqa: F401
