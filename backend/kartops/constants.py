"""Game data shared by validation and Time Attack totals."""

# Race courses in cup order
COURSES = (
    "MC1", "DP1", "GV1", "BC1",
    "MC2", "DP2", "GV2", "BC2",
    "MC3", "DP3", "GV3", "BC3",
    "CI1", "CI2", "RR", "VL1",
    "VL2", "KD", "MC4", "KB1",
)

CUPS = {
    "Mushroom": ("MC1", "DP1", "GV1", "BC1"),
    "Flower": ("MC2", "DP2", "GV2", "BC2"),
    "Star": ("MC3", "DP3", "GV3", "BC3"),
    "Special": ("CI1", "CI2", "RR", "VL1", "VL2", "KD", "MC4", "KB1"),
}

BATTLE_COURSES = ("BTL1", "BTL2", "BTL3", "BTL4")

SMK_CHARACTERS = (
    "Mario",
    "Luigi",
    "Peach",
    "Toad",
    "Yoshi",
    "DK Jr.",
    "Bowser",
    "Koopa",
)

# Racers on track in a GP race
GP_FIELD_SIZE = 8
