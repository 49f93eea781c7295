"""
Per-format scoring rules.

Battle Mode, Match Race and Grand Prix differ only in thresholds, course lists and
whether a match is scored by rounds won or by driver points. Everything that
decides "who won" or "is this report well formed" lives here as data on one
EventRules instance per format, so the reconciliation engine and the standings
recalculator share one definition.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from kartops.constants import BATTLE_COURSES, COURSES, CUPS, GP_FIELD_SIZE, SMK_CHARACTERS
from kartops.errors import InvalidInputError

STAGE_QUALIFICATION = "qualification"
STAGE_FINALS = "finals"
STAGES = (STAGE_QUALIFICATION, STAGE_FINALS)

RESULT_WIN = "win"
RESULT_LOSS = "loss"
RESULT_TIE = "tie"


class EventType(str, Enum):
    BM = "BM"
    MR = "MR"
    GP = "GP"


@dataclass(frozen=True)
class MatchOutcome:
    winner: Optional[int]  # 1, 2, or None for a tie
    result1: str
    result2: str

    @property
    def is_decisive(self) -> bool:
        return self.winner is not None


@dataclass(frozen=True)
class ReportedResult:
    """A validated report: aggregate scores plus the canonical per-race/round detail."""

    score1: int
    score2: int
    details: Optional[List[Dict[str, Any]]] = None
    cup: Optional[str] = None


_TIE = MatchOutcome(winner=None, result1=RESULT_TIE, result2=RESULT_TIE)
_P1 = MatchOutcome(winner=1, result1=RESULT_WIN, result2=RESULT_LOSS)
_P2 = MatchOutcome(winner=2, result1=RESULT_LOSS, result2=RESULT_WIN)


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{field} must be an integer", field=field)
    return value


def _check_courses(courses: Sequence[str], allowed: Sequence[str], unique: bool, field: str) -> None:
    seen = set()
    for i, course in enumerate(courses):
        if course not in allowed:
            raise InvalidInputError(f"Unknown course '{course}'", field=f"{field}[{i}].course")
        if unique and course in seen:
            raise InvalidInputError(f"Course '{course}' appears more than once", field=f"{field}[{i}].course")
        seen.add(course)


@dataclass(frozen=True)
class EventRules:
    event_type: EventType
    display_name: str
    courses: Tuple[str, ...]
    unique_courses: bool
    qualification_threshold: int
    finals_threshold: int

    def win_threshold(self, stage: str = STAGE_QUALIFICATION) -> int:
        return self.finals_threshold if stage == STAGE_FINALS else self.qualification_threshold

    def points_for_position(self, position: int) -> int:
        return 0

    def allows_ties(self, stage: str) -> bool:
        return False

    def outcome(self, score1: int, score2: int, stage: str = STAGE_QUALIFICATION) -> MatchOutcome:
        raise NotImplementedError

    def is_win(self, score1: int, score2: int, stage: str = STAGE_QUALIFICATION) -> bool:
        return self.outcome(score1, score2, stage).winner == 1

    def validate_scores(self, score1: int, score2: int, stage: str) -> None:
        raise NotImplementedError

    def parse_report(self, payload: Mapping[str, Any], stage: str) -> ReportedResult:
        raise NotImplementedError


@dataclass(frozen=True)
class RoundRules(EventRules):
    """Formats scored by rounds/races won (BM, MR)."""

    # BM qualification always plays a fixed number of rounds; None means first-to-threshold
    qualification_rounds: Optional[int] = None
    # MR qualification sets stopped before anyone reaches the threshold stand as a tie
    qualification_draws: bool = False

    def allows_ties(self, stage: str) -> bool:
        if stage != STAGE_QUALIFICATION:
            return False
        return self.qualification_rounds is not None or self.qualification_draws

    def outcome(self, score1: int, score2: int, stage: str = STAGE_QUALIFICATION) -> MatchOutcome:
        threshold = self.win_threshold(stage)
        if score1 >= threshold and score1 > score2:
            return _P1
        if score2 >= threshold and score2 > score1:
            return _P2
        return _TIE

    def validate_scores(self, score1: int, score2: int, stage: str) -> None:
        score1 = _as_int(score1, "score1")
        score2 = _as_int(score2, "score2")
        if score1 < 0 or score2 < 0:
            raise InvalidInputError("Scores cannot be negative", field="score1" if score1 < 0 else "score2")

        if stage == STAGE_QUALIFICATION and self.qualification_rounds is not None:
            if score1 + score2 != self.qualification_rounds:
                raise InvalidInputError(
                    f"{self.display_name} qualification scores must add up to {self.qualification_rounds}",
                    field="score1",
                )
            return

        threshold = self.win_threshold(stage)
        high, low = max(score1, score2), min(score1, score2)
        if self.allows_ties(stage) and high < threshold:
            return
        if high != threshold or low >= threshold:
            raise InvalidInputError(
                f"{self.display_name} {stage} is first to {threshold}; got {score1}-{score2}",
                field="score1",
            )

    def parse_report(self, payload: Mapping[str, Any], stage: str) -> ReportedResult:
        if payload.get("score1") is None or payload.get("score2") is None:
            raise InvalidInputError("score1 and score2 are required", field="score1")
        score1 = _as_int(payload["score1"], "score1")
        score2 = _as_int(payload["score2"], "score2")
        self.validate_scores(score1, score2, stage)

        # MR clients send "races", BM clients "rounds"; same shape
        raw = payload.get("rounds")
        if raw is None:
            raw = payload.get("races")
        if raw is None:
            return ReportedResult(score1=score1, score2=score2)
        return ReportedResult(score1=score1, score2=score2, details=self.normalize_rounds(raw, score1, score2))

    def normalize_rounds(self, raw: Sequence[Mapping[str, Any]], score1: int, score2: int) -> List[Dict[str, Any]]:
        """Check the round-by-round list agrees with the aggregate and return it canonicalized."""
        rounds: List[Dict[str, Any]] = []
        for i, item in enumerate(raw):
            course = item.get("course")
            winner = item.get("winner")
            if not isinstance(course, str) or not course:
                raise InvalidInputError("Each round needs a course", field=f"rounds[{i}].course")
            if winner not in (1, 2) or isinstance(winner, bool):
                raise InvalidInputError("Round winner must be 1 or 2", field=f"rounds[{i}].winner")
            rounds.append({"course": course, "winner": winner})

        _check_courses([r["course"] for r in rounds], self.courses, self.unique_courses, "rounds")

        if len(rounds) != score1 + score2:
            raise InvalidInputError(
                f"{len(rounds)} rounds listed but score is {score1}-{score2}", field="rounds"
            )
        won1 = sum(1 for r in rounds if r["winner"] == 1)
        if won1 != score1:
            raise InvalidInputError("Round winners do not add up to the reported score", field="rounds")
        return rounds


@dataclass(frozen=True)
class PointsRules(EventRules):
    """Formats scored by cumulative driver points over a fixed race count (GP)."""

    points_table: Tuple[int, ...] = ()
    race_count: int = 4
    field_size: int = GP_FIELD_SIZE

    def points_for_position(self, position: int) -> int:
        if 0 < position < len(self.points_table):
            return self.points_table[position]
        return 0

    def allows_ties(self, stage: str) -> bool:
        return stage == STAGE_QUALIFICATION

    def outcome(self, score1: int, score2: int, stage: str = STAGE_QUALIFICATION) -> MatchOutcome:
        if score1 > score2:
            return _P1
        if score2 > score1:
            return _P2
        return _TIE

    def validate_scores(self, score1: int, score2: int, stage: str) -> None:
        score1 = _as_int(score1, "score1")
        score2 = _as_int(score2, "score2")
        ceiling = self.points_for_position(1) * self.race_count
        for name, value in (("score1", score1), ("score2", score2)):
            if value < 0 or value > ceiling:
                raise InvalidInputError(f"{name} must be between 0 and {ceiling}", field=name)
        if not self.allows_ties(stage) and score1 == score2:
            raise InvalidInputError(f"{self.display_name} {stage} cannot end in a tie", field="score1")

    def parse_report(self, payload: Mapping[str, Any], stage: str) -> ReportedResult:
        raw = payload.get("races")
        if raw is None:
            raise InvalidInputError(f"{self.race_count} races are required", field="races")
        cup = payload.get("cup")
        if cup is not None and cup not in CUPS:
            raise InvalidInputError(f"Unknown cup '{cup}'", field="cup")

        races = self.normalize_races(raw, cup)
        score1 = sum(r["points1"] for r in races)
        score2 = sum(r["points2"] for r in races)

        # Totals sent alongside the races must agree with the points table
        for name, computed in (("score1", score1), ("score2", score2)):
            sent = payload.get(name)
            if sent is not None and sent != computed:
                raise InvalidInputError(f"{name} {sent} does not match race points {computed}", field=name)

        self.validate_scores(score1, score2, stage)
        return ReportedResult(score1=score1, score2=score2, details=races, cup=cup)

    def normalize_races(self, raw: Sequence[Mapping[str, Any]], cup: Optional[str] = None) -> List[Dict[str, Any]]:
        if len(raw) != self.race_count:
            raise InvalidInputError(f"Exactly {self.race_count} races are required", field="races")

        races: List[Dict[str, Any]] = []
        for i, item in enumerate(raw):
            course = item.get("course")
            if not isinstance(course, str) or not course:
                raise InvalidInputError("Each race needs a course", field=f"races[{i}].course")
            positions = []
            for key in ("position1", "position2"):
                pos = item.get(key)
                if isinstance(pos, bool) or not isinstance(pos, int) or not 1 <= pos <= self.field_size:
                    raise InvalidInputError(
                        f"{key} must be between 1 and {self.field_size}", field=f"races[{i}].{key}"
                    )
                positions.append(pos)
            if positions[0] == positions[1]:
                raise InvalidInputError("Two players cannot share a finishing position", field=f"races[{i}]")
            races.append(
                {
                    "course": course,
                    "position1": positions[0],
                    "position2": positions[1],
                    "points1": self.points_for_position(positions[0]),
                    "points2": self.points_for_position(positions[1]),
                }
            )

        allowed = CUPS[cup] if cup else self.courses
        _check_courses([r["course"] for r in races], allowed, self.unique_courses, "races")
        return races


BATTLE_MODE = RoundRules(
    event_type=EventType.BM,
    display_name="Battle Mode",
    courses=BATTLE_COURSES,
    unique_courses=False,
    qualification_threshold=3,
    finals_threshold=5,
    qualification_rounds=4,
)

MATCH_RACE = RoundRules(
    event_type=EventType.MR,
    display_name="Match Race",
    courses=COURSES,
    unique_courses=True,
    qualification_threshold=3,
    finals_threshold=7,
    qualification_draws=True,
)

GRAND_PRIX = PointsRules(
    event_type=EventType.GP,
    display_name="Grand Prix",
    courses=COURSES,
    unique_courses=True,
    qualification_threshold=0,
    finals_threshold=0,
    points_table=(0, 9, 6, 3, 1),
    race_count=4,
)

RULES: Dict[EventType, EventRules] = {
    EventType.BM: BATTLE_MODE,
    EventType.MR: MATCH_RACE,
    EventType.GP: GRAND_PRIX,
}


def parse_event_type(value: str) -> EventType:
    try:
        return EventType(str(value).upper())
    except ValueError:
        raise InvalidInputError(f"Unknown event type: {value}", field="event_type")


def rules_for(event_type: Any) -> EventRules:
    """Look up rules by EventType or its string code ("BM", "mr", ...)."""
    if not isinstance(event_type, EventType):
        event_type = parse_event_type(event_type)
    return RULES[event_type]


def validate_character(character: Optional[str]) -> Optional[str]:
    if character is None:
        return None
    if character not in SMK_CHARACTERS:
        raise InvalidInputError(f"Unknown character '{character}'", field="character")
    return character
