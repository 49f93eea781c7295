"""
Double-elimination bracket construction (pure, no database).

Given entrants ordered by seed, build() lays out every winners-bracket, losers-bracket
and grand-final match up front. The bracket is padded to the next power of two and
the padding seeds are byes. Byes are never materialized as matches: a match with
one empty side passes its present player (or the feeder match that will produce
one) straight through to the next round, so round 2 already shows who got a bye.

Every materialized match records, per slot, which earlier match feeds it and
whether that slot takes the feeder's WINNER or LOSER. The advancer walks those
edges; round labels are for display only.

Losers bracket layout for a bracket of size 2^k (k >= 2) has 2(k-1) rounds:
  - round 1 pairs the losers of winners round 1;
  - round 2m takes the survivors of round 2m-1 against the losers of winners
    round m+1 (dropped in reverse order on odd m so recent opponents are split);
  - round 2m+1 pairs the survivors of round 2m.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from kartops.errors import InvalidInputError

BRACKET_WINNERS = "winners"
BRACKET_LOSERS = "losers"
BRACKET_GRAND_FINAL = "grand_final"

ROLE_WINNER = "WINNER"
ROLE_LOSER = "LOSER"

ROUND_GRAND_FINAL = "grand_final"
ROUND_GRAND_FINAL_RESET = "grand_final_reset"

MIN_ENTRANTS = 2
MAX_ENTRANTS = 64

_BRACKET_ORDER = {BRACKET_WINNERS: 0, BRACKET_LOSERS: 1, BRACKET_GRAND_FINAL: 2}

NodeKey = Tuple[str, int, int]  # (bracket, round index, position in round)


@dataclass(frozen=True)
class _Seed:
    seed: int
    player_id: int


@dataclass(frozen=True)
class _Feed:
    node: NodeKey
    role: str


_Source = Optional[Union[_Seed, _Feed]]


@dataclass(frozen=True)
class SlotSource:
    """Upstream match (by match number) whose WINNER or LOSER fills a slot."""

    match_number: int
    role: str


@dataclass(frozen=True)
class SlotTarget:
    """Downstream match (by match number) and slot (1 or 2) a result is sent to."""

    match_number: int
    slot: int


@dataclass
class MatchShell:
    match_number: int
    bracket: str
    round: str
    round_index: int
    position: int
    player1_id: Optional[int] = None
    player2_id: Optional[int] = None
    seed1: Optional[int] = None
    seed2: Optional[int] = None
    source1: Optional[SlotSource] = None
    source2: Optional[SlotSource] = None
    winner_to: Optional[SlotTarget] = None
    loser_to: Optional[SlotTarget] = None


@dataclass
class BracketPlan:
    event_type: str
    size: int
    entrants: List[int]
    winner_bracket: List[MatchShell] = field(default_factory=list)
    loser_bracket: List[MatchShell] = field(default_factory=list)
    grand_final: List[MatchShell] = field(default_factory=list)

    @property
    def all_matches(self) -> List[MatchShell]:
        return self.winner_bracket + self.loser_bracket + self.grand_final


def bracket_size(entrant_count: int) -> int:
    size = 1
    while size < entrant_count:
        size *= 2
    return size


def seed_order(size: int) -> List[int]:
    """
    Standard seeding order for a power-of-two bracket.

    Adjacent pairs are round-1 opponents (1 v size, then the 1 v 2 halves recurse),
    so seeds 1 and 2 can only meet in the final.
    """
    order = [1]
    while len(order) < size:
        total = len(order) * 2 + 1
        order = [s for seed in order for s in (seed, total - seed)]
    return order


def winners_round_label(round_index: int, total_rounds: int) -> str:
    from_end = total_rounds - round_index
    if from_end == 0:
        return "winners_final"
    if from_end == 1:
        return "winners_sf"
    if from_end == 2:
        return "winners_qf"
    return f"winners_r{round_index}"


def losers_round_label(round_index: int, total_rounds: int) -> str:
    if round_index == total_rounds:
        return "losers_final"
    if round_index == total_rounds - 1:
        return "losers_sf"
    return f"losers_r{round_index}"


class _Layout:
    """Bracket graph under construction, with byes and empty pairings resolved as nodes are added."""

    def __init__(self):
        self.slots: Dict[NodeKey, Tuple[_Source, _Source]] = {}
        self.real: List[NodeKey] = []
        self._real_set = set()

    def add(self, key: NodeKey, src1: _Source, src2: _Source) -> None:
        self.slots[key] = (src1, src2)
        if src1 is not None and src2 is not None:
            self.real.append(key)
            self._real_set.add(key)

    def winner(self, key: NodeKey) -> _Source:
        if key in self._real_set:
            return _Feed(key, ROLE_WINNER)
        src1, src2 = self.slots[key]
        # Bye passes its only entrant through; an empty pairing passes nothing
        return src1 if src1 is not None else src2

    def loser(self, key: NodeKey) -> _Source:
        if key in self._real_set:
            return _Feed(key, ROLE_LOSER)
        return None


def _validate_entrants(seeded_entrants: Sequence[int], max_entrants: int) -> List[int]:
    entrants = list(seeded_entrants)
    if len(entrants) < MIN_ENTRANTS:
        raise InvalidInputError(f"A bracket needs at least {MIN_ENTRANTS} entrants", field="top_n")
    if len(entrants) > max_entrants:
        raise InvalidInputError(f"A bracket supports at most {max_entrants} entrants", field="top_n")
    if len(set(entrants)) != len(entrants):
        raise InvalidInputError("Entrants must be distinct", field="entrants")
    return entrants


def _lay_out(entrants: List[int], size: int) -> Tuple[_Layout, int, int]:
    layout = _Layout()
    wb_rounds = size.bit_length() - 1
    lb_rounds = 2 * (wb_rounds - 1)

    def seed_source(seed: int) -> _Source:
        return _Seed(seed, entrants[seed - 1]) if seed <= len(entrants) else None

    order = seed_order(size)
    for i in range(size // 2):
        layout.add((BRACKET_WINNERS, 1, i), seed_source(order[2 * i]), seed_source(order[2 * i + 1]))
    for r in range(2, wb_rounds + 1):
        for i in range(size >> r):
            layout.add(
                (BRACKET_WINNERS, r, i),
                layout.winner((BRACKET_WINNERS, r - 1, 2 * i)),
                layout.winner((BRACKET_WINNERS, r - 1, 2 * i + 1)),
            )

    if lb_rounds:
        counts = {1: size // 4}
        for i in range(counts[1]):
            layout.add(
                (BRACKET_LOSERS, 1, i),
                layout.loser((BRACKET_WINNERS, 1, 2 * i)),
                layout.loser((BRACKET_WINNERS, 1, 2 * i + 1)),
            )
        for j in range(2, lb_rounds + 1):
            if j % 2 == 0:
                m = j // 2
                counts[j] = size >> (m + 1)
                drops = [layout.loser((BRACKET_WINNERS, m + 1, i)) for i in range(counts[j])]
                if m % 2 == 1:
                    drops.reverse()
                for i in range(counts[j]):
                    layout.add((BRACKET_LOSERS, j, i), layout.winner((BRACKET_LOSERS, j - 1, i)), drops[i])
            else:
                counts[j] = counts[j - 1] // 2
                for i in range(counts[j]):
                    layout.add(
                        (BRACKET_LOSERS, j, i),
                        layout.winner((BRACKET_LOSERS, j - 1, 2 * i)),
                        layout.winner((BRACKET_LOSERS, j - 1, 2 * i + 1)),
                    )

    wb_champion = layout.winner((BRACKET_WINNERS, wb_rounds, 0))
    if lb_rounds:
        lb_champion = layout.winner((BRACKET_LOSERS, lb_rounds, 0))
    else:
        # Two entrants: the loser of the only winners match goes straight to the grand final
        lb_champion = layout.loser((BRACKET_WINNERS, 1, 0))
    layout.add((BRACKET_GRAND_FINAL, 1, 0), wb_champion, lb_champion)
    return layout, wb_rounds, lb_rounds


def build(seeded_entrants: Sequence[int], event_type: str, max_entrants: int = MAX_ENTRANTS) -> BracketPlan:
    """
    Build the full double-elimination bracket for entrants listed best seed first.

    Match numbers are dense: winners rounds first, then losers rounds, then the
    grand final. The grand-final reset is not part of the plan; the advancer
    creates it only if the losers-bracket champion wins the grand final.
    """
    entrants = _validate_entrants(seeded_entrants, max_entrants)
    size = bracket_size(len(entrants))
    layout, wb_rounds, lb_rounds = _lay_out(entrants, size)

    ordered = sorted(layout.real, key=lambda key: (_BRACKET_ORDER[key[0]], key[1], key[2]))
    numbers = {key: n for n, key in enumerate(ordered, start=1)}

    shells: Dict[NodeKey, MatchShell] = {}
    for key in ordered:
        bracket, round_index, position = key
        if bracket == BRACKET_WINNERS:
            label = winners_round_label(round_index, wb_rounds)
        elif bracket == BRACKET_LOSERS:
            label = losers_round_label(round_index, lb_rounds)
        else:
            label = ROUND_GRAND_FINAL
        shells[key] = MatchShell(
            match_number=numbers[key],
            bracket=bracket,
            round=label,
            round_index=round_index,
            position=position,
        )

    for key in ordered:
        shell = shells[key]
        for slot, src in enumerate(layout.slots[key], start=1):
            if isinstance(src, _Seed):
                setattr(shell, f"player{slot}_id", src.player_id)
                setattr(shell, f"seed{slot}", src.seed)
            elif isinstance(src, _Feed):
                setattr(shell, f"source{slot}", SlotSource(numbers[src.node], src.role))
                feeder = shells[src.node]
                target = SlotTarget(shell.match_number, slot)
                if src.role == ROLE_WINNER:
                    feeder.winner_to = target
                else:
                    feeder.loser_to = target

    plan = BracketPlan(event_type=getattr(event_type, "value", event_type), size=size, entrants=entrants)
    for key in ordered:
        if key[0] == BRACKET_WINNERS:
            plan.winner_bracket.append(shells[key])
        elif key[0] == BRACKET_LOSERS:
            plan.loser_bracket.append(shells[key])
        else:
            plan.grand_final.append(shells[key])
    return plan
