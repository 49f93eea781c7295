"""
Round-robin pairings for qualification groups.
"""
from typing import List, Tuple


def rr_round_count(group_size: int) -> int:
    """
    Return number of RR rounds for a group of n players.
    Even n: n-1 rounds. Odd n: n rounds (one player sits out each round).
    """
    if group_size % 2 == 0:
        return group_size - 1
    return group_size


def rr_pairings_by_round(group_size: int) -> List[Tuple[int, int, int, int]]:
    """
    Round-robin pairings. Returns list of (round_index, sequence_in_round, idx_a, idx_b).
    idx_a, idx_b are 0-based group positions (seeding order within the group).

    Circle method: position 0 is fixed, the rest rotate. Every pair meets exactly once.
    """
    if group_size < 2:
        return []

    n = group_size
    n2 = n + 1 if n % 2 == 1 else n  # Add a sit-out slot for odd n
    half = n2 // 2
    sit_out = n if n % 2 == 1 else -1

    result: List[Tuple[int, int, int, int]] = []
    positions = list(range(n2))

    for round_num in range(1, rr_round_count(n) + 1):
        seq = 0
        for i in range(half):
            a, b = positions[i], positions[n2 - 1 - i]
            if a == sit_out or b == sit_out:
                continue
            seq += 1
            result.append((round_num, seq, min(a, b), max(a, b)))
        # Rotate: keep 0, move last to second, shift others
        positions = [positions[0]] + [positions[-1]] + positions[1:-1]

    return result
