"""
Double-elimination bracket construction: topology, byes and edges.

Pure tests, no database.
"""
import pytest

from kartops.errors import InvalidInputError
from kartops.services.bracket_builder import (
    BRACKET_GRAND_FINAL,
    BRACKET_LOSERS,
    BRACKET_WINNERS,
    ROLE_LOSER,
    ROLE_WINNER,
    ROUND_GRAND_FINAL,
    bracket_size,
    build,
    losers_round_label,
    seed_order,
    winners_round_label,
)


def _players(n):
    # Player ids deliberately differ from seed numbers
    return [100 + i for i in range(1, n + 1)]


def _by_number(plan):
    return {shell.match_number: shell for shell in plan.all_matches}


class TestSeedOrder:
    def test_eight(self):
        assert seed_order(8) == [1, 8, 4, 5, 2, 7, 3, 6]

    def test_four(self):
        assert seed_order(4) == [1, 4, 2, 3]

    def test_every_pair_sums_to_size_plus_one(self):
        order = seed_order(32)
        assert sorted(order) == list(range(1, 33))
        assert all(order[i] + order[i + 1] == 33 for i in range(0, 32, 2))

    def test_bracket_size(self):
        assert [bracket_size(n) for n in (2, 3, 5, 8, 9, 64)] == [2, 4, 8, 8, 16, 64]


class TestBracketSize:
    def test_eight_entrants(self):
        plan = build(_players(8), "MR")
        assert len(plan.winner_bracket) == 7
        assert len(plan.loser_bracket) == 6
        assert len(plan.grand_final) == 1
        assert plan.size == 8
        assert plan.event_type == "MR"

    def test_eight_entrants_round_shape(self):
        plan = build(_players(8), "BM")
        wb_rounds = [s.round for s in plan.winner_bracket]
        lb_rounds = [s.round for s in plan.loser_bracket]
        assert wb_rounds == ["winners_qf"] * 4 + ["winners_sf"] * 2 + ["winners_final"]
        assert lb_rounds == ["losers_r1"] * 2 + ["losers_r2"] * 2 + ["losers_sf", "losers_final"]
        assert plan.grand_final[0].round == ROUND_GRAND_FINAL

    @pytest.mark.parametrize("n", [2, 3, 4, 5, 6, 7, 9, 12, 16, 17, 24, 33, 64])
    def test_two_n_minus_two_matches(self, n):
        # Everyone but the champion loses twice, except the runner-up of a GF with no reset
        plan = build(_players(n), "GP")
        assert len(plan.all_matches) == 2 * n - 2

    def test_match_numbers_dense_in_bracket_order(self):
        plan = build(_players(8), "MR")
        assert [s.match_number for s in plan.all_matches] == list(range(1, 15))
        assert plan.winner_bracket[-1].match_number < plan.loser_bracket[0].match_number
        assert plan.grand_final[0].match_number == 14

    def test_first_round_pairings_follow_seed_order(self):
        entrants = _players(8)
        plan = build(entrants, "MR")
        first_round = [(s.seed1, s.seed2) for s in plan.winner_bracket[:4]]
        assert first_round == [(1, 8), (4, 5), (2, 7), (3, 6)]
        assert plan.winner_bracket[0].player1_id == entrants[0]
        assert plan.winner_bracket[0].player2_id == entrants[7]


class TestByes:
    def test_five_entrants_three_byes(self):
        entrants = _players(5)
        plan = build(entrants, "MR")
        assert len(plan.winner_bracket) == 4
        assert len(plan.loser_bracket) == 3
        assert len(plan.grand_final) == 1

        # Only seeds 4 and 5 play in round 1
        round1 = [s for s in plan.winner_bracket if s.round_index == 1]
        assert len(round1) == 1
        assert (round1[0].seed1, round1[0].seed2) == (4, 5)

        # Round 2 holds all three byed seeds and the round-1 winner; no open slots
        round2 = [s for s in plan.winner_bracket if s.round_index == 2]
        byed = {s.player1_id for s in round2} | {s.player2_id for s in round2}
        assert {entrants[0], entrants[1], entrants[2]} <= byed
        top = round2[0]
        assert top.player1_id == entrants[0]
        assert top.player2_id is None
        assert top.source2.match_number == round1[0].match_number
        assert top.source2.role == ROLE_WINNER
        assert (round2[1].player1_id, round2[1].player2_id) == (entrants[1], entrants[2])

    @pytest.mark.parametrize("n", [2, 3, 5, 6, 7, 11, 20, 37])
    def test_no_slot_left_unresolved(self, n):
        for shell in build(_players(n), "BM").all_matches:
            for slot in (1, 2):
                has_player = getattr(shell, f"player{slot}_id") is not None
                has_source = getattr(shell, f"source{slot}") is not None
                assert has_player != has_source, (shell.match_number, slot)

    def test_bye_loser_feeds_later_losers_round(self):
        plan = build(_players(5), "MR")
        round1 = plan.winner_bracket[0]
        # Nobody for the 4v5 loser to meet in losers round 1, so it drops to round 2
        assert round1.loser_to is not None
        target = _by_number(plan)[round1.loser_to.match_number]
        assert target.bracket == BRACKET_LOSERS
        assert target.round_index == 2

    def test_two_entrants(self):
        plan = build(_players(2), "MR")
        assert len(plan.winner_bracket) == 1
        assert len(plan.loser_bracket) == 0
        gf = plan.grand_final[0]
        assert gf.source1.role == ROLE_WINNER
        assert gf.source2.role == ROLE_LOSER
        assert gf.source1.match_number == gf.source2.match_number == 1

    def test_three_entrants(self):
        entrants = _players(3)
        plan = build(entrants, "GP")
        assert [len(plan.winner_bracket), len(plan.loser_bracket), len(plan.grand_final)] == [2, 1, 1]
        wb_final = plan.winner_bracket[1]
        assert wb_final.player1_id == entrants[0]
        lb = plan.loser_bracket[0]
        assert {lb.source1.role, lb.source2.role} == {ROLE_LOSER}


class TestEdges:
    @pytest.mark.parametrize("n", [4, 8, 13, 16])
    def test_sources_point_backwards(self, n):
        plan = build(_players(n), "MR")
        for shell in plan.all_matches:
            for source in (shell.source1, shell.source2):
                if source is not None:
                    assert source.match_number < shell.match_number

    @pytest.mark.parametrize("n", [4, 8, 13, 16])
    def test_targets_mirror_sources(self, n):
        plan = build(_players(n), "MR")
        matches = _by_number(plan)
        for shell in plan.all_matches:
            for slot in (1, 2):
                source = getattr(shell, f"source{slot}")
                if source is None:
                    continue
                feeder = matches[source.match_number]
                target = feeder.winner_to if source.role == ROLE_WINNER else feeder.loser_to
                assert (target.match_number, target.slot) == (shell.match_number, slot)

    def test_every_winners_match_drops_its_loser(self):
        plan = build(_players(8), "MR")
        for shell in plan.winner_bracket:
            assert shell.winner_to is not None
            assert shell.loser_to is not None
        for shell in plan.loser_bracket:
            assert shell.winner_to is not None
            assert shell.loser_to is None

    def test_grand_final_sources(self):
        plan = build(_players(8), "MR")
        gf = plan.grand_final[0]
        assert gf.bracket == BRACKET_GRAND_FINAL
        assert gf.source1.match_number == plan.winner_bracket[-1].match_number
        assert gf.source1.role == ROLE_WINNER
        assert gf.source2.match_number == plan.loser_bracket[-1].match_number
        assert gf.source2.role == ROLE_WINNER

    def test_winners_semifinal_losers_cross_over(self):
        plan = build(_players(8), "MR")
        sf = [s for s in plan.winner_bracket if s.round == "winners_sf"]
        lb_r2 = [s for s in plan.loser_bracket if s.round == "losers_r2"]
        # Top semifinal's loser meets the bottom half of losers round 2
        assert sf[0].loser_to.match_number == lb_r2[1].match_number
        assert sf[1].loser_to.match_number == lb_r2[0].match_number
        assert all(s.bracket == BRACKET_WINNERS for s in sf)


class TestLabels:
    def test_winners_labels(self):
        assert [winners_round_label(r, 4) for r in (1, 2, 3, 4)] == [
            "winners_r1",
            "winners_qf",
            "winners_sf",
            "winners_final",
        ]

    def test_losers_labels(self):
        assert [losers_round_label(r, 4) for r in (1, 2, 3, 4)] == [
            "losers_r1",
            "losers_r2",
            "losers_sf",
            "losers_final",
        ]


class TestValidation:
    def test_too_few(self):
        with pytest.raises(InvalidInputError) as exc:
            build([1], "MR")
        assert exc.value.field == "top_n"

    def test_too_many(self):
        with pytest.raises(InvalidInputError):
            build(_players(65), "MR")

    def test_smaller_cap(self):
        with pytest.raises(InvalidInputError):
            build(_players(9), "MR", max_entrants=8)

    def test_duplicates(self):
        with pytest.raises(InvalidInputError) as exc:
            build([1, 2, 2, 3], "MR")
        assert exc.value.field == "entrants"
