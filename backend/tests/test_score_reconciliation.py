"""
Dual-report score reconciliation: waiting, auto-confirmation, mismatches,
admin overrides and version conflicts.
"""
import logging

import pytest
from sqlalchemy import update
from sqlmodel import Session, select

from kartops.auth import CallerIdentity
from kartops.errors import (
    AlreadyCompletedError,
    ConflictError,
    DisputedError,
    InvalidInputError,
    UnauthorizedError,
)
from kartops.models.logs import AuditLog, CharacterUsage, ScoreEntryLog
from kartops.models.match import Match
from kartops.services import audit, score_reconciliation, standings, version_store
from kartops.services.match_lifecycle import MatchState, match_state
from kartops.services.qualification_setup import QualificationEntry, setup_qualification
from kartops.services.score_reconciliation import (
    MISMATCH_RACES,
    MISMATCH_SCORE,
    STATUS_AUTO_CONFIRMED,
    STATUS_MISMATCH,
    STATUS_WAITING,
    admin_set_score,
    reconcile,
    report_score,
)

ADMIN = CallerIdentity(is_admin=True)
TOKEN = CallerIdentity(has_tournament_token=True)

MR_RACES = [
    {"course": "MC1", "winner": 1},
    {"course": "DP1", "winner": 2},
    {"course": "GV1", "winner": 1},
    {"course": "BC1", "winner": 1},
]


def _setup(session, tournament, player_ids, event_type="MR"):
    result = setup_qualification(
        session, tournament.id, event_type, [QualificationEntry(player_id=pid, group="A") for pid in player_ids]
    )
    return result.matches


def _as(player_id):
    return CallerIdentity(player_id=player_id)


def _bump_version_from_elsewhere(session: Session, match_id: int) -> None:
    """Simulate a concurrent writer committing through its own session."""
    with Session(session.get_bind()) as other:
        other.execute(update(Match).where(Match.id == match_id).values(version=Match.version + 1))
        other.commit()


@pytest.fixture
def mr_match(session: Session, tournament, make_players):
    p1, p2 = make_players(2)
    match = _setup(session, tournament, [p1, p2])[0]
    return match, p1, p2


class TestDualReport:
    def test_first_report_waits_for_opponent(self, session: Session, mr_match):
        match, p1, _ = mr_match
        result = report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))

        assert result.status == STATUS_WAITING
        assert result.waiting_for == 2
        assert result.match.completed is False
        assert result.match.player1_reported_score1 == 3
        assert result.match.version == 1
        assert match_state(result.match) == MatchState.AWAITING_CONFIRMATION

    def test_matching_reports_auto_confirm(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        result = report_score(session, match.id, 2, {"score1": 3, "score2": 1}, _as(p2))

        assert result.status == STATUS_AUTO_CONFIRMED
        assert result.auto_confirmed
        assert result.match.completed is True
        assert (result.match.score1, result.match.score2) == (3, 1)
        assert result.match.completed_at is not None
        assert sorted(result.effects.standings_updated) == sorted([p1, p2])
        assert result.effects.errors == []

        q1 = standings.get_qualification(session, match.tournament_id, "MR", p1)
        q2 = standings.get_qualification(session, match.tournament_id, "MR", p2)
        assert (q1.mp, q1.wins, q1.points, q1.score) == (1, 1, 2, 2)
        assert (q2.mp, q2.losses, q2.points, q2.score) == (1, 1, -2, 0)

    def test_score_mismatch_stays_open(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        result = report_score(session, match.id, 2, {"score1": 2, "score2": 2}, _as(p2))

        assert result.status == STATUS_MISMATCH
        assert result.mismatch
        assert result.mismatch_kind == MISMATCH_SCORE
        assert result.match.completed is False
        assert result.match.score1 is None
        assert result.player1_report.to_dict() == {"score1": 3, "score2": 1, "races": None}
        assert result.player2_report.to_dict() == {"score1": 2, "score2": 2, "races": None}
        assert result.effects is None
        assert match_state(result.match) == MatchState.DISPUTED

    def test_race_detail_mismatch(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        reordered = [MR_RACES[1], MR_RACES[0], MR_RACES[2], MR_RACES[3]]
        report_score(session, match.id, 1, {"score1": 3, "score2": 1, "races": MR_RACES}, _as(p1))
        result = report_score(session, match.id, 2, {"score1": 3, "score2": 1, "races": reordered}, _as(p2))

        assert result.status == STATUS_MISMATCH
        assert result.mismatch_kind == MISMATCH_RACES
        assert result.match.completed is False

    def test_one_sided_race_detail_is_kept(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1, "races": MR_RACES}, _as(p1))
        result = report_score(session, match.id, 2, {"score1": 3, "score2": 1}, _as(p2))

        assert result.auto_confirmed
        assert result.match.rounds == MR_RACES

    def test_reports_commute(self, session: Session, tournament, make_players):
        p1, p2, p3, p4 = make_players(4)
        matches = _setup(session, tournament, [p1, p2, p3, p4])
        first, second = matches[0], matches[1]
        payload = {"score1": 1, "score2": 3, "races": [
            {"course": "MC1", "winner": 2},
            {"course": "DP1", "winner": 1},
            {"course": "GV1", "winner": 2},
            {"course": "BC1", "winner": 2},
        ]}

        report_score(session, first.id, 1, payload, _as(first.player1_id))
        a = report_score(session, first.id, 2, payload, _as(first.player2_id)).match
        report_score(session, second.id, 2, payload, _as(second.player2_id))
        b = report_score(session, second.id, 1, payload, _as(second.player1_id)).match

        def confirmed(m):
            return m.completed, m.score1, m.score2, m.rounds, match_state(m)

        assert confirmed(a) == confirmed(b)
        assert a.completed is True

    def test_reporter_may_revise_before_opponent_reports(self, session: Session, mr_match):
        match, p1, _ = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        result = report_score(session, match.id, 1, {"score1": 3, "score2": 2}, _as(p1))

        assert result.status == STATUS_WAITING
        assert result.match.player1_reported_score2 == 2
        assert result.match.version == 2

    def test_disputed_match_rejects_further_reports(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        report_score(session, match.id, 2, {"score1": 1, "score2": 3}, _as(p2))

        with pytest.raises(DisputedError):
            report_score(session, match.id, 2, {"score1": 3, "score2": 1}, _as(p2))
        assert version_store.read(session, match.id).player2_reported_score1 == 1


class TestGrandPrix:
    def test_point_totals_confirmed(self, session: Session, tournament, make_players):
        p1, p2 = make_players(2)
        match = _setup(session, tournament, [p1, p2], event_type="GP")[0]
        races = [
            {"course": "MC1", "position1": 1, "position2": 2},
            {"course": "DP1", "position1": 1, "position2": 3},
            {"course": "GV1", "position1": 2, "position2": 1},
            {"course": "BC1", "position1": 2, "position2": 4},
        ]
        payload = {"cup": "Mushroom", "races": races, "character": "Toad"}

        report_score(session, match.id, 1, payload, _as(p1))
        result = report_score(session, match.id, 2, payload, _as(p2))

        assert result.auto_confirmed
        assert (result.match.score1, result.match.score2) == (30, 19)
        assert result.match.cup == "Mushroom"
        assert [r["points1"] for r in result.match.rounds] == [9, 9, 6, 6]

        q1 = standings.get_qualification(session, tournament.id, "GP", p1)
        q2 = standings.get_qualification(session, tournament.id, "GP", p2)
        assert (q1.points, q1.score) == (30, 2)
        assert (q2.points, q2.score) == (19, 0)


class TestRejections:
    def test_completed_match_rejects_report_without_writing(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        report_score(session, match.id, 2, {"score1": 3, "score2": 1}, _as(p2))
        before = version_store.read(session, match.id).version
        logs_before = len(session.exec(select(ScoreEntryLog)).all())

        with pytest.raises(AlreadyCompletedError):
            report_score(session, match.id, 1, {"score1": 0, "score2": 3}, _as(p1))

        after = version_store.read(session, match.id)
        assert after.version == before
        assert (after.score1, after.score2) == (3, 1)
        assert len(session.exec(select(ScoreEntryLog)).all()) == logs_before

    def test_player_cannot_report_for_opponent(self, session: Session, mr_match):
        match, _, p2 = mr_match
        with pytest.raises(UnauthorizedError):
            report_score(session, match.id, 1, {"score1": 0, "score2": 3}, _as(p2))
        assert version_store.read(session, match.id).version == 0

    def test_malformed_report_fails_validation_before_authorization(self, session: Session, mr_match):
        match, _, p2 = mr_match
        with pytest.raises(InvalidInputError) as exc:
            report_score(session, match.id, 1, {"score1": 5, "score2": 1}, _as(p2))
        assert exc.value.field == "score1"

    def test_outsider_cannot_report(self, session: Session, mr_match, make_players):
        match, _, _ = mr_match
        (outsider,) = make_players(1)
        with pytest.raises(UnauthorizedError):
            report_score(session, match.id, 1, {"score1": 3, "score2": 0}, _as(outsider))
        with pytest.raises(UnauthorizedError):
            report_score(session, match.id, 1, {"score1": 3, "score2": 0}, CallerIdentity())

    def test_token_holder_and_admin_may_report_either_side(self, session: Session, mr_match):
        match, _, _ = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 0}, TOKEN)
        result = report_score(session, match.id, 2, {"score1": 3, "score2": 0}, ADMIN)
        assert result.auto_confirmed

    def test_invalid_payload_writes_nothing(self, session: Session, mr_match):
        match, p1, _ = mr_match
        with pytest.raises(InvalidInputError) as exc:
            report_score(session, match.id, 1, {"score1": 5, "score2": 1}, _as(p1))
        assert exc.value.field == "score1"
        assert version_store.read(session, match.id).version == 0

    def test_unknown_character(self, session: Session, mr_match):
        match, p1, _ = mr_match
        with pytest.raises(InvalidInputError) as exc:
            report_score(session, match.id, 1, {"score1": 3, "score2": 1, "character": "Wario"}, _as(p1))
        assert exc.value.field == "character"

    def test_bad_reporting_player(self, session: Session, mr_match):
        match, p1, _ = mr_match
        with pytest.raises(InvalidInputError) as exc:
            report_score(session, match.id, 3, {"score1": 3, "score2": 1}, _as(p1))
        assert exc.value.field == "reporting_player"

    def test_match_without_both_players(self, session: Session, tournament, make_players):
        (p1,) = make_players(1)
        match = Match(tournament_id=tournament.id, event_type="MR", stage="finals", match_number=1, player1_id=p1)
        session.add(match)
        session.commit()
        session.refresh(match)
        with pytest.raises(InvalidInputError) as exc:
            report_score(session, match.id, 1, {"score1": 7, "score2": 1}, ADMIN)
        assert exc.value.field == "match_id"


class TestSideRecords:
    def test_score_entry_and_character_logged(self, session: Session, mr_match):
        match, p1, _ = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1, "character": "Yoshi"}, _as(p1))

        logs = session.exec(select(ScoreEntryLog).where(ScoreEntryLog.match_id == match.id)).all()
        assert len(logs) == 1
        assert logs[0].player_id == p1
        assert logs[0].reported_data["score1"] == 3
        assert logs[0].reported_data["character"] == "Yoshi"

        usage = session.exec(select(CharacterUsage)).all()
        assert [(u.player_id, u.character) for u in usage] == [(p1, "Yoshi")]

    def test_log_failure_does_not_block_report(self, session: Session, mr_match, monkeypatch, caplog):
        match, p1, _ = mr_match
        # An unmapped object makes session.add() raise inside the best-effort write
        monkeypatch.setattr(audit, "ScoreEntryLog", lambda **kwargs: object())

        with caplog.at_level(logging.WARNING, logger="kartops"):
            result = report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))

        assert result.status == STATUS_WAITING
        assert version_store.read(session, match.id).player1_reported_score1 == 3
        assert "Failed to write score entry log" in caplog.text

    def test_bookkeeping_failure_keeps_completion(self, session: Session, mr_match, monkeypatch, caplog):
        match, p1, p2 = mr_match

        def broken(session, match):
            raise RuntimeError("standings table locked")

        monkeypatch.setattr(standings, "recalculate_for_match", broken)
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        with caplog.at_level(logging.ERROR, logger="kartops"):
            result = report_score(session, match.id, 2, {"score1": 3, "score2": 1}, _as(p2))

        assert result.auto_confirmed
        assert result.effects.errors == ["standings: standings table locked"]
        assert version_store.read(session, match.id).completed is True
        assert "Standings recalculation failed" in caplog.text


class TestConcurrency:
    def test_conflicting_write_is_retried(self, session: Session, mr_match, monkeypatch):
        match, p1, _ = mr_match
        real_read = version_store.read
        calls = []

        def racing_read(session, match_id):
            calls.append(match_id)
            current = real_read(session, match_id)
            if len(calls) == 2:
                # The report write read version 0; someone else commits first
                _bump_version_from_elsewhere(session, match_id)
            return current

        monkeypatch.setattr(version_store, "read", racing_read)
        result = report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1), max_attempts=3)

        assert result.status == STATUS_WAITING
        assert result.match.player1_reported_score1 == 3
        assert result.match.version == 2

    def test_conflict_budget_exhausted(self, session: Session, mr_match, monkeypatch):
        match, p1, _ = mr_match
        real_read = version_store.read
        calls = []

        def always_racing(session, match_id):
            calls.append(match_id)
            current = real_read(session, match_id)
            if len(calls) > 1:
                _bump_version_from_elsewhere(session, match_id)
            return current

        monkeypatch.setattr(version_store, "read", always_racing)
        with pytest.raises(ConflictError) as exc:
            report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1), max_attempts=2)

        assert exc.value.to_dict()["requires_refresh"] is True
        monkeypatch.undo()
        assert version_store.read(session, match.id).player1_reported_score1 is None


class TestAdminOverride:
    def test_admin_settles_dispute(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        report_score(session, match.id, 2, {"score1": 2, "score2": 2}, _as(p2))

        settled = admin_set_score(session, match.id, 3, 1, None, ADMIN)

        assert settled.completed is True
        assert (settled.score1, settled.score2) == (3, 1)
        assert match_state(settled) == MatchState.COMPLETED
        q1 = standings.get_qualification(session, match.tournament_id, "MR", p1)
        assert (q1.wins, q1.score) == (1, 2)

        audits = session.exec(select(AuditLog).where(AuditLog.action == "ADMIN_SET_SCORE")).all()
        assert len(audits) == 1
        assert audits[0].target_id == match.id
        assert audits[0].actor == "admin"

    def test_admin_corrects_completed_match(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        report_score(session, match.id, 2, {"score1": 3, "score2": 1}, _as(p2))

        admin_set_score(session, match.id, 1, 3, None, ADMIN)

        q1 = standings.get_qualification(session, match.tournament_id, "MR", p1)
        q2 = standings.get_qualification(session, match.tournament_id, "MR", p2)
        assert (q1.wins, q1.losses, q1.points) == (0, 1, -2)
        assert (q2.wins, q2.losses, q2.points) == (1, 0, 2)

    def test_admin_override_validates_scores(self, session: Session, mr_match):
        match, _, _ = mr_match
        with pytest.raises(InvalidInputError):
            admin_set_score(session, match.id, 4, 0, None, ADMIN)

    def test_players_cannot_override(self, session: Session, mr_match):
        match, p1, _ = mr_match
        with pytest.raises(UnauthorizedError):
            admin_set_score(session, match.id, 3, 0, None, _as(p1))

    def test_completed_match_cannot_be_reopened(self, session: Session, mr_match):
        match, p1, p2 = mr_match
        report_score(session, match.id, 1, {"score1": 3, "score2": 1}, _as(p1))
        report_score(session, match.id, 2, {"score1": 3, "score2": 1}, _as(p2))
        before = version_store.read(session, match.id).version

        with pytest.raises(AlreadyCompletedError):
            admin_set_score(session, match.id, 3, 1, None, ADMIN, completed=False)

        after = version_store.read(session, match.id)
        assert after.completed is True
        assert after.version == before
        # Standings still count exactly the completed match
        q1 = standings.get_qualification(session, match.tournament_id, "MR", p1)
        assert (q1.mp, q1.wins) == (1, 1)

    def test_score_without_completing_leaves_standings_alone(self, session: Session, mr_match):
        match, p1, _ = mr_match
        updated = admin_set_score(session, match.id, 2, 1, None, ADMIN, completed=False)

        assert updated.completed is False
        assert (updated.score1, updated.score2) == (2, 1)
        assert updated.version == 1
        q1 = standings.get_qualification(session, match.tournament_id, "MR", p1)
        assert q1.mp == 0


class TestReconcile:
    def _match(self, **reports):
        return Match(tournament_id=1, event_type="MR", match_number=1, player1_id=1, player2_id=2, **reports)

    def test_waiting_for_either_side(self):
        assert reconcile(self._match()).waiting_for == 1
        only_first = self._match(player1_reported_score1=3, player1_reported_score2=0)
        assert reconcile(only_first).waiting_for == 2

    def test_agreement(self):
        decision = reconcile(
            self._match(
                player1_reported_score1=0,
                player1_reported_score2=3,
                player2_reported_score1=0,
                player2_reported_score2=3,
            )
        )
        assert decision.status == STATUS_AUTO_CONFIRMED
        assert decision.outcome.winner == 2

    def test_never_picks_a_side(self):
        decision = reconcile(
            self._match(
                player1_reported_score1=3,
                player1_reported_score2=0,
                player2_reported_score1=0,
                player2_reported_score2=3,
            )
        )
        assert decision.status == STATUS_MISMATCH
        assert decision.confirmed is None


class TestAdminViews:
    def test_score_entry_logs_grouped_by_match(self, session: Session, tournament, make_players):
        matches = _setup(session, tournament, make_players(3))
        first, second = matches[0].id, matches[1].id
        report_score(session, first, 1, {"score1": 3, "score2": 1}, ADMIN)
        report_score(session, first, 2, {"score1": 3, "score2": 1}, ADMIN)
        report_score(session, second, 1, {"score1": 2, "score2": 2}, ADMIN)

        logs = audit.score_entry_logs(session, tournament.id)
        assert set(logs) == {first, second}
        # Newest first within a match
        assert [log.reported_data["reporting_player"] for log in logs[first]] == [2, 1]
        assert len(logs[second]) == 1

    def test_character_stats_count_matches_and_wins(self, session: Session, tournament, make_players):
        p1, p2, p3 = make_players(3)
        matches = _setup(session, tournament, [p1, p2, p3])
        p1_matches = [m for m in matches if p1 in (m.player1_id, m.player2_id)]
        assert len(p1_matches) == 2

        for match, p1_wins in zip(p1_matches, (True, False)):
            slot = 1 if match.player1_id == p1 else 2
            score1, score2 = (3, 1) if (slot == 1) == p1_wins else (1, 3)
            payload = {"score1": score1, "score2": score2}
            report_score(session, match.id, slot, {**payload, "character": "Yoshi"}, ADMIN)
            report_score(session, match.id, 3 - slot, payload, ADMIN)

        stats = audit.character_stats(session, p1)
        assert [(s.character, s.match_count, s.win_count) for s in stats] == [("Yoshi", 2, 1)]
        assert stats[0].win_rate == 0.5
        assert audit.character_stats(session, p2) == []
