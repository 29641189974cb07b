"""Tests for queue derivation and status transition rules."""
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from consultation_queue import (
    TransitionError,
    check_transition,
    derive_queue,
    local_date,
    next_date,
    previous_date,
)
from models import ConsultationStatus, Patient

DAY = date(2025, 3, 10)


def at(hour, minute=0, day=10):
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


def patient(pid, status="none", changed=None, created=None):
    return Patient(
        id=pid,
        first_name=pid,
        consultation_status=status,
        last_status_change=changed,
        created_at=created,
    )


class TestDeriveQueue:
    def test_waiting_is_first_in_first_out(self):
        patients = [
            patient("late", "waiting", at(10)),
            patient("early", "waiting", at(8)),
            patient("middle", "waiting", at(9)),
        ]
        board = derive_queue(patients, DAY, timezone.utc)

        assert [p.id for p in board.waiting] == ["early", "middle", "late"]
        assert board.next_up.id == "early"

    def test_other_days_are_left_out(self):
        patients = [
            patient("today", "waiting", at(9)),
            patient("yesterday", "waiting", at(9, day=9)),
            patient("served-yesterday", "served", at(15, day=9)),
        ]
        board = derive_queue(patients, DAY, timezone.utc)

        assert [p.id for p in board.waiting] == ["today"]
        assert board.served == []

    def test_waiting_falls_back_to_created_at(self):
        patients = [patient("walk-in", "waiting", changed=None, created=at(7))]
        board = derive_queue(patients, DAY, timezone.utc)
        assert [p.id for p in board.waiting] == ["walk-in"]

    def test_patients_without_timestamps_are_dropped(self):
        patients = [
            patient("a", "waiting"),
            patient("b", "in_consultation"),
            patient("c", "served"),
        ]
        board = derive_queue(patients, DAY, timezone.utc)
        assert board.waiting == board.in_consultation == board.served == []

    def test_served_most_recent_first(self):
        patients = [
            patient("first", "served", at(9)),
            patient("last", "served", at(11)),
        ]
        board = derive_queue(patients, DAY, timezone.utc)
        assert [p.id for p in board.served] == ["last", "first"]

    def test_never_queued_patients_are_not_on_the_board(self):
        board = derive_queue([patient("new")], DAY, timezone.utc)
        assert board.waiting == board.in_consultation == board.served == []

    def test_occupied_room_blocks_start(self):
        patients = [
            patient("in", "in_consultation", at(9)),
            patient("next", "waiting", at(9, 30)),
        ]
        board = derive_queue(patients, DAY, timezone.utc)
        assert not board.can_start_consultation

    def test_day_boundary_follows_clinic_time_zone(self):
        johannesburg = ZoneInfo("Africa/Johannesburg")
        # 23:30 UTC on the 9th is 01:30 on the 10th in Johannesburg.
        late = patient("late", "waiting", datetime(2025, 3, 9, 23, 30, tzinfo=timezone.utc))

        assert [p.id for p in derive_queue([late], DAY, johannesburg).waiting] == ["late"]
        assert derive_queue([late], DAY, timezone.utc).waiting == []


class TestBoardDict:
    def test_positions_and_next_flag(self):
        patients = [patient("a", "waiting", at(8)), patient("b", "waiting", at(9))]
        board = derive_queue(patients, DAY, timezone.utc).as_dict(today=DAY)

        assert [(w["id"], w["position"], w["is_next"]) for w in board["waiting"]] == [
            ("a", 1, True),
            ("b", 2, False),
        ]
        assert board["next_patient_id"] == "a"
        assert board["can_start_consultation"] is True

    def test_navigation_stops_at_today(self):
        board = derive_queue([], DAY, timezone.utc).as_dict(today=DAY)
        assert board["is_today"] is True
        assert board["previous_date"] == "2025-03-09"
        assert board["next_date"] is None

    def test_past_day_can_move_forward(self):
        board = derive_queue([], date(2025, 3, 8), timezone.utc).as_dict(today=DAY)
        assert board["is_today"] is False
        assert board["next_date"] == "2025-03-09"


class TestDates:
    def test_previous_and_next(self):
        assert previous_date(DAY) == date(2025, 3, 9)
        assert next_date(date(2025, 3, 9), DAY) == DAY
        assert next_date(DAY, DAY) is None

    def test_naive_timestamp_is_taken_as_local(self):
        assert local_date(datetime(2025, 3, 10, 23, 59), ZoneInfo("Asia/Tokyo")) == DAY


class TestTransitions:
    @pytest.mark.parametrize(
        "status,action,expected",
        [
            ("none", "check_in", ConsultationStatus.waiting),
            ("none", "follow_up", ConsultationStatus.waiting),
            ("waiting", "start", ConsultationStatus.in_consultation),
            ("in_consultation", "complete", ConsultationStatus.served),
        ],
    )
    def test_allowed(self, status, action, expected):
        assert check_transition(patient("p", status, at(8)), action, DAY, timezone.utc) == expected

    @pytest.mark.parametrize(
        "status,action,message",
        [
            ("waiting", "check_in", "already waiting"),
            ("in_consultation", "check_in", "already in consultation"),
            ("none", "start", "not in the queue"),
            ("waiting", "complete", "already waiting"),
            ("served", "start", "already been served"),
        ],
    )
    def test_refused(self, status, action, message):
        with pytest.raises(TransitionError, match=message):
            check_transition(patient("p", status, at(8)), action, DAY, timezone.utc)

    def test_served_today_cannot_requeue(self):
        with pytest.raises(TransitionError, match="served today"):
            check_transition(patient("p", "served", at(8)), "check_in", DAY, timezone.utc)

    def test_served_earlier_can_requeue(self):
        served = patient("p", "served", at(8, day=3))
        assert check_transition(served, "follow_up", DAY, timezone.utc) == ConsultationStatus.waiting

    def test_unknown_action(self):
        with pytest.raises(TransitionError, match="Unknown queue action"):
            check_transition(patient("p"), "teleport", DAY)
