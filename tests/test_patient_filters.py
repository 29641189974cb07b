"""Tests for the patient search/filter/sort pipeline and reporting periods."""
from datetime import date, datetime, timezone

import pytest

from models import Patient
from patient_filters import (
    calculate_age,
    filter_by_period,
    filter_patients,
    patient_status,
    period_start,
    process_patients,
    sort_patients,
)

TODAY = date(2025, 3, 12)  # a Wednesday


def make(pid, first="Ann", surname="Smith", dob=None, sex="Female", payment="cash",
         id_number="0000000000000", contact="0820000000", changed=None, created=None):
    return Patient(
        id=pid,
        first_name=first,
        surname=surname,
        date_of_birth=dob,
        sex=sex,
        payment_method=payment,
        id_number=id_number,
        contact_number=contact,
        last_status_change=changed,
        created_at=created,
    )


def ts(year, month, day, hour=10):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def patients():
    return [
        make("1", "Zola", "Dube", date(1990, 6, 1), "Female", "cash", "9006010000001", "0821111111"),
        make("2", "Adam", "Khan", date(2000, 1, 1), "Male", "medical_aid", "0001010000002", "0832222222"),
        make("3", "Mary", "Botha", date(1980, 3, 12), "Female", "medical_aid", "8003120000003", "0843333333"),
    ]


class TestAge:
    def test_birthday_today_counts(self):
        assert calculate_age(date(1980, 3, 12), TODAY) == 45

    def test_birthday_later_this_year(self):
        assert calculate_age(date(1990, 6, 1), TODAY) == 34

    def test_missing_birth_date(self):
        assert calculate_age(None, TODAY) == 0


class TestFilter:
    def test_search_is_case_insensitive_on_name(self, patients):
        assert [p.id for p in filter_patients(patients, "zola dUBE")] == ["1"]

    def test_search_matches_id_number_and_contact(self, patients):
        assert [p.id for p in filter_patients(patients, "0001010")] == ["2"]
        assert [p.id for p in filter_patients(patients, "3333")] == ["3"]

    def test_gender_and_payment_filters(self, patients):
        assert [p.id for p in filter_patients(patients, gender="Female", payment_method="medical_aid")] == ["3"]
        assert [p.id for p in filter_patients(patients, gender="Male")] == ["2"]

    def test_no_filters_keeps_everyone(self, patients):
        assert filter_patients(patients) == patients

    def test_empty_input(self):
        assert process_patients([], "anything", "Male", "cash", "age", "desc", TODAY) == []


class TestSort:
    def test_age_descending_puts_oldest_first(self, patients):
        result = sort_patients(patients, "age", "desc", TODAY)
        assert [p.id for p in result] == ["3", "1", "2"]

    def test_age_ascending_puts_youngest_first(self, patients):
        result = sort_patients(patients, "age", "asc", TODAY)
        assert [p.id for p in result] == ["2", "1", "3"]

    def test_name(self, patients):
        assert [p.full_name for p in sort_patients(patients, "name", "asc")] == [
            "Adam Khan",
            "Mary Botha",
            "Zola Dube",
        ]

    def test_last_visit_uses_created_at_and_puts_unknown_last_when_descending(self):
        recent = make("recent", changed=ts(2025, 3, 11))
        registered = make("registered", created=ts(2025, 2, 1))
        unknown = make("unknown")
        result = sort_patients([unknown, registered, recent], "lastVisit", "desc")
        assert [p.id for p in result] == ["recent", "registered", "unknown"]

    def test_ties_keep_input_order(self):
        twins = [make("a", "Sam", "Lee"), make("b", "Sam", "Lee"), make("c", "Sam", "Lee")]
        assert [p.id for p in sort_patients(twins, "name", "asc")] == ["a", "b", "c"]

    def test_pipeline_is_repeatable(self, patients):
        first = process_patients(patients, "a", "all", "all", "age", "desc", TODAY)
        second = process_patients(patients, "a", "all", "all", "age", "desc", TODAY)
        assert [p.id for p in first] == [p.id for p in second]


class TestPeriods:
    def test_week_starts_on_sunday(self):
        assert period_start("week", TODAY) == date(2025, 3, 9)
        assert period_start("week", date(2025, 3, 9)) == date(2025, 3, 9)

    def test_month_and_year(self):
        assert period_start("month", TODAY) == date(2025, 3, 1)
        assert period_start("year", TODAY) == date(2025, 1, 1)

    def test_today_versus_all(self):
        seen_today = make("today", changed=ts(2025, 3, 12))
        seen_before = make("before", changed=ts(2025, 3, 1))
        patients = [seen_today, seen_before]

        assert [p.id for p in filter_by_period(patients, "today", TODAY, timezone.utc)] == ["today"]
        assert [p.id for p in filter_by_period(patients, "all", TODAY, timezone.utc)] == ["today", "before"]
        assert [p.id for p in filter_by_period(patients, "month", TODAY, timezone.utc)] == ["today", "before"]

    def test_registration_counts_as_activity(self):
        registered = make("new", created=ts(2025, 3, 10))
        assert filter_by_period([registered], "week", TODAY, timezone.utc) == [registered]

    def test_registered_yesterday_is_not_today(self):
        registered = make("old", created=ts(2025, 3, 11))
        assert filter_by_period([registered], "today", TODAY, timezone.utc) == []
        assert filter_by_period([registered], "all", TODAY, timezone.utc) == [registered]

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            filter_by_period([], "fortnight", TODAY)


class TestPatientStatus:
    NOW = ts(2025, 3, 12)

    def test_recently_registered_is_new(self):
        assert patient_status(make("p", created=ts(2025, 3, 1)), self.NOW) == "new"

    def test_recent_visit_is_active(self):
        p = make("p", created=ts(2024, 1, 1), changed=ts(2025, 2, 1))
        assert patient_status(p, self.NOW) == "active"

    def test_half_year_is_follow_up(self):
        p = make("p", created=ts(2023, 1, 1), changed=ts(2024, 8, 1))
        assert patient_status(p, self.NOW) == "follow-up"

    def test_over_a_year_is_inactive(self):
        p = make("p", created=ts(2022, 1, 1), changed=ts(2023, 6, 1))
        assert patient_status(p, self.NOW) == "inactive"
