"""Tests for lab result helpers, the lab result store and its routes."""
from datetime import date, datetime, timezone

import pytest

from lab_results import (
    LabResultFilters,
    analyze_trend,
    compare_to_reference_range,
    format_reference_range,
    is_abnormal,
    is_final,
    needs_acknowledgment,
    result_warnings,
    severity_level,
    sort_results,
)
from models import LabResult
from schemas import LabResultRequest


def lab(rid="r1", flag=None, value=None, low=None, high=None, day=1, **extra):
    return LabResult(
        id=rid,
        patient_id="p1",
        test_code=extra.pop("test_code", "GLU"),
        test_name=extra.pop("test_name", "Glucose"),
        result_value=str(value) if value is not None else "see comment",
        result_value_numeric=value,
        reference_range_low=low,
        reference_range_high=high,
        abnormal_flag=flag,
        collection_datetime=datetime(2025, 3, day, 8, tzinfo=timezone.utc),
        **extra,
    )


def lab_request(patient_id, **overrides):
    data = {
        "patient_id": patient_id,
        "accession_number": "ACC-1",
        "test_code": "K",
        "test_name": "Potassium",
        "result_value": "4.1",
        "result_unit": "mmol/L",
        "reference_range_low": 3.5,
        "reference_range_high": 5.1,
        "abnormal_flag": "N",
        "collection_datetime": "2025-03-09T08:00:00+00:00",
    }
    data.update(overrides)
    return LabResultRequest(**data)


class TestClassification:
    def test_abnormal_flags(self):
        assert not is_abnormal(lab(flag=None))
        assert not is_abnormal(lab(flag="N"))
        assert is_abnormal(lab(flag="L"))
        assert is_abnormal(lab(flag="CRITICAL"))

    def test_acknowledgement_needed_only_for_open_critical(self):
        assert needs_acknowledgment(lab(flag="CRITICAL"))
        assert not needs_acknowledgment(lab(flag="CRITICAL", critical_acknowledged=True))
        assert not needs_acknowledgment(lab(flag="HH"))

    def test_final_statuses(self):
        assert is_final(lab(result_status="corrected"))
        assert not is_final(lab(result_status="amended"))

    @pytest.mark.parametrize("flag,level", [(None, 0), ("N", 0), ("H", 1), ("LL", 2), ("A", 2), (">", 3),
                                            ("AA", 3), ("CRITICAL", 5)])
    def test_severity(self, flag, level):
        assert severity_level(lab(flag=flag)) == level

    def test_viewed_by_accepts_json_text(self):
        assert LabResult.from_row({"id": "r", "patient_id": "p", "test_code": "K",
                                   "collection_datetime": "2025-03-01T08:00:00+00:00",
                                   "viewed_by": '["u1"]'}).viewed_by == ["u1"]


class TestReferenceRange:
    def test_format(self):
        assert format_reference_range(lab(reference_range="3.5-5.1 mmol/L")) == "3.5-5.1 mmol/L"
        assert format_reference_range(lab(low=3.5, high=5.1)) == "3.5 - 5.1"
        assert format_reference_range(lab(low=2)) == "≥ 2"
        assert format_reference_range(lab()) == "Not specified"

    def test_compare(self):
        assert compare_to_reference_range(lab(value=2.0, low=4.0, high=8.0)) == {"status": "low", "percentage": -50.0}
        assert compare_to_reference_range(lab(value=10.0, low=4.0, high=8.0)) == {"status": "high", "percentage": 25.0}
        assert compare_to_reference_range(lab(value=6.0, low=4.0, high=8.0)) == {"status": "normal", "percentage": 50.0}
        assert compare_to_reference_range(lab(value=6.0))["status"] == "unknown"

    def test_warnings(self):
        assert result_warnings(lab(value=6.0)) == ["Missing reference ranges for numeric result"]
        assert result_warnings(lab(value=90.0, low=4.0, high=8.0)) == ["Result is extremely high - verify accuracy"]
        assert result_warnings(lab()) == []


class TestTrends:
    def test_needs_two_numeric_points(self):
        assert analyze_trend([lab(value=5.0)])["trend"] == "unknown"
        only_text = analyze_trend([lab("a"), lab("b", day=2)])
        assert only_text["description"] == "Insufficient numeric data for trend analysis"

    def test_improving_and_worsening_use_collection_order(self):
        later_normal = lab("b", flag="N", value=5.0, day=5)
        earlier_high = lab("a", flag="HH", value=20.0, day=1)
        assert analyze_trend([later_normal, earlier_high])["trend"] == "improving"

        later_critical = lab("c", flag="CRITICAL", value=30.0, day=9)
        assert analyze_trend([later_normal, later_critical])["trend"] == "worsening"

    def test_stable_normal(self):
        trend = analyze_trend([lab("a", flag="N", value=5.0, day=1), lab("b", flag="N", value=5.1, day=2)])
        assert trend == {
            "trend": "stable",
            "description": "Results remain consistently normal",
            "points": trend["points"],
        }
        assert [p["value"] for p in trend["points"]] == [5.0, 5.1]

    def test_sort(self):
        results = [lab("a", flag="N", day=1, test_name="Urea"), lab("b", flag="CRITICAL", day=3, test_name="Albumin")]
        assert [r.id for r in sort_results(results, "date")] == ["b", "a"]
        assert [r.id for r in sort_results(results, "severity")] == ["b", "a"]
        assert [r.id for r in sort_results(results, "test")] == ["b", "a"]
        with pytest.raises(ValueError):
            sort_results(results, "colour")


class TestLabResultStore:
    def test_record_and_list(self, stores, make_patient):
        patient = make_patient()
        result = stores.labs.record(lab_request(patient.id))

        assert result.success, result.error
        assert result.warning is None
        recorded = result.data
        assert recorded.result_value_numeric == 4.1
        assert recorded.reported_datetime == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
        assert [r.id for r in stores.labs.list(patient.id)] == [recorded.id]

    def test_record_for_unknown_patient(self, stores):
        assert stores.labs.record(lab_request("missing")).kind == "not_found"

    def test_filters(self, stores, make_patient):
        patient = make_patient()
        stores.labs.record(lab_request(patient.id, collection_datetime="2025-03-01T08:00:00+00:00"))
        stores.labs.record(lab_request(patient.id, test_code="NA", test_name="Sodium", abnormal_flag="L",
                                       result_value="128"))
        stores.labs.record(lab_request(patient.id, abnormal_flag="CRITICAL", result_value="7.2"))

        assert len(stores.labs.list(patient.id, LabResultFilters(abnormal_only=True))) == 2
        assert len(stores.labs.list(patient.id, LabResultFilters(critical_only=True))) == 1
        assert len(stores.labs.list(patient.id, LabResultFilters(test_code="NA"))) == 1
        assert len(stores.labs.list(patient.id, LabResultFilters(date_to=date(2025, 3, 5)))) == 1

    def test_summary_and_trends(self, stores, make_patient):
        patient = make_patient()
        stores.labs.record(lab_request(patient.id, abnormal_flag="HH", result_value="6.5",
                                       collection_datetime="2025-03-01T08:00:00+00:00"))
        stores.labs.record(lab_request(patient.id))

        summary = stores.labs.summary(patient.id)
        assert summary["total_results"] == 2
        assert summary["abnormal_count"] == 1
        assert summary["critical_count"] == 0
        assert summary["last_test_date"] == "2025-03-09T08:00:00+00:00"

        trends = stores.labs.trends(patient.id)
        assert [(t["test_code"], t["trend"]) for t in trends] == [("K", "improving")]

    def test_critical_alerts_and_acknowledgement(self, stores, make_patient):
        patient = make_patient(first_name="Nomsa")
        critical = stores.labs.record(lab_request(patient.id, abnormal_flag="CRITICAL", result_value="7.2",
                                                  practice_code="MAIN")).data
        normal = stores.labs.record(lab_request(patient.id)).data

        alerts = stores.labs.critical_alerts()
        assert [(a["result_id"], a["patient_name"], a["acknowledged"]) for a in alerts] == [
            (critical.id, "Nomsa Mokoena", False)
        ]
        assert stores.labs.critical_alerts("OTHER") == []

        acknowledged = stores.labs.acknowledge(critical.id, "doctor-1", "Called patient")
        assert acknowledged.success, acknowledged.error
        assert acknowledged.data.critical_acknowledged is True
        assert acknowledged.data.acknowledged_by == "doctor-1"
        assert acknowledged.data.clinician_notes == "Called patient"
        assert stores.labs.critical_alerts("MAIN")[0]["acknowledged"] is True

        assert stores.labs.acknowledge(critical.id, "doctor-1").kind == "conflict"
        assert stores.labs.acknowledge(normal.id, "doctor-1").kind == "validation"
        assert stores.labs.acknowledge("missing", "doctor-1").kind == "not_found"

    def test_mark_viewed_once_per_user(self, stores, make_patient):
        patient = make_patient()
        result = stores.labs.record(lab_request(patient.id)).data

        stores.labs.mark_viewed(result.id, "u1")
        stores.labs.mark_viewed(result.id, "u2")
        viewed = stores.labs.mark_viewed(result.id, "u1").data

        assert viewed.viewed_by == ["u1", "u2"]
        assert stores.labs.mark_viewed("missing", "u1").kind == "not_found"


class TestLabResultsApi:
    def test_record_list_and_acknowledge(self, client, make_patient):
        patient = make_patient()
        body = lab_request(patient.id, abnormal_flag="CRITICAL", result_value="7.2",
                           reference_range_high=None).model_dump(mode="json")

        created = client.post("/lab-results", json=body)
        assert created.status_code == 201
        result_id = created.json()["id"]

        listed = client.get(f"/patients/{patient.id}/lab-results", params={"unacknowledged_only": True})
        assert listed.json()["count"] == 1

        critical = client.get("/lab-results/critical").json()
        assert critical["unacknowledged"] == 1

        response = client.post(f"/lab-results/{result_id}/acknowledge", json={"user_id": "doc-1"})
        assert response.status_code == 200
        assert response.json()["critical_acknowledged"] is True
        assert client.get("/lab-results/critical").json()["unacknowledged"] == 0
        assert client.post(f"/lab-results/{result_id}/acknowledge", json={"user_id": "doc-1"}).status_code == 409

    def test_summary_and_unknown_patient(self, client, make_patient):
        patient = make_patient()
        client.post("/lab-results", json=lab_request(patient.id).model_dump(mode="json"))

        assert client.get(f"/patients/{patient.id}/lab-results/summary").json()["total_results"] == 1
        assert client.get(f"/patients/{patient.id}/lab-results/trends").json()["trends"][0]["trend"] == "unknown"
        assert client.get("/patients/missing/lab-results").status_code == 404

    def test_invalid_flag(self, client, make_patient):
        body = lab_request(make_patient().id).model_dump(mode="json")
        body["abnormal_flag"] = "X"
        assert client.post("/lab-results", json=body).status_code == 422
