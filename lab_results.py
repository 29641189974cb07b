"""Laboratory results: classification helpers and the lab result store.

Results arrive from the laboratory with an abnormal flag.  Anything but
``N`` is abnormal; ``CRITICAL`` results must be acknowledged by a clinician,
which the backend records through the ``acknowledge_critical_result``
procedure.  The helpers here are pure and work on :class:`LabResult`
records.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from datetime import date, tzinfo
from typing import Any, Dict, List, Optional

from backend import BackendError, utc_now
from consultation_queue import local_date
from models import AbnormalFlag, LabResult, ResultStatus
from schemas import LabResultRequest
from services import ActionResult, Clock

logger = logging.getLogger(__name__)

SEVERITY = {
    AbnormalFlag.normal: 0,
    AbnormalFlag.low: 1,
    AbnormalFlag.high: 1,
    AbnormalFlag.very_low: 2,
    AbnormalFlag.very_high: 2,
    AbnormalFlag.abnormal: 2,
    AbnormalFlag.below_range: 3,
    AbnormalFlag.above_range: 3,
    AbnormalFlag.very_abnormal: 3,
    AbnormalFlag.critical: 5,
}

STATUS_ORDER = {status: i for i, status in enumerate(ResultStatus)}

# Fewer than this many numeric points give no trend.
MIN_TREND_POINTS = 2
RECENT_TESTS = 5


def is_abnormal(result: LabResult) -> bool:
    return result.abnormal_flag is not None and result.abnormal_flag != AbnormalFlag.normal


def is_critical(result: LabResult) -> bool:
    return result.abnormal_flag == AbnormalFlag.critical


def needs_acknowledgment(result: LabResult) -> bool:
    return is_critical(result) and not result.critical_acknowledged


def is_final(result: LabResult) -> bool:
    return result.result_status in (ResultStatus.final, ResultStatus.corrected)


def severity_level(result: LabResult) -> int:
    """0 for normal or unflagged up to 5 for critical."""
    if result.abnormal_flag is None:
        return 0
    return SEVERITY[result.abnormal_flag]


def format_reference_range(result: LabResult) -> str:
    if result.reference_range:
        return result.reference_range
    low, high = result.reference_range_low, result.reference_range_high
    if low is not None and high is not None:
        return f"{low:g} - {high:g}"
    if low is not None:
        return f"≥ {low:g}"
    if high is not None:
        return f"≤ {high:g}"
    return "Not specified"


def compare_to_reference_range(result: LabResult) -> Dict[str, Any]:
    """Place a numeric result against its reference range.

    ``percentage`` is how far below (negative) or above the range the value
    lies, relative to the bound it crossed, or its position inside the range.
    """
    value = result.result_value_numeric
    low, high = result.reference_range_low, result.reference_range_high
    if value is None or low is None or high is None:
        return {"status": "unknown", "percentage": None}
    if value < low:
        return {"status": "low", "percentage": -((low - value) / low * 100) if low else None}
    if value > high:
        return {"status": "high", "percentage": (value - high) / high * 100 if high else None}
    span = high - low
    return {"status": "normal", "percentage": (value - low) / span * 100 if span else None}


def analyze_trend(results: List[LabResult]) -> Dict[str, Any]:
    """Trend of one test over time, judged on the first and last severity."""
    ordered = sorted(results, key=lambda r: r.collection_datetime)
    points = [
        {
            "datetime": r.collection_datetime.isoformat(),
            "value": r.result_value_numeric,
            "unit": r.result_unit or "",
            "abnormal_flag": r.abnormal_flag.value if r.abnormal_flag else None,
            "reference_range_low": r.reference_range_low,
            "reference_range_high": r.reference_range_high,
        }
        for r in ordered
        if r.result_value_numeric is not None
    ]
    if len(ordered) < MIN_TREND_POINTS:
        return {"trend": "unknown", "description": "Insufficient data for trend analysis", "points": []}
    if len(points) < MIN_TREND_POINTS:
        return {"trend": "unknown", "description": "Insufficient numeric data for trend analysis", "points": points}

    first, last = severity_level(ordered[0]), severity_level(ordered[-1])
    if last < first:
        trend, description = "improving", "Results are improving over time"
    elif last > first:
        trend, description = "worsening", "Results are worsening over time"
    elif first == 0:
        values = [p["value"] for p in points]
        mean = statistics.fmean(values)
        spread = statistics.pstdev(values) / mean * 100 if mean else 0.0
        trend = "stable"
        if spread < 10:
            description = "Results remain consistently normal"
        else:
            description = "Results fluctuate but remain within normal range"
    else:
        trend, description = "stable", "Results are stable"
    return {"trend": trend, "description": description, "points": points}


def group_by_test(results: List[LabResult]) -> List[Dict[str, Any]]:
    """One trend entry per test code, in order of first appearance."""
    groups: Dict[str, List[LabResult]] = {}
    for result in results:
        groups.setdefault(result.test_code, []).append(result)
    entries = []
    for test_code, group in groups.items():
        trend = analyze_trend(group)
        entries.append({
            "test_code": test_code,
            "test_name": group[0].test_name,
            "results": len(group),
            "trend": trend["trend"],
            "description": trend["description"],
            "points": trend["points"],
        })
    return entries


def sort_results(results: List[LabResult], criteria: str = "date") -> List[LabResult]:
    if criteria == "date":
        return sorted(results, key=lambda r: r.collection_datetime, reverse=True)
    if criteria == "severity":
        return sorted(results, key=severity_level, reverse=True)
    if criteria == "test":
        return sorted(results, key=lambda r: r.test_name.lower())
    if criteria == "status":
        return sorted(results, key=lambda r: STATUS_ORDER[r.result_status])
    raise ValueError(f"Unknown sort criteria: {criteria}")


def result_warnings(result: LabResult) -> List[str]:
    """Plausibility warnings for a numeric result."""
    warnings = []
    value = result.result_value_numeric
    if value is not None:
        low, high = result.reference_range_low, result.reference_range_high
        if low is None and high is None:
            warnings.append("Missing reference ranges for numeric result")
        if high is not None and value > high * 10:
            warnings.append("Result is extremely high - verify accuracy")
        if low is not None and value < low * 0.1:
            warnings.append("Result is extremely low - verify accuracy")
    return warnings


@dataclass
class LabResultFilters:
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    test_category: Optional[str] = None
    test_code: Optional[str] = None
    status: Optional[ResultStatus] = None
    ordering_doctor_id: Optional[str] = None
    abnormal_only: bool = False
    critical_only: bool = False
    unacknowledged_only: bool = False

    def backend_filters(self) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        if self.test_category:
            filters["test_category"] = self.test_category
        if self.test_code:
            filters["test_code"] = self.test_code
        if self.status:
            filters["result_status"] = self.status.value
        if self.ordering_doctor_id:
            filters["ordering_doctor_id"] = self.ordering_doctor_id
        if self.critical_only or self.unacknowledged_only:
            filters["abnormal_flag"] = AbnormalFlag.critical.value
        return filters

    def matches(self, result: LabResult, tz: Optional[tzinfo] = None) -> bool:
        collected = local_date(result.collection_datetime, tz)
        if self.date_from and collected < self.date_from:
            return False
        if self.date_to and collected > self.date_to:
            return False
        if self.abnormal_only and not is_abnormal(result):
            return False
        if self.unacknowledged_only and result.critical_acknowledged:
            return False
        return True


class LabResultStore:
    """Lab results per patient, critical alerts and acknowledgement."""

    def __init__(self, backend, clock: Clock = utc_now, tz: Optional[tzinfo] = None) -> None:
        self.backend = backend
        self.clock = clock
        self.tz = tz

    def get(self, result_id: str) -> Optional[LabResult]:
        rows = self.backend.select("lab_results", {"id": result_id})
        return LabResult.from_row(rows[0]) if rows else None

    def list(self, patient_id: Optional[str] = None, filters: Optional[LabResultFilters] = None) -> List[LabResult]:
        """Results newest collection first."""
        filters = filters or LabResultFilters()
        query = filters.backend_filters()
        if patient_id:
            query["patient_id"] = patient_id
        rows = self.backend.select("lab_results", query, order="collection_datetime", descending=True)
        results = [LabResult.from_row(row) for row in rows]
        return [r for r in results if filters.matches(r, self.tz)]

    def summary(self, patient_id: str) -> Dict[str, Any]:
        results = self.list(patient_id)
        return {
            "total_results": len(results),
            "critical_count": sum(1 for r in results if is_critical(r)),
            "abnormal_count": sum(1 for r in results if is_abnormal(r)),
            "unacknowledged_count": sum(1 for r in results if needs_acknowledgment(r)),
            "recent_tests": [r.to_row() for r in results[:RECENT_TESTS]],
            "last_test_date": results[0].collection_datetime.isoformat() if results else None,
        }

    def trends(self, patient_id: str, test_code: Optional[str] = None) -> List[Dict[str, Any]]:
        return group_by_test(self.list(patient_id, LabResultFilters(test_code=test_code)))

    def record(self, request: LabResultRequest) -> ActionResult:
        try:
            if not self.backend.select("patients", {"id": request.patient_id}):
                return ActionResult.fail("Patient not found", kind="not_found", field="patient_id")
        except BackendError as e:
            return ActionResult.fail(e.message)

        now = self.clock()
        raw = request.model_dump(mode="json")
        row = request.model_dump(mode="json", exclude={"accession_number"})
        row["chiron_accession_number"] = request.accession_number
        row["result_datetime"] = (request.result_datetime or now).isoformat()
        row["reported_datetime"] = now.isoformat()
        row["raw_data"] = raw
        try:
            created = self.backend.insert("lab_results", row)
        except BackendError as e:
            logger.error("Error recording lab result for patient %s: %s", request.patient_id, e.message)
            return ActionResult.fail(e.message)

        result = LabResult.from_row(created)
        if is_critical(result):
            logger.warning("Critical lab result %s (%s) for patient %s", result.id, result.test_code, result.patient_id)
        else:
            logger.info("Lab result %s recorded for patient %s", result.id, result.patient_id)
        warnings = result_warnings(result)
        return ActionResult.ok(result, warning="; ".join(warnings) or None)

    def critical_alerts(self, practice_code: Optional[str] = None) -> List[Dict[str, Any]]:
        """Critical results, unacknowledged first, newest report first."""
        rows = self.backend.rpc("get_critical_lab_results", {"p_practice_code": practice_code})
        return rows or []

    def acknowledge(self, result_id: str, user_id: str, notes: Optional[str] = None) -> ActionResult:
        try:
            result = self.get(result_id)
        except BackendError as e:
            return ActionResult.fail(e.message)
        if result is None:
            return ActionResult.fail("Lab result not found", kind="not_found")
        if not is_critical(result):
            return ActionResult.fail("Only critical results need acknowledgement", kind="validation")
        if result.critical_acknowledged:
            return ActionResult.fail("This critical result has already been acknowledged", kind="conflict")

        notes = (notes or "").strip() or None
        try:
            self.backend.rpc(
                "acknowledge_critical_result",
                {"p_result_id": result_id, "p_user_id": user_id, "p_notes": notes},
            )
            result = self.get(result_id)
        except BackendError as e:
            logger.error("Acknowledging lab result %s failed: %s", result_id, e.message)
            return ActionResult.fail(e.message)
        logger.info("Critical lab result %s acknowledged by %s", result_id, user_id)
        return ActionResult.ok(result)

    def mark_viewed(self, result_id: str, user_id: str) -> ActionResult:
        try:
            if self.get(result_id) is None:
                return ActionResult.fail("Lab result not found", kind="not_found")
            self.backend.rpc("mark_lab_result_viewed", {"p_result_id": result_id, "p_user_id": user_id})
            return ActionResult.ok(self.get(result_id))
        except BackendError as e:
            return ActionResult.fail(e.message)
