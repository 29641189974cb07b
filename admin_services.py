"""Admin console stores: practices, staff accounts and system settings."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from backend import UNIQUE_VIOLATION, BackendError, utc_now
from models import AdminUser, Practice, PracticeStatus, SettingType, SystemSetting
from schemas import PracticeRequest, PracticeUpdate, UserUpdate
from services import ActionResult, cache_settings, clear_cached_settings, get_cached_settings

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "system_name": "MedCare EHR",
    "require_strong_password": True,
    "session_timeout": 30,
    "max_login_attempts": 5,
    "enable_audit_log": True,
}


class PracticeStore:
    def __init__(self, backend, clock=utc_now) -> None:
        self.backend = backend
        self.clock = clock

    def list(self) -> List[Practice]:
        rows = self.backend.select("practices", order="name")
        return [Practice.from_row(row) for row in rows]

    def create(self, request: PracticeRequest) -> ActionResult:
        row = request.model_dump(mode="json")
        row["status"] = PracticeStatus.active.value
        try:
            created = self.backend.insert("practices", row)
        except BackendError as e:
            if e.code == UNIQUE_VIOLATION:
                return ActionResult.fail(
                    f"A practice with code {request.code} already exists", kind="validation", field="code"
                )
            logger.error("Error creating practice: %s", e.message)
            return ActionResult.fail(e.message)
        logger.info("Created practice %s", request.code)
        return ActionResult.ok(Practice.from_row(created))

    def _update(self, practice_id: str, values: Dict[str, Any]) -> ActionResult:
        values["updated_at"] = self.clock().isoformat()
        try:
            rows = self.backend.update("practices", values, {"id": practice_id})
        except BackendError as e:
            logger.error("Error updating practice %s: %s", practice_id, e.message)
            return ActionResult.fail(e.message)
        if not rows:
            return ActionResult.fail("Practice not found", kind="not_found")
        return ActionResult.ok(Practice.from_row(rows[0]))

    def update(self, practice_id: str, changes: PracticeUpdate) -> ActionResult:
        # PracticeUpdate has no code field, so the code never changes here.
        return self._update(practice_id, changes.model_dump(mode="json", exclude_none=True))

    def toggle_status(self, practice_id: str) -> ActionResult:
        rows = self.backend.select("practices", {"id": practice_id})
        if not rows:
            return ActionResult.fail("Practice not found", kind="not_found")
        practice = Practice.from_row(rows[0])
        new_status = (
            PracticeStatus.inactive if practice.status == PracticeStatus.active else PracticeStatus.active
        )
        logger.info("Practice %s is now %s", practice.code, new_status.value)
        return self._update(practice_id, {"status": new_status.value})


class UserStore:
    def __init__(self, backend, clock=utc_now) -> None:
        self.backend = backend
        self.clock = clock

    def list(self) -> List[AdminUser]:
        rows = self.backend.rpc("get_all_users") or []
        return [AdminUser.from_row(row) for row in rows]

    def update(self, user_id: str, changes: UserUpdate) -> ActionResult:
        values = changes.model_dump(mode="json", exclude_none=True)
        values["updated_at"] = self.clock().isoformat()
        try:
            rows = self.backend.update("users", values, {"id": user_id})
        except BackendError as e:
            if e.code == UNIQUE_VIOLATION:
                return ActionResult.fail("Username is already taken", kind="validation", field="username")
            logger.error("Error updating user %s: %s", user_id, e.message)
            return ActionResult.fail(e.message)
        if not rows:
            return ActionResult.fail("User not found", kind="not_found")
        return ActionResult.ok(AdminUser.from_row(rows[0]))

    def reset_password(self, email: str) -> ActionResult:
        try:
            self.backend.request_password_reset(email)
        except BackendError as e:
            logger.error("Password reset request failed: %s", e.message)
            return ActionResult.fail(e.message)
        return ActionResult.ok({"message": f"Password reset email sent to {email}"})

    def delete(self, user_id: str) -> ActionResult:
        try:
            self.backend.rpc("admin_delete_user", {"user_id_to_delete": user_id})
        except BackendError as e:
            if e.status == 404:
                return ActionResult.fail("User not found", kind="not_found")
            logger.error("Error deleting user %s: %s", user_id, e.message)
            return ActionResult.fail(e.message)
        logger.info("Deleted user %s", user_id)
        return ActionResult.ok()


def _setting_type(value: Any) -> SettingType:
    if isinstance(value, bool):
        return SettingType.boolean
    if isinstance(value, int):
        return SettingType.number
    return SettingType.string


class SettingsStore:
    """System settings, stored as key/value strings with a declared type."""

    def __init__(self, backend, clock=utc_now) -> None:
        self.backend = backend
        self.clock = clock

    def rows(self) -> List[SystemSetting]:
        cached = get_cached_settings()
        if cached is None:
            cached = self.backend.select("system_settings", order="setting_key")
            cache_settings(cached)
        return [SystemSetting.from_row(row) for row in cached]

    def values(self) -> Dict[str, Any]:
        values = dict(DEFAULT_SETTINGS)
        for setting in self.rows():
            if setting.value is not None:
                values[setting.setting_key] = setting.value
        return values

    def save(self, values: Dict[str, Any]) -> ActionResult:
        now = self.clock().isoformat()
        try:
            for key, value in values.items():
                setting_type = _setting_type(value)
                text = str(value).lower() if setting_type == SettingType.boolean else str(value)
                self.backend.upsert(
                    "system_settings",
                    {
                        "setting_key": key,
                        "setting_value": text,
                        "setting_type": setting_type.value,
                        "updated_at": now,
                    },
                    on_conflict="setting_key",
                )
        except BackendError as e:
            logger.error("Error saving settings: %s", e.message)
            return ActionResult.fail(e.message)
        finally:
            clear_cached_settings()
        logger.info("Saved settings: %s", ", ".join(sorted(values)))
        return ActionResult.ok(self.values())


def admin_stats(backend) -> Dict[str, Any]:
    """Practice totals plus the user totals computed by the backend."""
    practices = [Practice.from_row(row) for row in backend.select("practices")]
    users = backend.rpc("get_admin_stats") or {}
    if isinstance(users, list):
        # Set-returning procedures come back as a list of rows.
        users = users[0] if users else {}
    return {
        "total_practices": len(practices),
        "active_practices": sum(1 for p in practices if p.status == PracticeStatus.active),
        "total_users": users.get("totalUsers", 0),
        "total_doctors": users.get("totalDoctors", 0),
        "total_receptionists": users.get("totalReceptionists", 0),
        "total_admins": users.get("totalAdmins", 0),
    }
