"""Backend collaborator: table CRUD, remote procedures and storage.

All persistence lives in a hosted Postgres service that exposes its tables
over a REST dialect (PostgREST), a handful of remote procedures and a blob
storage bucket.  When ``SUPABASE_URL`` and ``SUPABASE_KEY`` are set the
:class:`RestBackend` talks to it; otherwise the :class:`SqliteBackend`
provides the same interface over a local ``sqlite3`` file so the service can
be developed and tested without network access.

Filters are plain ``{column: value}`` mappings.  A list or tuple value
means "column is one of these values"; a ``None`` among them also matches
NULL.  Every failure is raised as
:class:`BackendError`.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "clinic.db")
DEFAULT_STORAGE_DIR = os.path.join(PROJECT_DIR, "storage")

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")
DATABASE_URL = os.getenv("DATABASE_URL")
STORAGE_DIR = os.getenv("STORAGE_DIR", DEFAULT_STORAGE_DIR)
BACKEND_TIMEOUT = float(os.getenv("BACKEND_TIMEOUT", "10"))

# Postgres error code for unique violations; the local backend reports the same.
UNIQUE_VIOLATION = "23505"

Filters = Mapping[str, Any]


class BackendError(Exception):
    """A backend call failed.  ``message`` is safe to show to staff."""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def check_object_path(path: str) -> str:
    """Return ``path`` if it is a relative storage key without dot segments."""
    segments = path.split("/")
    if path.startswith("/") or "\\" in path or any(s in ("", ".", "..") for s in segments):
        raise BackendError(f"Invalid storage path: {path}", status=400)
    return path


class RestBackend:
    """Client for the hosted backend's REST, RPC, storage and auth endpoints."""

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = BACKEND_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"apikey": key, "Authorization": f"Bearer {key}"})

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = self.session.request(method, f"{self.url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("Backend request %s %s failed: %s", method, path, e)
            raise BackendError("Unable to reach the server. Please try again.") from e
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {}
            message = payload.get("message") or payload.get("error") or resp.text or "Unexpected server error"
            logger.warning("Backend %s %s returned %s: %s", method, path, resp.status_code, message)
            raise BackendError(message, code=payload.get("code"), status=resp.status_code)
        if not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _filter_params(filters: Optional[Filters]) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for column, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                values = [v for v in value if v is not None]
                listed = "in.(" + ",".join(str(v) for v in values) + ")"
                if len(values) < len(value):
                    # NULL cannot be matched by in.(); OR it in instead.
                    clauses = [f"{column}.is.null"] + ([f"{column}.{listed}"] if values else [])
                    params["or"] = "(" + ",".join(clauses) + ")"
                else:
                    params[column] = listed
            elif value is None:
                params[column] = "is.null"
            else:
                params[column] = f"eq.{value}"
        return params

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        params = {"select": "*", **self._filter_params(filters)}
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        return self._request("GET", f"/rest/v1/{table}", params=params) or []

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._request(
            "POST",
            f"/rest/v1/{table}",
            json=[row],
            headers={"Prefer": "return=representation"},
        )
        return rows[0]

    def update(self, table: str, values: Dict[str, Any], filters: Filters) -> List[Dict[str, Any]]:
        return (
            self._request(
                "PATCH",
                f"/rest/v1/{table}",
                params=self._filter_params(filters),
                json=values,
                headers={"Prefer": "return=representation"},
            )
            or []
        )

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        rows = self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": on_conflict},
            json=[row],
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return rows[0]

    def delete(self, table: str, filters: Filters) -> int:
        rows = self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=self._filter_params(filters),
            headers={"Prefer": "return=representation"},
        )
        return len(rows or [])

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("POST", f"/rest/v1/rpc/{name}", json=params or {})

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        key = quote(check_object_path(path))
        self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{key}",
            data=data,
            headers={"Content-Type": content_type},
        )
        return f"{self.url}/storage/v1/object/public/{bucket}/{key}"

    def remove(self, bucket: str, path: str) -> None:
        self._request("DELETE", f"/storage/v1/object/{bucket}", json={"prefixes": [check_object_path(path)]})

    def request_password_reset(self, email: str) -> None:
        self._request("POST", "/auth/v1/recover", json={"email": email})


class SqliteBackend:
    """Local stand-in for the hosted backend, built on ``sqlite3``.

    A fresh connection is opened for each call and closed right after, so a
    file path (not ``:memory:``) is required.
    """

    def __init__(self, path: str = DEFAULT_DB_FILENAME, storage_dir: str = STORAGE_DIR) -> None:
        self.path = path
        self.storage_dir = storage_dir
        self._procedures = {
            "get_admin_stats": self._get_admin_stats,
            "get_all_users": self._get_all_users,
            "admin_delete_user": self._admin_delete_user,
            "get_critical_lab_results": self._get_critical_lab_results,
            "acknowledge_critical_result": self._acknowledge_critical_result,
            "mark_lab_result_viewed": self._mark_lab_result_viewed,
        }
        conn = self.get_connection()
        try:
            init_db(conn)
        finally:
            conn.close()

    def get_connection(self) -> sqlite3.Connection:
        """Return a SQLite connection.  Ensures foreign keys are enabled."""
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @staticmethod
    def _where(filters: Optional[Filters]) -> tuple:
        clauses: List[str] = []
        args: List[Any] = []
        for column, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                values = [v for v in value if v is not None]
                matches = [f"{column} IN ({','.join('?' for _ in values)})"] if values else []
                if len(values) < len(value):
                    matches.append(f"{column} IS NULL")
                clauses.append("(" + " OR ".join(matches) + ")" if matches else "0")
                args.extend(values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                args.append(value)
        sql = " WHERE " + " AND ".join(clauses) if clauses else ""
        return sql, args

    def _execute(self, sql: str, args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            cur = conn.execute(sql, tuple(args))
            rows = [dict(row) for row in cur.fetchall()]
            conn.commit()
            return rows
        except sqlite3.IntegrityError as e:
            code = UNIQUE_VIOLATION if "UNIQUE" in str(e) else None
            raise BackendError(str(e), code=code) from e
        except sqlite3.Error as e:
            raise BackendError(str(e)) from e
        finally:
            conn.close()

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        where, args = self._where(filters)
        sql = f"SELECT * FROM {table}{where}"
        if order:
            sql += f" ORDER BY {order} {'DESC' if descending else 'ASC'}"
        return self._execute(sql, args)

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row.setdefault("id", new_id())
        now = utc_now().isoformat()
        columns = self._columns(table)
        if "created_at" in columns:
            row.setdefault("created_at", now)
        if "updated_at" in columns:
            row.setdefault("updated_at", now)
        names = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        # JSON and array columns are kept as JSON text.
        args = [json.dumps(v) if isinstance(v, (dict, list)) else v for v in row.values()]
        self._execute(f"INSERT INTO {table} ({names}) VALUES ({marks})", args)
        return self.select(table, {"id": row["id"]})[0]

    def update(self, table: str, values: Dict[str, Any], filters: Filters) -> List[Dict[str, Any]]:
        matched = self.select(table, filters)
        if not matched:
            return []
        ids = [r["id"] for r in matched]
        assignments = ", ".join(f"{column} = ?" for column in values)
        marks = ",".join("?" for _ in ids)
        where, args = self._where(filters)
        # Re-check the filters so a row changed in between is left alone.
        where = f"{where} AND id IN ({marks})" if where else f" WHERE id IN ({marks})"
        self._execute(
            f"UPDATE {table} SET {assignments}{where}",
            list(values.values()) + args + ids,
        )
        rows = self.select(table, {"id": ids})
        return [r for r in rows if all(r.get(k) == v for k, v in values.items())]

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        existing = self.select(table, {on_conflict: row[on_conflict]})
        if existing:
            values = {k: v for k, v in row.items() if k != on_conflict}
            if values:
                self.update(table, values, {on_conflict: row[on_conflict]})
            return self.select(table, {on_conflict: row[on_conflict]})[0]
        return self.insert(table, row)

    def delete(self, table: str, filters: Filters) -> int:
        where, args = self._where(filters)
        matched = self.select(table, filters)
        self._execute(f"DELETE FROM {table}{where}", args)
        return len(matched)

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise BackendError(f"Could not find the function public.{name}", code="PGRST202", status=404)
        return procedure(**(params or {}))

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        target = self._object_path(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise BackendError(f"Upload failed: {e}") from e
        logger.info("Stored %s upload (%s, %d bytes) at %s", bucket, content_type, len(data), target)
        return target.resolve().as_uri()

    def remove(self, bucket: str, path: str) -> None:
        try:
            self._object_path(bucket, path).unlink(missing_ok=True)
        except OSError as e:
            raise BackendError(f"Remove failed: {e}") from e

    def _object_path(self, bucket: str, path: str) -> Path:
        root = (Path(self.storage_dir) / bucket).resolve()
        target = (root / check_object_path(path)).resolve()
        if root not in target.parents:
            raise BackendError(f"Invalid storage path: {path}", status=400)
        return target

    def request_password_reset(self, email: str) -> None:
        # No mail delivery locally; the request is only logged.
        logger.info("[SIMULATION] Password reset requested for user email on %s", email.split("@")[-1])

    def _columns(self, table: str) -> List[str]:
        return [r["name"] for r in self._execute(f"PRAGMA table_info({table})")]

    # ===== LOCAL REMOTE PROCEDURES =====

    def _get_admin_stats(self) -> Dict[str, int]:
        users = self.select("users")
        return {
            "totalUsers": len(users),
            "totalDoctors": sum(1 for u in users if u["role"] == "doctor"),
            "totalReceptionists": sum(1 for u in users if u["role"] == "receptionist"),
            "totalAdmins": sum(1 for u in users if u["role"] == "admin"),
        }

    def _get_all_users(self) -> List[Dict[str, Any]]:
        return self._execute(
            """SELECT u.*, p.name AS practice_name
               FROM users u
               LEFT JOIN practices p ON p.code = u.practice_code
               ORDER BY u.created_at DESC"""
        )

    def _admin_delete_user(self, user_id_to_delete: str) -> Dict[str, Any]:
        deleted = self.delete("users", {"id": user_id_to_delete})
        if not deleted:
            raise BackendError("User not found", status=404)
        return {"success": True}

    def _get_critical_lab_results(self, p_practice_code: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = self._execute(
            """SELECT lr.id AS result_id, lr.patient_id,
                      p.first_name || ' ' || p.surname AS patient_name,
                      lr.test_name, lr.result_value, lr.abnormal_flag, lr.collection_datetime,
                      lr.reported_datetime, lr.critical_acknowledged AS acknowledged
               FROM lab_results lr
               JOIN patients p ON p.id = lr.patient_id
               WHERE lr.abnormal_flag = 'CRITICAL'
                 AND (? IS NULL OR lr.practice_code = ?)
               ORDER BY lr.critical_acknowledged, lr.reported_datetime DESC""",
            [p_practice_code, p_practice_code],
        )
        now = utc_now()
        for row in rows:
            reported = datetime.fromisoformat(row.pop("reported_datetime"))
            if reported.tzinfo is None:
                reported = reported.replace(tzinfo=timezone.utc)
            row["age_hours"] = (now - reported).total_seconds() / 3600
            row["acknowledged"] = bool(row["acknowledged"])
        return rows

    def _acknowledge_critical_result(self, p_result_id: str, p_user_id: str, p_notes: Optional[str] = None) -> None:
        now = utc_now().isoformat()
        self._execute(
            """UPDATE lab_results
               SET critical_acknowledged = 1,
                   acknowledged_by = ?,
                   acknowledged_at = ?,
                   clinician_notes = COALESCE(clinician_notes || char(10, 10) || ?, ?, clinician_notes),
                   updated_at = ?
               WHERE id = ? AND abnormal_flag = 'CRITICAL'""",
            [p_user_id, now, p_notes, p_notes, now, p_result_id],
        )

    def _mark_lab_result_viewed(self, p_result_id: str, p_user_id: str) -> None:
        for row in self.select("lab_results", {"id": p_result_id}):
            viewed_by = json.loads(row["viewed_by"] or "[]")
            if p_user_id not in viewed_by:
                self._execute(
                    "UPDATE lab_results SET viewed_by = ? WHERE id = ?",
                    [json.dumps(viewed_by + [p_user_id]), p_result_id],
                )


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if they do not exist and seed default settings."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS practices (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            code TEXT NOT NULL UNIQUE,
            address TEXT,
            city TEXT,
            phone TEXT,
            email TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            username TEXT NOT NULL UNIQUE,
            role TEXT NOT NULL,
            practice_code TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS patients (
            id TEXT PRIMARY KEY,
            id_type TEXT NOT NULL DEFAULT 'id_number',
            id_number TEXT NOT NULL UNIQUE,
            first_name TEXT NOT NULL,
            surname TEXT NOT NULL,
            date_of_birth TEXT,
            sex TEXT,
            contact_number TEXT,
            alternate_number TEXT,
            email TEXT,
            address TEXT,
            city TEXT,
            postal_code TEXT,
            emergency_contact_name TEXT,
            emergency_contact_relationship TEXT,
            emergency_contact_phone TEXT,
            payment_method TEXT NOT NULL DEFAULT 'cash',
            medical_aid_provider TEXT,
            medical_aid_number TEXT,
            medical_aid_plan TEXT,
            medical_history TEXT,
            consultation_status TEXT,
            visit_type TEXT,
            visit_reason TEXT,
            current_doctor_id TEXT,
            last_status_change TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_patients_status
            ON patients (consultation_status, last_status_change);

        CREATE TABLE IF NOT EXISTS consultation_notes (
            id TEXT PRIMARY KEY,
            patient_id TEXT NOT NULL,
            doctor_id TEXT,
            date TEXT NOT NULL,
            reason_for_visit TEXT NOT NULL,
            icd10_code TEXT,
            clinical_notes TEXT,
            subjective TEXT,
            objective TEXT,
            assessment TEXT,
            plan TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (patient_id) REFERENCES patients(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS payments (
            id TEXT PRIMARY KEY,
            patient_id TEXT NOT NULL,
            amount REAL NOT NULL,
            method TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            reference TEXT,
            proof_url TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (patient_id) REFERENCES patients(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS lab_results (
            id TEXT PRIMARY KEY,
            patient_id TEXT NOT NULL,
            chiron_accession_number TEXT NOT NULL,
            test_code TEXT NOT NULL,
            test_name TEXT NOT NULL,
            test_category TEXT,
            specimen_type TEXT,
            result_value TEXT NOT NULL,
            result_value_numeric REAL,
            result_unit TEXT,
            reference_range TEXT,
            reference_range_low REAL,
            reference_range_high REAL,
            abnormal_flag TEXT,
            clinical_comment TEXT,
            result_status TEXT NOT NULL DEFAULT 'preliminary',
            collection_datetime TEXT NOT NULL,
            result_datetime TEXT NOT NULL,
            reported_datetime TEXT NOT NULL,
            ordering_doctor_id TEXT,
            ordering_doctor_name TEXT,
            performing_lab TEXT DEFAULT 'Chiron',
            viewed_by TEXT NOT NULL DEFAULT '[]',
            acknowledged_by TEXT,
            acknowledged_at TEXT,
            critical_acknowledged INTEGER NOT NULL DEFAULT 0,
            clinician_notes TEXT,
            raw_data TEXT NOT NULL DEFAULT '{}',
            practice_code TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (patient_id) REFERENCES patients(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_lab_results_patient
            ON lab_results (patient_id, collection_datetime);

        CREATE TABLE IF NOT EXISTS system_settings (
            id TEXT PRIMARY KEY,
            setting_key TEXT NOT NULL UNIQUE,
            setting_value TEXT NOT NULL,
            setting_type TEXT NOT NULL,
            description TEXT,
            updated_at TEXT
        );
        INSERT OR IGNORE INTO system_settings (id, setting_key, setting_value, setting_type, description) VALUES
            ('setting-system-name', 'system_name', 'MedCare EHR', 'string', 'Name of the EHR system'),
            ('setting-strong-password', 'require_strong_password', 'true', 'boolean', 'Require strong passwords for user accounts'),
            ('setting-session-timeout', 'session_timeout', '30', 'number', 'Session timeout in minutes'),
            ('setting-login-attempts', 'max_login_attempts', '5', 'number', 'Maximum failed login attempts before lockout'),
            ('setting-audit-log', 'enable_audit_log', 'true', 'boolean', 'Enable audit logging for admin actions');
        """
    )
    conn.commit()


def get_backend():
    """Return the hosted backend when configured, else the local SQLite one."""
    if SUPABASE_URL and SUPABASE_KEY:
        logger.info("Using hosted backend at %s", SUPABASE_URL)
        return RestBackend(SUPABASE_URL, SUPABASE_KEY)
    db_path = DATABASE_URL if DATABASE_URL else DEFAULT_DB_FILENAME
    if db_path.startswith("postgres"):
        raise RuntimeError("Direct Postgres connections are not supported; set SUPABASE_URL and SUPABASE_KEY")
    logger.info("Using local SQLite backend at %s", db_path)
    return SqliteBackend(db_path)
