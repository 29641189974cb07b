"""Domain records for the clinic.

We use SQLModel to describe the rows exchanged with the hosted backend.
The backend owns every record; the service only keeps transient copies that
can be thrown away and fetched again at any time.  Columns are snake_case on
both sides so rows map onto the records without renaming.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import field_validator
from sqlmodel import Field, SQLModel

# Consultation notes carry a column named "date".
CalendarDate = date


class ConsultationStatus(str, Enum):
    """Where a patient is in today's consultation flow."""

    none = "none"
    waiting = "waiting"
    in_consultation = "in_consultation"
    served = "served"


class VisitType(str, Enum):
    regular = "regular"
    follow_up = "follow_up"


class PaymentMethod(str, Enum):
    cash = "cash"
    medical_aid = "medical_aid"


class Sex(str, Enum):
    male = "Male"
    female = "Female"
    other = "Other"


class IdType(str, Enum):
    id_number = "id_number"
    passport = "passport"


class Role(str, Enum):
    doctor = "doctor"
    receptionist = "receptionist"
    admin = "admin"


class PracticeStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class SettingType(str, Enum):
    string = "string"
    number = "number"
    boolean = "boolean"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class PaymentChannel(str, Enum):
    cash = "cash"
    card = "card"
    eft = "eft"
    medical_aid = "medical_aid"


class AbnormalFlag(str, Enum):
    """Interpretation flag reported by the laboratory."""

    normal = "N"
    low = "L"
    high = "H"
    very_low = "LL"
    very_high = "HH"
    critical = "CRITICAL"
    below_range = "<"
    above_range = ">"
    abnormal = "A"
    very_abnormal = "AA"


class ResultStatus(str, Enum):
    preliminary = "preliminary"
    final = "final"
    corrected = "corrected"
    amended = "amended"
    cancelled = "cancelled"
    entered_in_error = "entered_in_error"

class BackendRecord(SQLModel):
    """Base for records read from backend rows."""

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        # Null columns fall back to the field defaults.
        return cls.model_validate({k: v for k, v in row.items() if v is not None})

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class Patient(BackendRecord):
    id: str
    id_type: IdType = Field(default=IdType.id_number)
    id_number: str = ""
    first_name: str = ""
    surname: str = ""
    date_of_birth: Optional[date] = None
    sex: Sex = Field(default=Sex.other)
    contact_number: str = ""
    alternate_number: Optional[str] = None
    email: Optional[str] = None
    address: str = ""
    city: Optional[str] = None
    postal_code: Optional[str] = None

    emergency_contact_name: Optional[str] = None
    emergency_contact_relationship: Optional[str] = None
    emergency_contact_phone: Optional[str] = None

    payment_method: PaymentMethod = Field(default=PaymentMethod.cash)
    medical_aid_provider: Optional[str] = None
    medical_aid_number: Optional[str] = None
    medical_aid_plan: Optional[str] = None
    medical_history: Optional[str] = None

    consultation_status: ConsultationStatus = Field(default=ConsultationStatus.none)
    visit_type: Optional[VisitType] = None
    visit_reason: Optional[str] = None
    current_doctor_id: Optional[str] = None
    last_status_change: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.surname}".strip()


class ConsultationNote(BackendRecord):
    id: str
    patient_id: str
    doctor_id: Optional[str] = None
    date: CalendarDate
    reason_for_visit: str = ""
    icd10_code: Optional[str] = None
    clinical_notes: str = ""
    # Legacy SOAP layout, superseded by clinical_notes.
    subjective: Optional[str] = None
    objective: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Practice(BackendRecord):
    id: str
    name: str
    code: str
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    status: PracticeStatus = Field(default=PracticeStatus.active)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AdminUser(BackendRecord):
    id: str
    name: str = ""
    username: str = ""
    role: Role = Field(default=Role.receptionist)
    practice_code: Optional[str] = None
    practice_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SystemSetting(BackendRecord):
    id: Optional[str] = None
    setting_key: str
    setting_value: str = ""
    setting_type: SettingType = Field(default=SettingType.string)
    description: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def value(self) -> Any:
        if self.setting_type == SettingType.boolean:
            return self.setting_value.lower() == "true"
        if self.setting_type == SettingType.number:
            try:
                return int(self.setting_value)
            except ValueError:
                return None
        return self.setting_value


class Payment(BackendRecord):
    id: str
    patient_id: str
    amount: float
    method: PaymentChannel = Field(default=PaymentChannel.cash)
    status: PaymentStatus = Field(default=PaymentStatus.completed)
    reference: Optional[str] = None
    proof_url: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class LabResult(BackendRecord):
    id: str
    patient_id: str
    chiron_accession_number: str = ""
    test_code: str
    test_name: str = ""
    test_category: Optional[str] = None
    specimen_type: Optional[str] = None
    result_value: str = ""
    result_value_numeric: Optional[float] = None
    result_unit: Optional[str] = None
    reference_range: Optional[str] = None
    reference_range_low: Optional[float] = None
    reference_range_high: Optional[float] = None
    abnormal_flag: Optional[AbnormalFlag] = None
    clinical_comment: Optional[str] = None
    result_status: ResultStatus = Field(default=ResultStatus.preliminary)
    collection_datetime: datetime
    result_datetime: Optional[datetime] = None
    reported_datetime: Optional[datetime] = None
    ordering_doctor_id: Optional[str] = None
    ordering_doctor_name: Optional[str] = None
    performing_lab: Optional[str] = None
    viewed_by: List[str] = Field(default_factory=list)
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    critical_acknowledged: bool = False
    clinician_notes: Optional[str] = None
    practice_code: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("viewed_by", mode="before")
    @classmethod
    def decode_viewed_by(cls, value):
        # The local backend keeps array columns as JSON text.
        return json.loads(value) if isinstance(value, str) else value

    @property
    def is_critical(self) -> bool:
        return self.abnormal_flag == AbnormalFlag.critical
