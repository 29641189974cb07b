"""Pydantic schemas for requests.

Request bodies are validated here before anything reaches the backend, so
a rejected form never causes a write.  Responses are returned as plain dicts
or records from the service layer.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, EmailStr, Field, ValidationInfo, field_validator, model_validator

from models import AbnormalFlag, IdType, PaymentChannel, PaymentMethod, ResultStatus, Role

# Two of the request bodies carry a field named "date".
CalendarDate = date

PHONE_PATTERN = re.compile(r"^[+]*[(]{0,1}[0-9]{1,4}[)]{0,1}[-\s\./0-9]*$")
ID_NUMBER_PATTERN = re.compile(r"^\d{13}$")
PASSPORT_PATTERN = re.compile(r"^[A-Z0-9]{6,20}$", re.IGNORECASE)


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class PatientForm(BaseModel):
    """Registration and edit form for a patient."""

    first_name: str = Field(min_length=1)
    surname: str = Field(min_length=1)
    id_type: IdType = IdType.id_number
    id_number: str = Field(min_length=1)
    date_of_birth: date
    gender: str = Field(pattern="^(male|female|other)$")

    contact_number: str
    alternate_number: Optional[str] = None
    email: Optional[EmailStr] = None
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    postal_code: Optional[str] = None

    emergency_contact_name: str = Field(min_length=1)
    emergency_contact_relationship: str = Field(min_length=1)
    emergency_contact_phone: str

    payment_method: PaymentMethod = PaymentMethod.cash
    medical_aid_provider: Optional[str] = None
    medical_aid_number: Optional[str] = None
    medical_aid_plan: Optional[str] = None
    medical_history: Optional[str] = None

    @field_validator("email", "alternate_number", "postal_code", mode="before")
    @classmethod
    def empty_optional(cls, value):
        return _blank_to_none(value)

    @field_validator("first_name", "surname", "id_number", "address", "city", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("contact_number", "emergency_contact_phone")
    @classmethod
    def valid_phone(cls, value: str) -> str:
        if not PHONE_PATTERN.match(value):
            raise ValueError("Please enter a valid phone number")
        return value

    @field_validator("id_number")
    @classmethod
    def valid_identification(cls, value: str, info: ValidationInfo) -> str:
        id_type = info.data.get("id_type")
        if id_type == IdType.id_number and not ID_NUMBER_PATTERN.match(value):
            raise ValueError("Please enter a valid 13-digit ID number")
        if id_type == IdType.passport and not PASSPORT_PATTERN.match(re.sub(r"\s", "", value)):
            raise ValueError("Please enter a valid passport number (6-20 alphanumeric characters)")
        return value

    def to_patient_row(self) -> Dict[str, Any]:
        row = self.model_dump(mode="json", exclude={"gender"})
        row["sex"] = self.gender.capitalize()
        if self.payment_method == PaymentMethod.cash:
            row["medical_aid_provider"] = None
            row["medical_aid_number"] = None
            row["medical_aid_plan"] = None
        return row


class FollowUpRequest(BaseModel):
    reason: str = ""


class StartConsultationRequest(BaseModel):
    doctor_id: Optional[str] = None


class ConsultationNoteRequest(BaseModel):
    """A doctor's consultation note, rich text or legacy SOAP."""

    patient_id: str
    # Filled with the clinic's local date when omitted.
    date: Optional[CalendarDate] = None
    reason_for_visit: str = Field(min_length=1)
    icd10_code: Optional[str] = None
    clinical_notes: str = ""
    subjective: Optional[str] = None
    objective: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None
    complete_consultation: bool = False

    @field_validator("icd10_code", mode="before")
    @classmethod
    def empty_code(cls, value):
        return _blank_to_none(value)

    @model_validator(mode="after")
    def has_content(self) -> "ConsultationNoteRequest":
        soap = [self.subjective, self.objective, self.assessment, self.plan]
        if not self.clinical_notes.strip() and not all(s and s.strip() for s in soap):
            raise ValueError("Clinical notes are required")
        return self


class ConsultationNoteUpdate(BaseModel):
    date: Optional[CalendarDate] = None
    reason_for_visit: Optional[str] = None
    icd10_code: Optional[str] = None
    clinical_notes: Optional[str] = None


class PracticeRequest(BaseModel):
    name: str = Field(min_length=1)
    code: str = Field(min_length=2, max_length=20, pattern=r"^[A-Za-z0-9_-]+$")
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, value: str) -> str:
        return value.upper()

    @field_validator("email", mode="before")
    @classmethod
    def empty_email(cls, value):
        return _blank_to_none(value)


class PracticeUpdate(BaseModel):
    """Editable practice fields.  The code is fixed once created."""

    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


class UserUpdate(BaseModel):
    name: Optional[str] = None
    username: Optional[str] = None
    role: Optional[Role] = None
    practice_code: Optional[str] = None


class PasswordResetRequest(BaseModel):
    email: EmailStr


class SettingsUpdate(BaseModel):
    values: Dict[str, Union[bool, int, str]]


class PaymentRequest(BaseModel):
    patient_id: str
    amount: float = Field(gt=0)
    method: PaymentChannel = PaymentChannel.cash
    reference: Optional[str] = None
    notes: Optional[str] = None
    proof_base64: Optional[str] = None
    proof_filename: Optional[str] = None
    proof_content_type: str = "application/octet-stream"


class LabResultRequest(BaseModel):
    """A laboratory result entered for a patient."""

    patient_id: str
    accession_number: str = Field(min_length=1)
    test_code: str = Field(min_length=1)
    test_name: str = Field(min_length=1)
    test_category: Optional[str] = None
    specimen_type: Optional[str] = None
    result_value: str = Field(min_length=1)
    result_value_numeric: Optional[float] = None
    result_unit: Optional[str] = None
    reference_range: Optional[str] = None
    reference_range_low: Optional[float] = None
    reference_range_high: Optional[float] = None
    abnormal_flag: Optional[AbnormalFlag] = None
    clinical_comment: Optional[str] = None
    result_status: ResultStatus = ResultStatus.preliminary
    collection_datetime: datetime
    result_datetime: Optional[datetime] = None
    ordering_doctor_id: Optional[str] = None
    ordering_doctor_name: Optional[str] = None
    practice_code: Optional[str] = None

    @model_validator(mode="after")
    def numeric_value(self) -> "LabResultRequest":
        if self.result_value_numeric is None:
            try:
                value = float(self.result_value)
            except ValueError:
                return self
            if math.isfinite(value):
                self.result_value_numeric = value
        return self


class LabAcknowledgeRequest(BaseModel):
    user_id: str = Field(min_length=1)
    notes: Optional[str] = None


class LabViewedRequest(BaseModel):
    user_id: str = Field(min_length=1)
