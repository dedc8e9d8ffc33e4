from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .time_utils import to_iso


class UserRole(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    PHARMACIST = "pharmacist"
    ADMIN = "admin"


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class AppointmentType(str, Enum):
    CONSULTATION = "CONSULTATION"
    FOLLOW_UP = "FOLLOW_UP"
    EMERGENCY = "EMERGENCY"


class AppointmentMode(str, Enum):
    VIRTUAL = "VIRTUAL"
    IN_PERSON = "IN_PERSON"


DAYS_OF_WEEK = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


@dataclass(frozen=True)
class UserContext:
    user_id: str
    role: UserRole
    patient_id: str | None = None
    doctor_id: str | None = None
    pharmacist_id: str | None = None

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "pharmacist_id": self.pharmacist_id,
        }


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Pagination:
    page: int = 1
    limit: int = 50


@dataclass(frozen=True)
class AppointmentDraft:
    doctor_id: str
    patient_id: str
    start_time: datetime
    end_time: datetime
    type: AppointmentType = AppointmentType.CONSULTATION
    mode: AppointmentMode = AppointmentMode.VIRTUAL
    status: AppointmentStatus = AppointmentStatus.SCHEDULED

    def as_payload(self) -> dict[str, Any]:
        return {
            "patientId": self.patient_id,
            "doctorId": self.doctor_id,
            "datetime": to_iso(self.start_time),
            "startTime": to_iso(self.start_time),
            "endTime": to_iso(self.end_time),
            "type": self.type.value,
            "mode": self.mode.value,
            "status": self.status.value,
        }
