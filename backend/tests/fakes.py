from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

from medic_agent_core.errors import GatewayError, ModelConfigurationError
from medic_agent_core.models import AppointmentDraft, Pagination


@dataclass
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class Pause:
    seconds: float


class ScriptedModel:
    """Stands in for the chat model: replays a fixed script of deltas, tool calls, pauses and errors."""

    def __init__(
        self,
        stream: list[Any] | None = None,
        *,
        complete: str | BaseException = "",
        probe: str | BaseException = "Hello!",
        configured: bool = True,
    ) -> None:
        self.stream_steps = list(stream or [])
        self.complete_result = complete
        self.probe_result = probe
        self.configured = configured
        self.stream_calls: list[list[dict[str, Any]]] = []
        self.complete_calls: list[Any] = []
        self.probe_calls = 0
        self.tool_results: list[dict[str, Any]] = []

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ModelConfigurationError("The AI service is not configured.")

    async def stream_text(self, messages, *, tools=None, max_output_tokens=None, temperature=None):
        self.stream_calls.append(list(messages))
        for step in self.stream_steps:
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, Pause):
                await asyncio.sleep(step.seconds)
            elif isinstance(step, ToolCall):
                result = await tools.run(step.name, json.dumps(step.arguments))
                self.tool_results.append(result)
            else:
                yield step

    async def complete_text(self, messages, *, tools=None, max_output_tokens=None, temperature=None) -> str:
        self.complete_calls.append(tools)
        if isinstance(self.complete_result, BaseException):
            raise self.complete_result
        return self.complete_result

    async def probe(self) -> str:
        self.probe_calls += 1
        if isinstance(self.probe_result, BaseException):
            raise self.probe_result
        return self.probe_result


DOCTORS = [
    {
        "id": "doc-1",
        "userId": "user-doc-1",
        "fullName": "Ada Heart",
        "specialty": "Cardiology",
        "appointmentFee": 120,
        "status": "ACTIVE",
    },
    {
        "id": "doc-2",
        "userId": "user-doc-2",
        "fullName": "Ben Pulse",
        "specialty": "Cardiology",
        "appointmentFee": 90,
        "status": "ACTIVE",
    },
    {
        "id": "doc-3",
        "userId": "user-doc-3",
        "fullName": "Cara Skin",
        "specialty": "Dermatology",
        "appointmentFee": 80,
        "status": "ACTIVE",
    },
]


def _slots(*starts: str) -> list[dict[str, str]]:
    slots = []
    for start in starts:
        hour, minute = start.split(":")
        end_minute = int(minute) + 30
        end = f"{int(hour) + end_minute // 60:02d}:{end_minute % 60:02d}"
        slots.append({"start": start, "end": end})
    return slots


def _owner_user_id(appointment: dict[str, Any], party: str) -> str | None:
    record = appointment.get(party) or {}
    return (record.get("user") or {}).get("id") or record.get("userId")


class FakeGateway:
    """In-memory domain service with the same surface as the HTTP gateway."""

    def __init__(self) -> None:
        self.doctors = [dict(doctor) for doctor in DOCTORS]
        self.availability: dict[tuple[str, str], list[dict[str, str]]] = {
            ("doc-1", "Monday"): _slots("09:00", "09:30", "10:00", "10:30"),
            ("doc-2", "Monday"): _slots("14:00"),
            ("doc-3", "Monday"): _slots("11:00", "11:30"),
        }
        self.failing_availability: set[str] = set()
        self.patients = {"user-pat-1": {"id": "pat-1"}, "user-pat-2": {"id": "pat-2"}}
        self.pharmacists = {"user-ph-1": {"id": "ph-1"}}
        self.appointments: dict[str, dict[str, Any]] = {
            "appt-1": {
                "id": "appt-1",
                "status": "SCHEDULED",
                "datetime": "2030-01-07T09:00:00.000Z",
                "type": "CONSULTATION",
                "mode": "VIRTUAL",
                "patient": {"id": "pat-1", "fullName": "Pat One", "user": {"id": "user-pat-1"}},
                "doctor": {"id": "doc-1", "fullName": "Ada Heart", "user": {"id": "user-doc-1"}},
            },
        }
        self.prescriptions = [
            {
                "id": "rx-1",
                "issueDate": "2030-01-01T00:00:00.000Z",
                "expiryDate": "2030-02-01T00:00:00.000Z",
                "isFulfilled": False,
                "patient": {"id": "pat-1", "fullName": "Pat One"},
                "prescribedBy": {"id": "doc-1", "fullName": "Ada Heart"},
                "fulfilledBy": None,
                "items": [{"medicine": "Aspirin", "dosage": "81mg"}],
            }
        ]
        self.created: list[AppointmentDraft] = []
        self.cancelled: list[tuple[str, str | None]] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def find_doctors(self, pagination: Pagination, *, specialty=None, full_name=None):
        self.calls.append(
            (
                "find_doctors",
                {"page": pagination.page, "limit": pagination.limit, "specialty": specialty, "full_name": full_name},
            )
        )
        rows = self.doctors
        if specialty:
            rows = [row for row in rows if row["specialty"] == specialty]
        if full_name:
            rows = [row for row in rows if full_name.lower() in row["fullName"].lower()]
        return {"data": rows[: pagination.limit], "total": len(rows)}

    async def get_doctor_availability(self, doctor_id: str, *, day_of_week: str):
        if doctor_id in self.failing_availability:
            raise GatewayError("Availability service failed")
        return {"availableSlots": list(self.availability.get((doctor_id, day_of_week), [])), "busySlots": []}

    async def find_doctor(self, doctor_id: str):
        return next((row for row in self.doctors if row["id"] == doctor_id), None)

    async def create_appointment(self, draft: AppointmentDraft):
        self.created.append(draft)
        appointment_id = f"appt-new-{len(self.created)}"
        doctor = await self.find_doctor(draft.doctor_id)
        record = {**draft.as_payload(), "id": appointment_id, "doctor": doctor}
        self.appointments[appointment_id] = record
        return record

    async def find_appointment(self, appointment_id: str):
        return self.appointments.get(appointment_id)

    async def cancel_appointment(self, appointment_id: str, reason=None):
        self.cancelled.append((appointment_id, reason))
        appointment = self.appointments[appointment_id]
        appointment["status"] = "CANCELLED"
        return appointment

    async def find_appointments(self, pagination: Pagination, *, status, user_id, role_scope):
        self.calls.append(("find_appointments", {"status": status, "user_id": user_id, "role_scope": role_scope}))
        rows = list(self.appointments.values())
        if status:
            rows = [row for row in rows if row["status"] == status]
        if role_scope in {"patient", "doctor"}:
            rows = [row for row in rows if _owner_user_id(row, role_scope) == user_id]
        return {"data": rows, "total": len(rows)}

    async def find_patient_by_user_id(self, user_id: str):
        return self.patients.get(user_id)

    async def find_doctor_by_user_id(self, user_id: str):
        return next((row for row in self.doctors if row["userId"] == user_id), None)

    async def find_pharmacist_by_user_id(self, user_id: str):
        return self.pharmacists.get(user_id)

    async def find_prescriptions(self, user_id: str, role: str):
        self.calls.append(("find_prescriptions", {"user_id": user_id, "role": role}))
        return list(self.prescriptions)

    async def find_prescription(self, prescription_id: str, user_id: str, role: str):
        return next((row for row in self.prescriptions if row["id"] == prescription_id), None)
