from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medic_agent_core.errors import ToolAuthorizationError, ToolNotFound, ToolValidationError
from medic_agent_core.models import (
    AppointmentDraft,
    AppointmentMode,
    AppointmentStatus,
    AppointmentType,
    Pagination,
    UserContext,
    UserRole,
)
from medic_agent_core.registry import ALL_ROLES, ToolDefinition, ToolRegistry
from medic_agent_core.time_utils import parse_iso, to_iso, utc_now

from .gateway import DomainGateway
from .normalizer import canonical_day_of_week, normalize_specialty

logger = structlog.get_logger(__name__)

LISTING_PAGE = Pagination(page=1, limit=50)
NAME_LOOKUP_PAGE = Pagination(page=1, limit=1)
INVALID_DAY_MESSAGE = (
    "Invalid day of week. Please use Monday, Tuesday, Wednesday, Thursday, Friday, Saturday, or Sunday."
)
DAY_HINT = "Day of the week (Monday, Tuesday, Wednesday, Thursday, Friday, Saturday, Sunday)"
SPECIALTY_HINT = "Medical specialty to filter by (e.g., Cardiology)"
ROLE_HINT = "User role whose records to view (patient, doctor, pharmacist, admin); defaults to your own role"


class _ToolInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class ListDoctorsInput(_ToolInput):
    specialty: str | None = Field(default=None, description=SPECIALTY_HINT)


class DoctorAvailabilityInput(_ToolInput):
    doctorName: str = Field(min_length=1, description="Name of the doctor")
    dayOfWeek: str = Field(min_length=1, description=DAY_HINT)


class AvailableDoctorsByDayInput(_ToolInput):
    dayOfWeek: str = Field(min_length=1, description=DAY_HINT)
    specialty: str | None = Field(default=None, description=SPECIALTY_HINT)


class BookAppointmentInput(_ToolInput):
    doctorId: str = Field(min_length=1, description="ID of the doctor")
    startTime: str = Field(min_length=1, description="Start time in ISO format (YYYY-MM-DDTHH:mm:ss.sssZ)")
    endTime: str = Field(min_length=1, description="End time in ISO format (YYYY-MM-DDTHH:mm:ss.sssZ)")
    type: str | None = Field(default=None, description="Appointment type (CONSULTATION, FOLLOW_UP, EMERGENCY)")
    mode: str | None = Field(default=None, description="Appointment mode (VIRTUAL, IN_PERSON)")


class MyAppointmentsInput(_ToolInput):
    status: str | None = Field(
        default=None, description="Filter by appointment status (SCHEDULED, COMPLETED, CANCELLED)"
    )


class CancelAppointmentInput(_ToolInput):
    appointmentId: str = Field(min_length=1, description="ID of the appointment to cancel")
    reason: str | None = Field(default=None, description="Reason for cancellation")


class MyPrescriptionsInput(_ToolInput):
    role: str | None = Field(default=None, description=ROLE_HINT)


class PrescriptionDetailsInput(_ToolInput):
    prescriptionId: str = Field(min_length=1, description="ID of the prescription")
    role: str | None = Field(default=None, description=ROLE_HINT)


def _plural(count: int) -> str:
    return "s" if count != 1 else ""


def _slot_label(slot: dict[str, Any]) -> str:
    return f"{slot.get('start')}-{slot.get('end')}"


def _enum_value(enum_cls, raw: str | None, default, label: str):
    if not raw:
        return default
    try:
        return enum_cls(raw.strip().upper().replace(" ", "_").replace("-", "_"))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ToolValidationError(f"Invalid appointment {label} '{raw}'. Use one of: {allowed}.") from None


def _require_day(raw: str) -> str:
    day = canonical_day_of_week(raw)
    if day is None:
        raise ToolValidationError(INVALID_DAY_MESSAGE)
    return day


def _party_name(record: dict[str, Any] | None) -> str | None:
    if not isinstance(record, dict):
        return None
    return record.get("fullName")


def _belongs_to(appointment: dict[str, Any], party: str, user_id: str, profile_id: str | None) -> bool:
    record = appointment.get(party) or {}
    owner_user = (record.get("user") or {}).get("id") or record.get("userId")
    owner_profile = record.get("id") or appointment.get(f"{party}Id")
    if owner_user is not None and owner_user == user_id:
        return True
    return profile_id is not None and owner_profile == profile_id


class MedicToolset:
    def __init__(self, gateway: DomainGateway, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.gateway = gateway
        self.clock = clock

    async def list_doctors(self, ctx: UserContext, payload: ListDoctorsInput) -> dict[str, Any]:
        specialty = normalize_specialty(payload.specialty)
        doctors = await self.gateway.find_doctors(LISTING_PAGE, specialty=specialty)
        rows = doctors.get("data") or []
        if not rows:
            return {
                "success": False,
                "message": f"No {specialty} specialists found" if specialty else "No doctors found",
                "total": 0,
                "doctors": [],
            }
        total = int(doctors.get("total") or len(rows))
        names = ", ".join(row.get("fullName", "") for row in rows)
        return {
            "success": True,
            "specialty": specialty,
            "total": total,
            "doctors": [
                {
                    "id": row.get("id"),
                    "name": row.get("fullName"),
                    "specialty": row.get("specialty"),
                    "appointmentFee": row.get("appointmentFee"),
                    "status": row.get("status"),
                }
                for row in rows
            ],
            "summary": f"Found {total} {specialty + ' ' if specialty else ''}doctor{_plural(total)}: {names}",
        }

    async def check_doctor_availability(self, ctx: UserContext, payload: DoctorAvailabilityInput) -> dict[str, Any]:
        day = _require_day(payload.dayOfWeek)
        matches = await self.gateway.find_doctors(NAME_LOOKUP_PAGE, full_name=payload.doctorName)
        rows = matches.get("data") or []
        if not rows:
            return {"success": False, "message": f"No doctor found with name: {payload.doctorName}"}

        doctor = rows[0]
        availability = await self.gateway.get_doctor_availability(doctor["id"], day_of_week=day)
        slots = availability.get("availableSlots") or []
        if not slots:
            return {
                "success": False,
                "message": f"Dr. {doctor.get('fullName')} has no available slots on {day}",
                "doctorId": doctor["id"],
                "doctorName": doctor.get("fullName"),
                "dayOfWeek": day,
            }
        labels = [_slot_label(slot) for slot in slots]
        shown = ", ".join(labels[:5]) + ("..." if len(labels) > 5 else "")
        return {
            "success": True,
            "doctorId": doctor["id"],
            "doctorName": doctor.get("fullName"),
            "dayOfWeek": day,
            "availableSlots": slots,
            "busySlots": availability.get("busySlots") or [],
            "totalAvailable": len(slots),
            "summary": f"Dr. {doctor.get('fullName')} has {len(slots)} available slot{_plural(len(slots))} on {day}: {shown}",
        }

    async def list_available_doctors_by_day(
        self, ctx: UserContext, payload: AvailableDoctorsByDayInput
    ) -> dict[str, Any]:
        day = _require_day(payload.dayOfWeek)
        specialty = normalize_specialty(payload.specialty)
        doctors = await self.gateway.find_doctors(LISTING_PAGE, specialty=specialty)
        rows = doctors.get("data") or []
        if not rows:
            return {
                "success": False,
                "message": f"No {specialty} specialists found" if specialty else "No doctors found",
                "total": 0,
                "doctors": [],
            }

        available: list[dict[str, Any]] = []
        for doctor in rows:
            try:
                availability = await self.gateway.get_doctor_availability(doctor["id"], day_of_week=day)
            except Exception as exc:
                logger.warning(
                    "availability_lookup_failed",
                    doctor_id=doctor.get("id"),
                    day=day,
                    error_type=type(exc).__name__,
                )
                continue
            slots = availability.get("availableSlots") or []
            if slots:
                available.append(
                    {
                        "id": doctor["id"],
                        "name": doctor.get("fullName"),
                        "specialty": doctor.get("specialty"),
                        "appointmentFee": doctor.get("appointmentFee"),
                        "availableSlots": len(slots),
                        "sampleTimeSlots": [_slot_label(slot) for slot in slots[:3]],
                    }
                )

        if not available:
            return {
                "success": False,
                "message": (
                    f"No {specialty} specialists available on {day}" if specialty else f"No doctors available on {day}"
                ),
                "total": 0,
                "doctors": [],
            }
        names = ", ".join(str(row["name"]) for row in available)
        return {
            "success": True,
            "dayOfWeek": day,
            "specialty": specialty,
            "total": len(available),
            "doctors": available,
            "summary": (
                f"Found {len(available)} available {specialty + ' ' if specialty else ''}"
                f"doctor{_plural(len(available))} on {day}: {names}"
            ),
        }

    async def book_appointment(self, ctx: UserContext, payload: BookAppointmentInput) -> dict[str, Any]:
        if ctx.role != UserRole.PATIENT:
            raise ToolAuthorizationError(
                f"Only patients can book appointments. Your current role is '{ctx.role.value}'."
            )
        if not ctx.patient_id:
            raise ToolAuthorizationError("Patient profile not found. Please ensure you have a valid patient account.")

        start = parse_iso(payload.startTime)
        end = parse_iso(payload.endTime)
        if start is None or end is None:
            raise ToolValidationError(
                "Invalid date format provided. Please use ISO format (YYYY-MM-DDTHH:mm:ss.sssZ)"
            )
        if start < self.clock():
            raise ToolValidationError("Cannot book appointments in the past")
        if start >= end:
            raise ToolValidationError("Start time must be before end time")
        appointment_type = _enum_value(AppointmentType, payload.type, AppointmentType.CONSULTATION, "type")
        mode = _enum_value(AppointmentMode, payload.mode, AppointmentMode.VIRTUAL, "mode")

        doctor = await self.gateway.find_doctor(payload.doctorId)
        if not doctor:
            raise ToolNotFound("Doctor not found")

        draft = AppointmentDraft(
            doctor_id=payload.doctorId,
            patient_id=ctx.patient_id,
            start_time=start,
            end_time=end,
            type=appointment_type,
            mode=mode,
        )
        appointment = await self.gateway.create_appointment(draft)
        logger.info("appointment_booked", appointment_id=appointment.get("id"), doctor_id=payload.doctorId)
        return {
            "success": True,
            "appointmentId": appointment.get("id"),
            "message": f"Appointment booked successfully for {to_iso(start)}",
            "details": {
                "doctorName": _party_name(appointment.get("doctor")) or doctor.get("fullName"),
                "datetime": to_iso(start),
                "startTime": to_iso(start),
                "endTime": to_iso(end),
                "type": appointment.get("type") or draft.type.value,
                "mode": appointment.get("mode") or draft.mode.value,
                "status": appointment.get("status") or draft.status.value,
            },
        }

    async def get_my_appointments(self, ctx: UserContext, payload: MyAppointmentsInput) -> dict[str, Any]:
        status = _enum_value(AppointmentStatus, payload.status, None, "status")
        if ctx.role == UserRole.PATIENT and ctx.patient_id:
            scope = "patient"
        elif ctx.role == UserRole.DOCTOR and ctx.doctor_id:
            scope = "doctor"
        elif ctx.role == UserRole.ADMIN:
            scope = "admin"
        else:
            raise ToolAuthorizationError(f"Unable to retrieve appointments for role: {ctx.role.value}")

        status_value = status.value if status else None
        appointments = await self.gateway.find_appointments(
            LISTING_PAGE, status=status_value, user_id=ctx.user_id, role_scope=scope
        )
        rows = appointments.get("data") or []
        label = f"{status_value.lower()} " if status_value else ""
        if not rows:
            return {
                "success": True,
                "message": f"No {label}appointments found",
                "total": 0,
                "appointments": [],
                "role": ctx.role.value,
            }
        total = int(appointments.get("total") or len(rows))
        return {
            "success": True,
            "total": total,
            "role": ctx.role.value,
            "appointments": [
                {
                    "id": row.get("id"),
                    "datetime": row.get("datetime") or row.get("startTime"),
                    "status": row.get("status"),
                    "type": row.get("type"),
                    "mode": row.get("mode"),
                    "doctorName": _party_name(row.get("doctor")),
                    "patientName": _party_name(row.get("patient")),
                }
                for row in rows
            ],
            "summary": f"Found {total} {label}appointment{_plural(total)}",
        }

    async def cancel_appointment(self, ctx: UserContext, payload: CancelAppointmentInput) -> dict[str, Any]:
        appointment = await self.gateway.find_appointment(payload.appointmentId)
        if not appointment:
            raise ToolNotFound("Appointment not found")
        if ctx.role == UserRole.PATIENT and not _belongs_to(appointment, "patient", ctx.user_id, ctx.patient_id):
            raise ToolAuthorizationError("You can only cancel your own appointments")
        if ctx.role == UserRole.DOCTOR and not _belongs_to(appointment, "doctor", ctx.user_id, ctx.doctor_id):
            raise ToolAuthorizationError("You can only cancel appointments assigned to you")

        cancelled = await self.gateway.cancel_appointment(payload.appointmentId, payload.reason)
        logger.info("appointment_cancelled", appointment_id=payload.appointmentId, cancelled_by=ctx.role.value)
        return {
            "success": True,
            "message": "Appointment cancelled successfully",
            "appointmentId": (cancelled or {}).get("id") or payload.appointmentId,
            "reason": payload.reason or "No reason provided",
            "cancelledBy": ctx.role.value,
        }

    @staticmethod
    def _prescription_scope(ctx: UserContext, requested: str | None) -> UserRole:
        if requested:
            try:
                role = UserRole(requested.strip().lower())
            except ValueError:
                raise ToolValidationError(f"Unknown role '{requested}'.") from None
        else:
            role = ctx.role
        if ctx.role == UserRole.ADMIN and role != UserRole.ADMIN:
            raise ToolAuthorizationError(
                "As an admin, you can view system data but cannot access role-specific prescriptions directly. "
                "Please specify the correct role parameter."
            )
        if ctx.role != UserRole.ADMIN and role != ctx.role:
            raise ToolAuthorizationError(f"You can only view prescriptions as a {ctx.role.value}.")
        return role

    async def get_my_prescriptions(self, ctx: UserContext, payload: MyPrescriptionsInput) -> dict[str, Any]:
        role = self._prescription_scope(ctx, payload.role)
        prescriptions = await self.gateway.find_prescriptions(ctx.user_id, role.value)
        if not prescriptions:
            return {
                "success": True,
                "message": "No prescriptions found",
                "total": 0,
                "prescriptions": [],
                "role": role.value,
            }
        return {
            "success": True,
            "total": len(prescriptions),
            "role": role.value,
            "prescriptions": [
                {
                    "id": item.get("id"),
                    "issueDate": item.get("issueDate"),
                    "expiryDate": item.get("expiryDate"),
                    "isFulfilled": item.get("isFulfilled"),
                    "patientName": _party_name(item.get("patient")),
                    "doctorName": _party_name(item.get("prescribedBy")),
                    "pharmacistName": _party_name(item.get("fulfilledBy")),
                    "itemsCount": len(item.get("items") or []),
                }
                for item in prescriptions
            ],
            "summary": f"Found {len(prescriptions)} prescription{_plural(len(prescriptions))}",
        }

    async def get_prescription_details(self, ctx: UserContext, payload: PrescriptionDetailsInput) -> dict[str, Any]:
        role = self._prescription_scope(ctx, payload.role)
        prescription = await self.gateway.find_prescription(payload.prescriptionId, ctx.user_id, role.value)
        if not prescription:
            raise ToolNotFound("Prescription not found or you do not have permission to view it")

        def party(record: dict[str, Any] | None) -> dict[str, Any] | None:
            if not isinstance(record, dict):
                return None
            return {"name": record.get("fullName"), "id": record.get("id")}

        return {
            "success": True,
            "id": prescription.get("id"),
            "issueDate": prescription.get("issueDate"),
            "expiryDate": prescription.get("expiryDate"),
            "isFulfilled": prescription.get("isFulfilled"),
            "items": prescription.get("items") or [],
            "patient": party(prescription.get("patient")),
            "doctor": party(prescription.get("prescribedBy")),
            "pharmacist": party(prescription.get("fulfilledBy")),
            "accessedBy": role.value,
        }


def register_tools(registry: ToolRegistry, toolset: MedicToolset) -> None:
    patient_only = frozenset({UserRole.PATIENT})
    appointment_roles = frozenset({UserRole.PATIENT, UserRole.DOCTOR, UserRole.ADMIN})
    registry.register(
        ToolDefinition(
            "list_doctors",
            "List all available doctors, optionally filtered by specialty",
            ListDoctorsInput,
            toolset.list_doctors,
        )
    )
    registry.register(
        ToolDefinition(
            "check_doctor_availability",
            "Check available time slots for a specific doctor on a given day of the week",
            DoctorAvailabilityInput,
            toolset.check_doctor_availability,
        )
    )
    registry.register(
        ToolDefinition(
            "list_available_doctors_by_day",
            "List doctors with availability on a specific day of the week, optionally filtered by specialty",
            AvailableDoctorsByDayInput,
            toolset.list_available_doctors_by_day,
        )
    )
    registry.register(
        ToolDefinition(
            "book_appointment",
            "Book an appointment for the current patient with a doctor at a specific time",
            BookAppointmentInput,
            toolset.book_appointment,
            allowed_roles=patient_only,
            mutating=True,
        )
    )
    registry.register(
        ToolDefinition(
            "get_my_appointments",
            "Get the appointments visible to the current user, optionally filtered by status",
            MyAppointmentsInput,
            toolset.get_my_appointments,
            allowed_roles=appointment_roles,
        )
    )
    registry.register(
        ToolDefinition(
            "cancel_appointment",
            "Cancel a specific appointment",
            CancelAppointmentInput,
            toolset.cancel_appointment,
            allowed_roles=appointment_roles,
            mutating=True,
        )
    )
    registry.register(
        ToolDefinition(
            "get_my_prescriptions",
            "Get all prescriptions for the current user",
            MyPrescriptionsInput,
            toolset.get_my_prescriptions,
            allowed_roles=ALL_ROLES,
        )
    )
    registry.register(
        ToolDefinition(
            "get_prescription_details",
            "Get detailed information about a specific prescription",
            PrescriptionDetailsInput,
            toolset.get_prescription_details,
            allowed_roles=ALL_ROLES,
        )
    )
