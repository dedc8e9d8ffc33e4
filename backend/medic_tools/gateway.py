from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from medic_agent_core.errors import GatewayError
from medic_agent_core.models import AppointmentDraft, Pagination

logger = structlog.get_logger(__name__)


class DomainGateway(Protocol):
    """Doctor, appointment, patient, pharmacist and prescription operations the tools depend on."""

    async def find_doctors(
        self, pagination: Pagination, *, specialty: str | None = None, full_name: str | None = None
    ) -> dict[str, Any]: ...

    async def get_doctor_availability(self, doctor_id: str, *, day_of_week: str) -> dict[str, Any]: ...

    async def find_doctor(self, doctor_id: str) -> dict[str, Any] | None: ...

    async def create_appointment(self, draft: AppointmentDraft) -> dict[str, Any]: ...

    async def find_appointment(self, appointment_id: str) -> dict[str, Any] | None: ...

    async def cancel_appointment(self, appointment_id: str, reason: str | None = None) -> dict[str, Any]: ...

    async def find_appointments(
        self, pagination: Pagination, *, status: str | None, user_id: str, role_scope: str
    ) -> dict[str, Any]: ...

    async def find_patient_by_user_id(self, user_id: str) -> dict[str, Any] | None: ...

    async def find_doctor_by_user_id(self, user_id: str) -> dict[str, Any] | None: ...

    async def find_pharmacist_by_user_id(self, user_id: str) -> dict[str, Any] | None: ...

    async def find_prescriptions(self, user_id: str, role: str) -> list[dict[str, Any]]: ...

    async def find_prescription(self, prescription_id: str, user_id: str, role: str) -> dict[str, Any] | None: ...


def _service_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        msg = payload.get("message")
        if isinstance(msg, list):
            msg = "; ".join(str(item) for item in msg)
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return f"Domain service returned HTTP {response.status_code}"


def _params(**values: Any) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None and value != ""}


def _object_body(payload: Any, path: str) -> dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        logger.warning("gateway_unexpected_body", path=path, body_type=type(payload).__name__)
        raise GatewayError("The medical records service returned an unexpected response.")
    return payload


class HttpDomainGateway:
    """Adapter over the application's REST services."""

    def __init__(
        self,
        base_url: str,
        *,
        service_token: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, params=params, json=json, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("gateway_request_failed", method=method, path=path, error_type=type(exc).__name__)
            raise GatewayError("The medical records service is unavailable. Please try again later.") from exc

        if allow_missing and response.status_code == 404:
            return None
        if response.status_code >= 400:
            message = _service_error_message(response)
            logger.warning("gateway_error_status", method=method, path=path, status=response.status_code)
            raise GatewayError(message)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.warning("gateway_invalid_json", method=method, path=path)
            raise GatewayError("The medical records service returned an unexpected response.") from exc

    async def _record(self, method: str, path: str, **kwargs: Any) -> dict[str, Any] | None:
        payload = await self._request(method, path, **kwargs)
        return None if payload is None else _object_body(payload, path)

    async def find_doctors(
        self, pagination: Pagination, *, specialty: str | None = None, full_name: str | None = None
    ) -> dict[str, Any]:
        payload = await self._request(
            "GET",
            "/doctors",
            params=_params(page=pagination.page, limit=pagination.limit, specialty=specialty, fullName=full_name),
        )
        payload = _object_body(payload, "/doctors")
        return {"data": list(payload.get("data") or []), "total": int(payload.get("total") or 0)}

    async def get_doctor_availability(self, doctor_id: str, *, day_of_week: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/doctors/{doctor_id}/availability", params={"dayOfWeek": day_of_week})
        payload = _object_body(payload, f"/doctors/{doctor_id}/availability")
        return {
            "availableSlots": list(payload.get("availableSlots") or []),
            "busySlots": list(payload.get("busySlots") or []),
        }

    async def find_doctor(self, doctor_id: str) -> dict[str, Any] | None:
        return await self._record("GET", f"/doctors/{doctor_id}", allow_missing=True)

    async def create_appointment(self, draft: AppointmentDraft) -> dict[str, Any]:
        return await self._record("POST", "/appointments", json=draft.as_payload())

    async def find_appointment(self, appointment_id: str) -> dict[str, Any] | None:
        return await self._record("GET", f"/appointments/{appointment_id}", allow_missing=True)

    async def cancel_appointment(self, appointment_id: str, reason: str | None = None) -> dict[str, Any]:
        return await self._record("PATCH", f"/appointments/{appointment_id}/cancel", json=_params(reason=reason))

    async def find_appointments(
        self, pagination: Pagination, *, status: str | None, user_id: str, role_scope: str
    ) -> dict[str, Any]:
        payload = await self._request(
            "GET",
            "/appointments",
            params=_params(
                page=pagination.page,
                limit=pagination.limit,
                status=status,
                userId=user_id,
                role=role_scope,
            ),
        )
        payload = _object_body(payload, "/appointments")
        return {"data": list(payload.get("data") or []), "total": int(payload.get("total") or 0)}

    async def find_patient_by_user_id(self, user_id: str) -> dict[str, Any] | None:
        return await self._record("GET", f"/patients/by-user/{user_id}", allow_missing=True)

    async def find_doctor_by_user_id(self, user_id: str) -> dict[str, Any] | None:
        return await self._record("GET", f"/doctors/by-user/{user_id}", allow_missing=True)

    async def find_pharmacist_by_user_id(self, user_id: str) -> dict[str, Any] | None:
        return await self._record("GET", f"/pharmacists/by-user/{user_id}", allow_missing=True)

    async def find_prescriptions(self, user_id: str, role: str) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/prescriptions", params={"userId": user_id, "role": role})
        if isinstance(payload, dict):
            payload = payload.get("data")
        if payload is not None and not isinstance(payload, list):
            logger.warning("gateway_unexpected_body", path="/prescriptions", body_type=type(payload).__name__)
            raise GatewayError("The medical records service returned an unexpected response.")
        return list(payload or [])

    async def find_prescription(self, prescription_id: str, user_id: str, role: str) -> dict[str, Any] | None:
        return await self._record(
            "GET",
            f"/prescriptions/{prescription_id}",
            params={"userId": user_id, "role": role},
            allow_missing=True,
        )
