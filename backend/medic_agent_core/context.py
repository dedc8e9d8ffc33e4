from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import structlog

from .errors import ProfileNotFound, UnrecognizedRole
from .models import UserContext, UserRole

logger = structlog.get_logger(__name__)


class ProfileDirectory(Protocol):
    async def find_patient_by_user_id(self, user_id: str) -> dict[str, Any] | None: ...

    async def find_doctor_by_user_id(self, user_id: str) -> dict[str, Any] | None: ...

    async def find_pharmacist_by_user_id(self, user_id: str) -> dict[str, Any] | None: ...


def parse_role(value: str | UserRole) -> UserRole:
    if isinstance(value, UserRole):
        return value
    try:
        return UserRole(str(value or "").strip().lower())
    except ValueError:
        raise UnrecognizedRole(str(value)) from None


class ContextResolver:
    def __init__(self, profiles: ProfileDirectory) -> None:
        self.profiles = profiles

    async def resolve(self, user_id: str, declared_role: str | UserRole) -> UserContext:
        role = parse_role(declared_role)
        logger.info("user_context_resolving", user_id=user_id, role=role.value)

        if role == UserRole.ADMIN:
            return UserContext(user_id=user_id, role=role)

        lookups: dict[UserRole, Callable[[str], Awaitable[dict[str, Any] | None]]] = {
            UserRole.PATIENT: self.profiles.find_patient_by_user_id,
            UserRole.DOCTOR: self.profiles.find_doctor_by_user_id,
            UserRole.PHARMACIST: self.profiles.find_pharmacist_by_user_id,
        }
        profile = await lookups[role](user_id)
        if not profile or not profile.get("id"):
            logger.warning("user_profile_missing", user_id=user_id, role=role.value)
            raise ProfileNotFound(role.value)

        profile_id = str(profile["id"])
        if role == UserRole.PATIENT:
            context = UserContext(user_id=user_id, role=role, patient_id=profile_id)
        elif role == UserRole.DOCTOR:
            context = UserContext(user_id=user_id, role=role, doctor_id=profile_id)
        else:
            context = UserContext(user_id=user_id, role=role, pharmacist_id=profile_id)
        logger.info("user_context_resolved", **context.as_log_fields())
        return context
