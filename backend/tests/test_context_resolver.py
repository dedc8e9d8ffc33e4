from __future__ import annotations

import asyncio

import pytest

from fakes import FakeGateway
from medic_agent_core.context import ContextResolver
from medic_agent_core.errors import ProfileNotFound, UnrecognizedRole
from medic_agent_core.models import UserRole


def _resolve(user_id: str, role: str, gateway: FakeGateway | None = None):
    resolver = ContextResolver(gateway or FakeGateway())
    return asyncio.run(resolver.resolve(user_id, role))


def test_patient_context_carries_patient_profile_id():
    ctx = _resolve("user-pat-1", "patient")
    assert ctx.role == UserRole.PATIENT
    assert ctx.patient_id == "pat-1"
    assert ctx.doctor_id is None


def test_doctor_role_is_case_insensitive():
    ctx = _resolve("user-doc-1", " Doctor ")
    assert ctx.role == UserRole.DOCTOR
    assert ctx.doctor_id == "doc-1"


def test_pharmacist_gets_its_own_profile_field():
    ctx = _resolve("user-ph-1", "pharmacist")
    assert ctx.pharmacist_id == "ph-1"
    assert ctx.patient_id is None
    assert ctx.doctor_id is None


def test_admin_skips_profile_lookup():
    class _NoLookups:
        def __getattr__(self, name):
            raise AssertionError(f"unexpected lookup {name}")

    resolver = ContextResolver(_NoLookups())
    ctx = asyncio.run(resolver.resolve("root", "ADMIN"))
    assert ctx.role == UserRole.ADMIN
    assert ctx.patient_id is None


def test_missing_profile_raises_profile_not_found():
    with pytest.raises(ProfileNotFound) as excinfo:
        _resolve("user-unknown", "patient")
    assert excinfo.value.message == "Patient profile not found"


def test_unknown_role_is_rejected_not_downgraded():
    with pytest.raises(UnrecognizedRole) as excinfo:
        _resolve("user-pat-1", "nurse")
    assert "nurse" in excinfo.value.message
