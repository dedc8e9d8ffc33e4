from __future__ import annotations

import dataclasses
import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fakes import FakeGateway, ScriptedModel  # noqa: E402


@pytest.fixture
def backend_module(monkeypatch):
    monkeypatch.delenv("MEDIC_LLM_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("MEDIC_GATEWAY_BASE_URL", "http://gateway.test/api")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def install_container(backend_module, fake_gateway, monkeypatch):
    def _install(model: ScriptedModel, **overrides):
        settings = dataclasses.replace(backend_module.settings, **overrides)
        container = backend_module.MedicAssistantApp(settings, gateway=fake_gateway, model=model)
        monkeypatch.setattr(backend_module, "container", container)
        return container

    return _install


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def chat_headers() -> Callable[..., dict[str, str]]:
    def _make(user_id: str = "user-pat-1", role: str = "patient", ip: str = "1.2.3.4") -> dict[str, str]:
        return {"X-User-Id": user_id, "X-User-Role": role, "X-Forwarded-For": f"{ip}, 10.0.0.1"}

    return _make
