#!/usr/bin/env python3
from __future__ import annotations

import importlib
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient


@dataclass
class Scenario:
  name: str
  role: str
  user_id: str
  messages: list[dict[str, str]]
  expect_any: list[str] = field(default_factory=list)


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Live smoke run: requires a model credential and a reachable domain service.
  os.environ.setdefault("MEDIC_RATE_LIMIT_COUNT", "1000")

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  patient_id = os.getenv("SMOKE_PATIENT_USER_ID", "smoke-patient")
  doctor_id = os.getenv("SMOKE_DOCTOR_USER_ID", "smoke-doctor")
  scenarios = [
    Scenario(
      name="Doctor Listing By Specialty",
      role="patient",
      user_id=patient_id,
      messages=[{"role": "user", "content": "Which heart doctors do you have?"}],
      expect_any=["Cardiology", "cardiolog", "No "],
    ),
    Scenario(
      name="Availability On A Weekday",
      role="patient",
      user_id=patient_id,
      messages=[{"role": "user", "content": "Who is available on mon?"}],
      expect_any=["Monday", "available"],
    ),
    Scenario(
      name="Doctor Cannot Book",
      role="doctor",
      user_id=doctor_id,
      messages=[{"role": "user", "content": "Book me an appointment with any cardiologist tomorrow at 10am."}],
      expect_any=["patient", "cannot", "can't", "not able"],
    ),
    Scenario(
      name="Prescription Listing",
      role="patient",
      user_id=patient_id,
      messages=[{"role": "user", "content": "Show my prescriptions."}],
      expect_any=["prescription"],
    ),
  ]

  results: list[dict[str, Any]] = []
  with TestClient(backend_module.app) as client:
    model_check = client.get("/chat/test")
    results.append(
      {
        "name": "Model Self Test",
        "status_code": model_check.status_code,
        "pass": model_check.status_code == 200,
        "preview": model_check.text[:240],
      }
    )

    for scenario in scenarios:
      response = client.post(
        "/chat",
        headers={"X-User-Id": scenario.user_id, "X-User-Role": scenario.role},
        json={"messages": scenario.messages},
      )
      text = response.text
      matched = any(needle.lower() in text.lower() for needle in scenario.expect_any)
      scenario_result: dict[str, Any] = {
        "name": scenario.name,
        "status_code": response.status_code,
        "pass": response.status_code == 200 and matched,
        "preview": text[:240],
      }
      if response.status_code != 200:
        scenario_result["error"] = f"/chat returned {response.status_code}"
      elif not matched:
        scenario_result["error"] = f"Expected one of {scenario.expect_any!r} in the reply"
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Chat Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- MEDIC_LLM_MODEL: `{backend_module.settings.llm_model}`",
    f"- MEDIC_GATEWAY_BASE_URL: `{backend_module.settings.gateway_base_url}`",
    f"- Total checks: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Results",
    "",
  ]
  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Status code: `{item.get('status_code')}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    preview = item.get("preview") or ""
    if preview:
      report_lines.append(f"- Reply preview: `{preview}`")
    report_lines.append("")

  report_path = repo_root / "CHAT_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} checks.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
