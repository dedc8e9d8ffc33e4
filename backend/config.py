from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_LLM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    rate_limit_count: int = 10
    rate_limit_ttl_seconds: float = 86400.0
    response_timeout_seconds: float = 30.0
    stream_timeout_seconds: float = 45.0
    stream_iteration_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 10.0
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_api_key: str = ""
    llm_model: str = "gemini-2.0-flash"
    llm_temperature: float = 0.7
    llm_max_output_tokens: int = 1024
    llm_max_tool_steps: int = 5
    gateway_base_url: str = "http://localhost:3000/api"
    gateway_timeout_seconds: float = 10.0
    gateway_token: str | None = None
    trust_forwarded_for: bool = True
    allowed_origins: tuple[str, ...] = ("http://localhost:5173",)
    log_level: str = "INFO"


def load_settings() -> Settings:
    origins = _env_str("ALLOWED_ORIGINS", "http://localhost:5173")
    return Settings(
        rate_limit_count=_env_int("MEDIC_RATE_LIMIT_COUNT", 10),
        rate_limit_ttl_seconds=_env_float("MEDIC_RATE_LIMIT_TTL_SECONDS", 86400.0),
        response_timeout_seconds=_env_float("MEDIC_RESPONSE_TIMEOUT_SECONDS", 30.0),
        stream_timeout_seconds=_env_float("MEDIC_STREAM_TIMEOUT_SECONDS", 45.0),
        stream_iteration_timeout_seconds=_env_float("MEDIC_STREAM_ITERATION_TIMEOUT_SECONDS", 30.0),
        probe_timeout_seconds=_env_float("MEDIC_PROBE_TIMEOUT_SECONDS", 10.0),
        llm_base_url=_env_str("MEDIC_LLM_BASE_URL", DEFAULT_LLM_BASE_URL),
        llm_api_key=_env_str("MEDIC_LLM_API_KEY", os.getenv("GEMINI_API_KEY", "").strip()),
        llm_model=_env_str("MEDIC_LLM_MODEL", "gemini-2.0-flash"),
        llm_temperature=_env_float("MEDIC_LLM_TEMPERATURE", 0.7),
        llm_max_output_tokens=_env_int("MEDIC_LLM_MAX_OUTPUT_TOKENS", 1024),
        llm_max_tool_steps=_env_int("MEDIC_LLM_MAX_TOOL_STEPS", 5),
        gateway_base_url=_env_str("MEDIC_GATEWAY_BASE_URL", "http://localhost:3000/api"),
        gateway_timeout_seconds=_env_float("MEDIC_GATEWAY_TIMEOUT_SECONDS", 10.0),
        gateway_token=os.getenv("MEDIC_GATEWAY_TOKEN", "").strip() or None,
        trust_forwarded_for=_env_bool("MEDIC_TRUST_FORWARDED_FOR", True),
        allowed_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
    )
