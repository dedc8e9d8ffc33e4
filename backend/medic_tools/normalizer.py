from __future__ import annotations

from medic_agent_core.models import DAYS_OF_WEEK

_SPECIALTY_SYNONYMS = {
    "cardio": "Cardiology",
    "heart": "Cardiology",
    "dermatology": "Dermatology",
    "skin": "Dermatology",
    "neuro": "Neurology",
    "brain": "Neurology",
    "ortho": "Orthopedics",
    "bone": "Orthopedics",
    "pediatric": "Pediatrics",
    "gynecology": "Gynecology",
    "psychiatry": "Psychiatry",
    "oncology": "Oncology",
}

_DAY_SYNONYMS = {day[:3].lower(): day for day in DAYS_OF_WEEK} | {day.lower(): day for day in DAYS_OF_WEEK}


def normalize_specialty(specialty: str | None) -> str | None:
    if not specialty or not isinstance(specialty, str):
        return specialty
    cleaned = specialty.strip()
    return _SPECIALTY_SYNONYMS.get(cleaned.lower(), cleaned)


def normalize_day_of_week(day: str | None) -> str | None:
    if not day or not isinstance(day, str):
        return day
    cleaned = day.strip()
    return _DAY_SYNONYMS.get(cleaned.lower(), cleaned)


def is_valid_day_of_week(day: str | None) -> bool:
    return day in DAYS_OF_WEEK


def canonical_day_of_week(day: str | None) -> str | None:
    """Return the canonical weekday for free text like "mon" or "MONDAY", else None."""
    normalized = normalize_day_of_week(day)
    return normalized if is_valid_day_of_week(normalized) else None
