from __future__ import annotations

import hmac
import re


class InvalidValueError(ValueError):
    """Base exception for validation failures."""


class InvalidTournamentCodeError(InvalidValueError):
    """Raised when the supplied registration code does not match."""


AOE2_CIVILIZATIONS: tuple[str, ...] = (
    "Aztecs",
    "Berbers",
    "Britons",
    "Bulgarians",
    "Burmese",
    "Byzantines",
    "Celts",
    "Chinese",
    "Cumans",
    "Ethiopians",
    "Franks",
    "Goths",
    "Huns",
    "Incas",
    "Indians",
    "Italians",
    "Japanese",
    "Khmer",
    "Koreans",
    "Lithuanians",
    "Magyars",
    "Malay",
    "Malians",
    "Mayans",
    "Mongols",
    "Persians",
    "Portuguese",
    "Saracens",
    "Slavs",
    "Spanish",
    "Tatars",
    "Teutons",
    "Turks",
    "Vietnamese",
    "Vikings",
)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CIVILIZATION_LOOKUP = {civ.lower(): civ for civ in AOE2_CIVILIZATIONS}


def validate_entrant_name(raw: str) -> str:
    name = raw.strip()
    if len(name) < 2:
        raise InvalidValueError("Name must be at least 2 characters")
    if len(name) > 100:
        raise InvalidValueError("Name must be 100 characters or fewer")
    return name


def normalize_email(raw: str) -> str:
    email = raw.strip()
    if not _EMAIL_PATTERN.match(email):
        raise InvalidValueError("Valid email is required")
    return email.lower()


def validate_handle(raw: str) -> str:
    handle = raw.strip()
    if len(handle) < 2:
        raise InvalidValueError("Game username must be at least 2 characters")
    if len(handle) > 64:
        raise InvalidValueError("Game username must be 64 characters or fewer")
    return handle


def normalize_civilization(raw: str | None) -> str | None:
    if raw is None or not raw.strip():
        return None
    civ = _CIVILIZATION_LOOKUP.get(raw.strip().lower())
    if civ is None:
        raise InvalidValueError(f"Unknown civilization: {raw.strip()}")
    return civ


def verify_tournament_code(supplied: str, expected: str | None) -> None:
    if not supplied or not supplied.strip():
        raise InvalidTournamentCodeError("Tournament code is required")
    if not expected:
        raise InvalidTournamentCodeError("Registration is currently closed")
    if not hmac.compare_digest(supplied.strip(), expected):
        raise InvalidTournamentCodeError("Invalid tournament code")


__all__ = [
    "AOE2_CIVILIZATIONS",
    "InvalidTournamentCodeError",
    "InvalidValueError",
    "normalize_civilization",
    "normalize_email",
    "validate_entrant_name",
    "validate_handle",
    "verify_tournament_code",
]
