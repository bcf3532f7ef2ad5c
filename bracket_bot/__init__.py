"""Bracket bot helpers."""

from .bracket import (
    BracketBusy,
    BracketError,
    InvalidEntrantCount,
    InvalidSeeding,
    InvalidWinner,
    MatchAlreadyDecided,
    MatchNotFound,
    SlotConflict,
    UnknownEntrant,
    generate_bracket,
    record_winner,
)
from .models import Entrant, Match, Slot, round_name, utc_now_iso
from .seeding import SeedingLockedError, assign_seeds
from .storage import TournamentStorage
from .validation import (
    AOE2_CIVILIZATIONS,
    InvalidTournamentCodeError,
    InvalidValueError,
    normalize_civilization,
    normalize_email,
    validate_entrant_name,
    validate_handle,
    verify_tournament_code,
)

__all__ = [
    "AOE2_CIVILIZATIONS",
    "BracketBusy",
    "BracketError",
    "Entrant",
    "InvalidEntrantCount",
    "InvalidSeeding",
    "InvalidTournamentCodeError",
    "InvalidValueError",
    "InvalidWinner",
    "Match",
    "MatchAlreadyDecided",
    "MatchNotFound",
    "SeedingLockedError",
    "Slot",
    "SlotConflict",
    "TournamentStorage",
    "UnknownEntrant",
    "assign_seeds",
    "generate_bracket",
    "normalize_civilization",
    "normalize_email",
    "record_winner",
    "round_name",
    "utc_now_iso",
    "validate_entrant_name",
    "validate_handle",
    "verify_tournament_code",
]
