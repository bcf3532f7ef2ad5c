from __future__ import annotations

import os

import pytest

from bracket_bot.demo import populate_demo_entrants
from bracket_bot.memory import InMemoryTable
from bracket_bot.storage import TournamentStorage

# bracketbot reads its configuration at import time.
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("TOURNAMENT_TABLE_NAME", "bracket-test")
os.environ.setdefault("TOURNAMENT_ADMIN_ROLE_ID", "4242")


@pytest.fixture
def table() -> InMemoryTable:
    return InMemoryTable()


@pytest.fixture
def storage(table: InMemoryTable) -> TournamentStorage:
    return TournamentStorage(table, "cup")


@pytest.fixture
def seeded_storage(storage: TournamentStorage) -> TournamentStorage:
    """Twenty demo entrants where entrant ``n`` holds seed ``n``."""
    for entrant in populate_demo_entrants(storage):
        storage.set_seed(entrant.entrant_id, entrant.entrant_id)
    return storage
