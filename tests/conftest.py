"""Shared pytest fixtures.

Provides an in-process storage backend seeded with a small election:

- President (cap 1): candidates A, B
- Senator (cap 2, Legislative): candidates C, D, E
"""

from typing import Dict

import pytest

from school_election.storage import MemoryStorage


def pytest_configure(config):
    config.addinivalue_line("markers", "docker: requires a running PostgreSQL database")
    config.addinivalue_line("markers", "slow: long-running tests")


@pytest.fixture
def storage() -> MemoryStorage:
    """Fresh in-process storage for each test."""
    return MemoryStorage()


@pytest.fixture
async def election(storage: MemoryStorage) -> Dict:
    """Seed positions, candidates and a party list.

    Returns a dict with the created records; candidates are keyed by letter.
    """
    party = await storage.create_party_list("Unity Party", color="#FF8042")
    president = await storage.create_position("President", max_votes=1)
    senator = await storage.create_position("Senator", max_votes=2, category="Legislative")

    candidates = {}
    for letter, position in (("A", president), ("B", president),
                             ("C", senator), ("D", senator), ("E", senator)):
        candidates[letter] = await storage.create_candidate(
            f"Candidate {letter}",
            position.id,
            party_list_id=party.id if letter in ("A", "C") else None
        )

    return {
        "party_list": party,
        "president": president,
        "senator": senator,
        "candidates": candidates,
    }


@pytest.fixture
async def student(storage: MemoryStorage):
    """A registered, non-admin voter."""
    return await storage.create_user("2025-00001", "Juan Dela Cruz")
