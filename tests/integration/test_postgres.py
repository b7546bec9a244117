"""Integration tests for the PostgreSQL storage backend.

Requires: a reachable PostgreSQL database configured through the POSTGRES_*
settings. Tests are skipped when the database cannot be reached.
"""

import asyncio

import pytest

from school_election.ballot import Denial
from school_election.database import PostgresStorage
from school_election.storage import ConflictError, NotFoundError, StorageError


@pytest.fixture
async def pg_storage():
    """PostgresStorage on an emptied schema."""
    storage = PostgresStorage()
    try:
        await storage.initialize()
    except Exception as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    async with storage.pool.acquire() as conn:
        await conn.execute(
            "TRUNCATE ballot_entries, candidates, positions, party_lists, users "
            "RESTART IDENTITY CASCADE"
        )
    yield storage
    await storage.close()


@pytest.fixture
async def pg_election(pg_storage: PostgresStorage):
    president = await pg_storage.create_position("President", max_votes=1)
    senator = await pg_storage.create_position("Senator", max_votes=2, category="Legislative")
    candidates = [
        await pg_storage.create_candidate(f"Candidate {letter}", position.id)
        for letter, position in (("A", president), ("B", president),
                                 ("C", senator), ("D", senator), ("E", senator))
    ]
    voter = await pg_storage.create_user("2025-00123", "Juan Dela Cruz")
    return {"president": president, "senator": senator, "candidates": candidates, "voter": voter}


@pytest.fixture
async def failing_write(pg_storage: PostgresStorage):
    """Factory installing a trigger that makes one table's writes fail.

    Triggers are dropped on teardown.
    """
    installed = []

    async def _install(table: str, event: str):
        name = f"fail_{table}_{event.lower()}"
        async with pg_storage.pool.acquire() as conn:
            await conn.execute(
                """
                CREATE OR REPLACE FUNCTION fail_write() RETURNS trigger AS $$
                BEGIN
                    RAISE EXCEPTION 'write rejected on %', TG_TABLE_NAME;
                END;
                $$ LANGUAGE plpgsql
                """
            )
            await conn.execute(f"DROP TRIGGER IF EXISTS {name} ON {table}")
            await conn.execute(
                f"CREATE TRIGGER {name} BEFORE {event} ON {table} "
                f"FOR EACH ROW EXECUTE FUNCTION fail_write()"
            )
        installed.append((name, table))

    yield _install

    async with pg_storage.pool.acquire() as conn:
        for name, table in installed:
            await conn.execute(f"DROP TRIGGER IF EXISTS {name} ON {table}")


async def ballot_rows(storage: PostgresStorage, voter_id: int) -> int:
    async with storage.pool.acquire() as conn:
        return await conn.fetchval(
            "SELECT COUNT(*) FROM ballot_entries WHERE user_id = $1", voter_id
        )


async def counts(storage: PostgresStorage):
    return {c.name[-1]: c.vote_count for c in await storage.list_candidates()}


@pytest.mark.docker
@pytest.mark.asyncio
class TestPostgresLedger:
    """Ledger operations against a real database."""

    async def test_vote_cap_and_reset(self, pg_storage, pg_election):
        voter_id = pg_election["voter"].id
        a, b = pg_election["candidates"][:2]

        decision, voter = await pg_storage.cast_vote(voter_id, a.id)
        assert decision.allowed
        assert list(voter.ballot) == [a.id]

        decision, _ = await pg_storage.cast_vote(voter_id, b.id)
        assert decision.reason == Denial.POSITION_CAP_EXCEEDED
        assert decision.cap == 1
        assert (await counts(pg_storage))["A"] == 1

        assert await pg_storage.reset_vote(voter_id) == [a.id]
        assert await pg_storage.reset_vote(voter_id) == []
        assert (await counts(pg_storage))["A"] == 0
        assert len((await pg_storage.get_user(voter_id)).ballot) == 0

    async def test_concurrent_votes_serialized_per_voter(self, pg_storage, pg_election):
        voter_id = pg_election["voter"].id
        senators = pg_election["candidates"][2:]

        results = await asyncio.gather(*[
            pg_storage.cast_vote(voter_id, c.id) for c in senators
        ])

        assert sum(1 for d, _ in results if d.allowed) == 2
        stored = await counts(pg_storage)
        assert stored["C"] + stored["D"] + stored["E"] == 2

    async def test_duplicate_and_lock(self, pg_storage, pg_election):
        voter_id = pg_election["voter"].id
        c = pg_election["candidates"][2]

        await pg_storage.cast_vote(voter_id, c.id)
        decision, _ = await pg_storage.cast_vote(voter_id, c.id)
        assert decision.reason == Denial.DUPLICATE_VOTE

        await pg_storage.mark_voted(voter_id)
        decision, _ = await pg_storage.cast_vote(voter_id, pg_election["candidates"][0].id)
        assert decision.reason == Denial.BALLOT_LOCKED

    async def test_delete_user_releases_votes(self, pg_storage, pg_election):
        voter_id = pg_election["voter"].id
        await pg_storage.cast_vote(voter_id, pg_election["candidates"][0].id)

        await pg_storage.delete_user(voter_id)

        assert (await counts(pg_storage))["A"] == 0

    async def test_failed_count_update_rolls_back_ballot_entry(self, pg_storage, pg_election,
                                                                failing_write):
        """The ballot insert is undone when the vote count update fails."""
        voter_id = pg_election["voter"].id
        a = pg_election["candidates"][0]
        await failing_write("candidates", "UPDATE")

        with pytest.raises(StorageError):
            await pg_storage.cast_vote(voter_id, a.id)

        assert await ballot_rows(pg_storage, voter_id) == 0
        assert (await counts(pg_storage))["A"] == 0
        assert len((await pg_storage.get_user(voter_id)).ballot) == 0

    async def test_failed_reset_leaves_ledger_intact(self, pg_storage, pg_election,
                                                     failing_write):
        """Decrements are undone when clearing the ballot fails."""
        voter_id = pg_election["voter"].id
        a, _, c = pg_election["candidates"][:3]
        await pg_storage.cast_vote(voter_id, a.id)
        await pg_storage.cast_vote(voter_id, c.id)
        await pg_storage.mark_voted(voter_id)
        await failing_write("ballot_entries", "DELETE")

        with pytest.raises(StorageError):
            await pg_storage.reset_vote(voter_id)

        stored = await counts(pg_storage)
        assert (stored["A"], stored["C"]) == (1, 1)
        voter = await pg_storage.get_user(voter_id)
        assert list(voter.ballot) == [a.id, c.id]
        assert voter.has_voted is True

    async def test_candidate_party_list_must_exist(self, pg_storage, pg_election):
        with pytest.raises(NotFoundError):
            await pg_storage.create_candidate("X", pg_election["president"].id, party_list_id=999)
        with pytest.raises(NotFoundError):
            await pg_storage.update_candidate(pg_election["candidates"][0].id,
                                              {"party_list_id": 999})

    async def test_unique_reference_number(self, pg_storage, pg_election):
        with pytest.raises(ConflictError):
            await pg_storage.create_user("2025-00123", "Someone Else")
