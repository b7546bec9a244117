"""PostgreSQL storage backend on asyncpg."""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from .ballot import (
    Ballot,
    Candidate,
    Decision,
    Position,
    Voter,
    apply_vote,
    can_vote,
)
from .config import settings
from .storage import (
    CANDIDATE_FIELDS,
    PARTY_LIST_FIELDS,
    SETTINGS_FIELDS,
    ConflictError,
    NotFoundError,
    PartyList,
    Storage,
    StorageError,
    SystemSettings,
    filter_updates,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    reference_number TEXT NOT NULL UNIQUE,
    student_name TEXT NOT NULL,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE,
    has_voted BOOLEAN NOT NULL DEFAULT FALSE,
    school_level TEXT,
    grade_level TEXT
);

CREATE TABLE IF NOT EXISTS party_lists (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    logo_url TEXT,
    color TEXT NOT NULL DEFAULT '#0088FE',
    platform_image_url TEXT,
    party_list_images TEXT[] NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS positions (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    display_order INTEGER NOT NULL,
    max_votes INTEGER NOT NULL DEFAULT 1 CHECK (max_votes >= 1),
    category TEXT NOT NULL DEFAULT 'Executive'
);

CREATE TABLE IF NOT EXISTS candidates (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    image_url TEXT NOT NULL DEFAULT '',
    position_id INTEGER NOT NULL REFERENCES positions(id),
    party_list_id INTEGER REFERENCES party_lists(id),
    vote_count INTEGER NOT NULL DEFAULT 0 CHECK (vote_count >= 0),
    school_levels TEXT[] NOT NULL DEFAULT '{}',
    grade_levels TEXT[] NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS ballot_entries (
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    candidate_id INTEGER NOT NULL REFERENCES candidates(id),
    position_id INTEGER NOT NULL REFERENCES positions(id),
    cast_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, candidate_id)
);

CREATE TABLE IF NOT EXISTS system_settings (
    id INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
    left_logo_url TEXT NOT NULL DEFAULT '',
    right_logo_url TEXT NOT NULL DEFAULT '',
    splash_logo_url TEXT NOT NULL DEFAULT '',
    voting_logo_url TEXT NOT NULL DEFAULT ''
);

INSERT INTO system_settings (id) VALUES (1) ON CONFLICT (id) DO NOTHING;
"""


def _voter_from_row(row, entries=()) -> Voter:
    return Voter(
        id=row["id"],
        reference_number=row["reference_number"],
        student_name=row["student_name"],
        is_admin=row["is_admin"],
        has_voted=row["has_voted"],
        ballot=Ballot({e["candidate_id"]: e["position_id"] for e in entries}),
        school_level=row["school_level"],
        grade_level=row["grade_level"]
    )


def _candidate_from_row(row) -> Candidate:
    return Candidate(
        id=row["id"],
        position_id=row["position_id"],
        name=row["name"],
        party_list_id=row["party_list_id"],
        image_url=row["image_url"],
        vote_count=row["vote_count"],
        school_levels=list(row["school_levels"]),
        grade_levels=list(row["grade_levels"])
    )


def _position_from_row(row) -> Position:
    return Position(
        id=row["id"],
        name=row["name"],
        max_votes=row["max_votes"],
        display_order=row["display_order"],
        category=row["category"]
    )


def _party_list_from_row(row) -> PartyList:
    return PartyList(
        id=row["id"],
        name=row["name"],
        color=row["color"],
        logo_url=row["logo_url"],
        platform_image_url=row["platform_image_url"],
        party_list_images=list(row["party_list_images"])
    )


class PostgresStorage(Storage):
    """
    Async PostgreSQL storage.

    Votes and resets run in one transaction that first locks the voter's
    row with SELECT ... FOR UPDATE, so concurrent requests for the same
    voter are serialized while different voters proceed independently.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.postgres_dsn
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                command_timeout=60
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
                logger.info("PostgreSQL schema verified")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")

    async def check_health(self) -> bool:
        """Check database connection health."""
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    @asynccontextmanager
    async def connection(self):
        """Context manager for a pooled connection outside a transaction."""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database query failed: {e}")
            raise StorageError(f"Database query failed: {e}") from e

    @asynccontextmanager
    async def transaction(self):
        """
        Context manager for a connection inside a transaction.

        Unique violations become ConflictError; any other database or
        connection failure becomes StorageError. The transaction is rolled
        back in both cases.
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield conn
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database transaction failed: {e}")
            raise StorageError(f"Database transaction failed: {e}") from e

    async def _lock_voter(self, conn, voter_id: int) -> Voter:
        row = await conn.fetchrow("SELECT * FROM users WHERE id = $1 FOR UPDATE", voter_id)
        if row is None:
            raise NotFoundError(f"User {voter_id} not found")
        entries = await conn.fetch(
            "SELECT candidate_id, position_id FROM ballot_entries WHERE user_id = $1",
            voter_id
        )
        return _voter_from_row(row, entries)

    # Voting

    async def cast_vote(self, voter_id: int, candidate_id: int) -> Tuple[Decision, Voter]:
        async with self.transaction() as conn:
            voter = await self._lock_voter(conn, voter_id)

            row = await conn.fetchrow("SELECT * FROM candidates WHERE id = $1", candidate_id)
            candidate = _candidate_from_row(row) if row else None
            position = None
            if candidate is not None:
                row = await conn.fetchrow(
                    "SELECT * FROM positions WHERE id = $1", candidate.position_id
                )
                position = _position_from_row(row) if row else None

            decision = can_vote(voter, candidate, position)
            if decision.allowed:
                mutation = decision.mutation
                await conn.execute(
                    """
                    INSERT INTO ballot_entries (user_id, candidate_id, position_id)
                    VALUES ($1, $2, $3)
                    """,
                    mutation.voter_id, mutation.candidate_id, mutation.position_id
                )
                await conn.execute(
                    "UPDATE candidates SET vote_count = vote_count + 1 WHERE id = $1",
                    mutation.candidate_id
                )
                apply_vote(voter, candidate, mutation)
            return decision, voter

    async def reset_vote(self, voter_id: int) -> List[int]:
        async with self.transaction() as conn:
            voter = await self._lock_voter(conn, voter_id)
            decremented = await self._clear_ballot(conn, voter)
            await conn.execute("UPDATE users SET has_voted = FALSE WHERE id = $1", voter_id)
            return decremented

    async def _clear_ballot(self, conn, voter: Voter) -> List[int]:
        decremented = list(voter.ballot)
        if decremented:
            await conn.execute(
                """
                UPDATE candidates SET vote_count = GREATEST(vote_count - 1, 0)
                WHERE id = ANY($1::int[])
                """,
                decremented
            )
            await conn.execute("DELETE FROM ballot_entries WHERE user_id = $1", voter.id)
        return decremented

    async def mark_voted(self, voter_id: int) -> None:
        async with self.transaction() as conn:
            await self._lock_voter(conn, voter_id)
            await conn.execute("UPDATE users SET has_voted = TRUE WHERE id = $1", voter_id)

    # Users

    async def create_user(self, reference_number: str, student_name: str,
                          is_admin: bool = False) -> Voter:
        try:
            async with self.transaction() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO users (reference_number, student_name, is_admin)
                    VALUES ($1, $2, $3)
                    RETURNING *
                    """,
                    reference_number, student_name, is_admin
                )
        except ConflictError:
            raise ConflictError(
                f"User with reference number {reference_number} already exists"
            ) from None
        return _voter_from_row(row)

    async def mass_register(self, users: Sequence[Tuple[str, str]],
                            admin_credentials: Optional[Tuple[str, str]] = None) -> List[Voter]:
        references = [ref for ref, _ in users]
        seen = set()
        for ref in references:
            if ref in seen:
                raise ConflictError(f"User with reference number {ref} already exists")
            seen.add(ref)

        async with self.transaction() as conn:
            existing = await conn.fetchval(
                "SELECT reference_number FROM users WHERE reference_number = ANY($1::text[]) LIMIT 1",
                references
            )
            if existing:
                raise ConflictError(f"User with reference number {existing} already exists")

            created = []
            for ref, name in users:
                row = await conn.fetchrow(
                    """
                    INSERT INTO users (reference_number, student_name, is_admin)
                    VALUES ($1, $2, $3)
                    RETURNING *
                    """,
                    ref, name, (ref, name) == admin_credentials
                )
                created.append(_voter_from_row(row))
            return created

    async def _fetch_voters(self, where: str = "", *args) -> List[Voter]:
        async with self.connection() as conn:
            rows = await conn.fetch(f"SELECT * FROM users {where} ORDER BY id", *args)
            entries = await conn.fetch(
                "SELECT user_id, candidate_id, position_id FROM ballot_entries "
                "WHERE user_id = ANY($1::int[])",
                [r["id"] for r in rows]
            )
        by_user: Dict[int, list] = {}
        for e in entries:
            by_user.setdefault(e["user_id"], []).append(e)
        return [_voter_from_row(r, by_user.get(r["id"], [])) for r in rows]

    async def get_user(self, user_id: int) -> Optional[Voter]:
        voters = await self._fetch_voters("WHERE id = $1", user_id)
        return voters[0] if voters else None

    async def get_user_by_reference(self, reference_number: str) -> Optional[Voter]:
        voters = await self._fetch_voters("WHERE reference_number = $1", reference_number)
        return voters[0] if voters else None

    async def list_users(self) -> List[Voter]:
        return await self._fetch_voters()

    async def delete_user(self, user_id: int) -> None:
        async with self.transaction() as conn:
            voter = await self._lock_voter(conn, user_id)
            if voter.is_admin:
                raise ConflictError("Cannot delete admin user")
            await self._clear_ballot(conn, voter)
            await conn.execute("DELETE FROM users WHERE id = $1", user_id)

    async def update_user_levels(self, user_id: int, school_level: Optional[str] = None,
                                 grade_level: Optional[str] = None) -> None:
        async with self.transaction() as conn:
            result = await conn.execute(
                """
                UPDATE users
                SET school_level = COALESCE($2, school_level),
                    grade_level = COALESCE($3, grade_level)
                WHERE id = $1
                """,
                user_id, school_level, grade_level
            )
            if result.endswith(" 0"):
                raise NotFoundError(f"User {user_id} not found")

    # Positions

    async def list_positions(self) -> List[Position]:
        async with self.connection() as conn:
            rows = await conn.fetch("SELECT * FROM positions ORDER BY display_order, id")
        return [_position_from_row(r) for r in rows]

    async def create_position(self, name: str, max_votes: int = 1,
                              category: str = "Executive") -> Position:
        async with self.transaction() as conn:
            # Serialize display_order assignment between concurrent creates.
            await conn.execute("LOCK TABLE positions IN SHARE ROW EXCLUSIVE MODE")
            row = await conn.fetchrow(
                """
                INSERT INTO positions (name, display_order, max_votes, category)
                VALUES ($1, (SELECT COALESCE(MAX(display_order), 0) + 1 FROM positions), $2, $3)
                RETURNING *
                """,
                name, max_votes, category
            )
        return _position_from_row(row)

    async def delete_position(self, position_id: int) -> None:
        async with self.transaction() as conn:
            exists = await conn.fetchval(
                "SELECT 1 FROM positions WHERE id = $1 FOR UPDATE", position_id
            )
            if not exists:
                raise NotFoundError(f"Position {position_id} not found")
            assigned = await conn.fetchval(
                "SELECT COUNT(*) FROM candidates WHERE position_id = $1", position_id
            )
            if assigned:
                raise ConflictError("Cannot delete position with assigned candidates")
            await conn.execute("DELETE FROM positions WHERE id = $1", position_id)

    # Candidates

    async def list_candidates(self, school_level: Optional[str] = None,
                              grade_level: Optional[str] = None) -> List[Candidate]:
        async with self.connection() as conn:
            if grade_level:
                rows = await conn.fetch(
                    "SELECT * FROM candidates WHERE $1 = ANY(grade_levels) ORDER BY id",
                    grade_level
                )
            elif school_level:
                rows = await conn.fetch(
                    "SELECT * FROM candidates WHERE $1 = ANY(school_levels) ORDER BY id",
                    school_level
                )
            else:
                rows = await conn.fetch("SELECT * FROM candidates ORDER BY id")
        return [_candidate_from_row(r) for r in rows]

    async def create_candidate(self, name: str, position_id: int, party_list_id: Optional[int] = None,
                               image_url: str = "", school_levels: Sequence[str] = (),
                               grade_levels: Sequence[str] = ()) -> Candidate:
        async with self.transaction() as conn:
            if not await conn.fetchval("SELECT 1 FROM positions WHERE id = $1", position_id):
                raise NotFoundError(f"Position {position_id} not found")
            await self._require_party_list(conn, party_list_id)
            row = await conn.fetchrow(
                """
                INSERT INTO candidates
                (name, image_url, position_id, party_list_id, vote_count, school_levels, grade_levels)
                VALUES ($1, $2, $3, $4, 0, $5, $6)
                RETURNING *
                """,
                name, image_url, position_id, party_list_id,
                list(school_levels), list(grade_levels)
            )
        return _candidate_from_row(row)

    async def update_candidate(self, candidate_id: int, updates: Dict[str, Any]) -> Candidate:
        updates = filter_updates(updates, CANDIDATE_FIELDS)
        async with self.transaction() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM candidates WHERE id = $1 FOR UPDATE", candidate_id
            )
            if row is None:
                raise NotFoundError(f"Candidate {candidate_id} not found")
            await self._require_party_list(conn, updates.get("party_list_id"))
            new_position = updates.get("position_id", row["position_id"])
            if new_position != row["position_id"]:
                if not await conn.fetchval("SELECT 1 FROM positions WHERE id = $1", new_position):
                    raise NotFoundError(f"Position {new_position} not found")
                if await conn.fetchval(
                    "SELECT 1 FROM ballot_entries WHERE candidate_id = $1 LIMIT 1", candidate_id
                ):
                    raise ConflictError("Cannot move a candidate that has received votes")
            if updates:
                assignments = ", ".join(
                    f"{column} = ${i}" for i, column in enumerate(updates, start=2)
                )
                row = await conn.fetchrow(
                    f"UPDATE candidates SET {assignments} WHERE id = $1 RETURNING *",
                    candidate_id, *updates.values()
                )
        return _candidate_from_row(row)

    async def _require_party_list(self, conn, party_list_id: Optional[int]) -> None:
        if party_list_id is None:
            return
        if not await conn.fetchval("SELECT 1 FROM party_lists WHERE id = $1", party_list_id):
            raise NotFoundError(f"Party list {party_list_id} not found")

    async def delete_candidate(self, candidate_id: int) -> None:
        async with self.transaction() as conn:
            exists = await conn.fetchval(
                "SELECT 1 FROM candidates WHERE id = $1 FOR UPDATE", candidate_id
            )
            if not exists:
                raise NotFoundError(f"Candidate {candidate_id} not found")
            if await conn.fetchval(
                "SELECT 1 FROM ballot_entries WHERE candidate_id = $1 LIMIT 1", candidate_id
            ):
                raise ConflictError("Cannot delete a candidate that has received votes")
            await conn.execute("DELETE FROM candidates WHERE id = $1", candidate_id)

    # Party lists

    async def list_party_lists(self) -> List[PartyList]:
        async with self.connection() as conn:
            rows = await conn.fetch("SELECT * FROM party_lists ORDER BY id")
        return [_party_list_from_row(r) for r in rows]

    async def create_party_list(self, name: str, color: str = "#0088FE") -> PartyList:
        async with self.transaction() as conn:
            row = await conn.fetchrow(
                "INSERT INTO party_lists (name, color) VALUES ($1, $2) RETURNING *",
                name, color
            )
        return _party_list_from_row(row)

    async def update_party_list(self, party_list_id: int, updates: Dict[str, Any]) -> PartyList:
        updates = filter_updates(updates, PARTY_LIST_FIELDS)
        async with self.transaction() as conn:
            if updates:
                assignments = ", ".join(
                    f"{column} = ${i}" for i, column in enumerate(updates, start=2)
                )
                row = await conn.fetchrow(
                    f"UPDATE party_lists SET {assignments} WHERE id = $1 RETURNING *",
                    party_list_id, *updates.values()
                )
            else:
                row = await conn.fetchrow("SELECT * FROM party_lists WHERE id = $1", party_list_id)
            if row is None:
                raise NotFoundError("Party list not found")
        return _party_list_from_row(row)

    # System settings

    async def get_system_settings(self) -> SystemSettings:
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM system_settings WHERE id = 1")
        return SystemSettings(**{k: row[k] for k in SETTINGS_FIELDS})

    async def update_system_settings(self, updates: Dict[str, Any]) -> SystemSettings:
        updates = filter_updates(updates, SETTINGS_FIELDS)
        async with self.transaction() as conn:
            if updates:
                assignments = ", ".join(
                    f"{column} = ${i}" for i, column in enumerate(updates, start=1)
                )
                row = await conn.fetchrow(
                    f"UPDATE system_settings SET {assignments} WHERE id = 1 RETURNING *",
                    *updates.values()
                )
            else:
                row = await conn.fetchrow("SELECT * FROM system_settings WHERE id = 1")
        return SystemSettings(**{k: row[k] for k in SETTINGS_FIELDS})
