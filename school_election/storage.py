"""
Persistence interface for the voting ledger and election records.

Backends must apply an admitted vote (ballot entry + candidate count) and a
reset (count decrements + ballot clear + unlock) as single units of work,
serialized per voter.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .ballot import (
    Candidate,
    Decision,
    Position,
    Voter,
    apply_vote,
    can_vote,
    reset_vote,
)

CANDIDATE_FIELDS = ("name", "image_url", "position_id", "party_list_id",
                    "school_levels", "grade_levels")
PARTY_LIST_FIELDS = ("name", "logo_url", "color", "platform_image_url",
                     "party_list_images")
SETTINGS_FIELDS = ("left_logo_url", "right_logo_url", "splash_logo_url",
                   "voting_logo_url")


class StorageError(Exception):
    """Persistence failed; the operation was not applied and may be retried."""
    pass


class NotFoundError(Exception):
    """A referenced record does not exist."""
    pass


class ConflictError(Exception):
    """The operation conflicts with existing records."""
    pass


@dataclass
class PartyList:
    id: int
    name: str
    color: str = "#0088FE"
    logo_url: Optional[str] = None
    platform_image_url: Optional[str] = None
    party_list_images: List[str] = field(default_factory=list)


@dataclass
class SystemSettings:
    left_logo_url: str = ""
    right_logo_url: str = ""
    splash_logo_url: str = ""
    voting_logo_url: str = ""


def filter_updates(updates: Dict[str, Any], allowed: Sequence[str]) -> Dict[str, Any]:
    """Drop keys that are not editable fields of the record."""
    return {k: v for k, v in updates.items() if k in allowed}


class Storage(ABC):
    """Election records and the vote ledger."""

    async def initialize(self) -> None:
        """Prepare connections and schema."""

    async def close(self) -> None:
        """Release connections."""

    async def check_health(self) -> bool:
        return True

    # Voting

    @abstractmethod
    async def cast_vote(self, voter_id: int, candidate_id: int) -> Tuple[Decision, Voter]:
        """
        Run the admission check and persist an admitted vote atomically.

        Args:
            voter_id: Authenticated voter
            candidate_id: Target candidate

        Returns:
            tuple: (decision, voter as seen after the operation)

        Raises:
            NotFoundError: If the voter does not exist
            StorageError: If the write failed; nothing was applied
        """

    @abstractmethod
    async def reset_vote(self, voter_id: int) -> List[int]:
        """
        Undo a voter's ballot atomically.

        Returns:
            list: Candidate ids whose counts were decremented
        """

    @abstractmethod
    async def mark_voted(self, voter_id: int) -> None:
        """Lock the voter's ballot."""

    # Users

    @abstractmethod
    async def create_user(self, reference_number: str, student_name: str,
                          is_admin: bool = False) -> Voter:
        """Raises ConflictError if the reference number is taken."""

    @abstractmethod
    async def mass_register(self, users: Sequence[Tuple[str, str]],
                            admin_credentials: Optional[Tuple[str, str]] = None) -> List[Voter]:
        """Register all users or none of them."""

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[Voter]:
        pass

    @abstractmethod
    async def get_user_by_reference(self, reference_number: str) -> Optional[Voter]:
        pass

    @abstractmethod
    async def list_users(self) -> List[Voter]:
        pass

    @abstractmethod
    async def delete_user(self, user_id: int) -> None:
        """Raises ConflictError for admins and NotFoundError for unknown ids."""

    @abstractmethod
    async def update_user_levels(self, user_id: int, school_level: Optional[str] = None,
                                 grade_level: Optional[str] = None) -> None:
        pass

    # Positions

    @abstractmethod
    async def list_positions(self) -> List[Position]:
        pass

    @abstractmethod
    async def create_position(self, name: str, max_votes: int = 1,
                              category: str = "Executive") -> Position:
        pass

    @abstractmethod
    async def delete_position(self, position_id: int) -> None:
        """Raises ConflictError while candidates are assigned."""

    # Candidates

    @abstractmethod
    async def list_candidates(self, school_level: Optional[str] = None,
                              grade_level: Optional[str] = None) -> List[Candidate]:
        pass

    @abstractmethod
    async def create_candidate(self, name: str, position_id: int, party_list_id: Optional[int] = None,
                               image_url: str = "", school_levels: Sequence[str] = (),
                               grade_levels: Sequence[str] = ()) -> Candidate:
        pass

    @abstractmethod
    async def update_candidate(self, candidate_id: int, updates: Dict[str, Any]) -> Candidate:
        pass

    @abstractmethod
    async def delete_candidate(self, candidate_id: int) -> None:
        """Raises ConflictError while any ballot includes the candidate."""

    # Party lists

    @abstractmethod
    async def list_party_lists(self) -> List[PartyList]:
        pass

    @abstractmethod
    async def create_party_list(self, name: str, color: str = "#0088FE") -> PartyList:
        pass

    @abstractmethod
    async def update_party_list(self, party_list_id: int, updates: Dict[str, Any]) -> PartyList:
        pass

    # System settings

    @abstractmethod
    async def get_system_settings(self) -> SystemSettings:
        pass

    @abstractmethod
    async def update_system_settings(self, updates: Dict[str, Any]) -> SystemSettings:
        pass


def _copy_voter(voter: Voter) -> Voter:
    return replace(voter, ballot=voter.ballot.copy())


class MemoryStorage(Storage):
    """
    In-process storage backend.

    Each voter has an asyncio.Lock; the admission check and both writes run
    under it with no suspension point between the writes.
    """

    def __init__(self):
        self.users: Dict[int, Voter] = {}
        self.positions: Dict[int, Position] = {}
        self.candidates: Dict[int, Candidate] = {}
        self.party_lists: Dict[int, PartyList] = {}
        self.settings = SystemSettings()
        self._voter_locks: Dict[int, asyncio.Lock] = {}
        self._next_ids: Dict[str, int] = {}

    def _next_id(self, table: str) -> int:
        self._next_ids[table] = self._next_ids.get(table, 0) + 1
        return self._next_ids[table]

    def _lock_for(self, voter_id: int) -> asyncio.Lock:
        lock = self._voter_locks.get(voter_id)
        if lock is None:
            lock = self._voter_locks[voter_id] = asyncio.Lock()
        return lock

    def _require_user(self, user_id: int) -> Voter:
        voter = self.users.get(user_id)
        if voter is None:
            raise NotFoundError(f"User {user_id} not found")
        return voter

    async def cast_vote(self, voter_id: int, candidate_id: int) -> Tuple[Decision, Voter]:
        async with self._lock_for(voter_id):
            voter = self._require_user(voter_id)
            candidate = self.candidates.get(candidate_id)
            position = self.positions.get(candidate.position_id) if candidate else None

            decision = can_vote(voter, candidate, position)
            if decision.allowed:
                apply_vote(voter, candidate, decision.mutation)
            return decision, _copy_voter(voter)

    async def reset_vote(self, voter_id: int) -> List[int]:
        async with self._lock_for(voter_id):
            voter = self._require_user(voter_id)
            return reset_vote(voter, self.candidates)

    async def mark_voted(self, voter_id: int) -> None:
        async with self._lock_for(voter_id):
            self._require_user(voter_id).has_voted = True

    async def create_user(self, reference_number: str, student_name: str,
                          is_admin: bool = False) -> Voter:
        if await self.get_user_by_reference(reference_number) is not None:
            raise ConflictError(
                f"User with reference number {reference_number} already exists"
            )
        voter = Voter(
            id=self._next_id("users"),
            reference_number=reference_number,
            student_name=student_name,
            is_admin=is_admin
        )
        self.users[voter.id] = voter
        return _copy_voter(voter)

    async def mass_register(self, users: Sequence[Tuple[str, str]],
                            admin_credentials: Optional[Tuple[str, str]] = None) -> List[Voter]:
        seen = set()
        for reference_number, _ in users:
            if reference_number in seen or await self.get_user_by_reference(reference_number):
                raise ConflictError(
                    f"User with reference number {reference_number} already exists"
                )
            seen.add(reference_number)
        return [
            await self.create_user(ref, name, is_admin=(ref, name) == admin_credentials)
            for ref, name in users
        ]

    async def get_user(self, user_id: int) -> Optional[Voter]:
        voter = self.users.get(user_id)
        return _copy_voter(voter) if voter else None

    async def get_user_by_reference(self, reference_number: str) -> Optional[Voter]:
        for voter in self.users.values():
            if voter.reference_number == reference_number:
                return _copy_voter(voter)
        return None

    async def list_users(self) -> List[Voter]:
        return [_copy_voter(v) for _, v in sorted(self.users.items())]

    async def delete_user(self, user_id: int) -> None:
        async with self._lock_for(user_id):
            voter = self._require_user(user_id)
            if voter.is_admin:
                raise ConflictError("Cannot delete admin user")
            # Deleting a voter removes their ballot, so their counted votes go too.
            reset_vote(voter, self.candidates)
            del self.users[user_id]
            self._voter_locks.pop(user_id, None)

    async def update_user_levels(self, user_id: int, school_level: Optional[str] = None,
                                 grade_level: Optional[str] = None) -> None:
        voter = self._require_user(user_id)
        if school_level is not None:
            voter.school_level = school_level
        if grade_level is not None:
            voter.grade_level = grade_level

    async def list_positions(self) -> List[Position]:
        return sorted(
            (replace(p) for p in self.positions.values()),
            key=lambda p: (p.display_order, p.id)
        )

    async def create_position(self, name: str, max_votes: int = 1,
                              category: str = "Executive") -> Position:
        display_order = max((p.display_order for p in self.positions.values()), default=0) + 1
        position = Position(
            id=self._next_id("positions"),
            name=name,
            max_votes=max_votes,
            display_order=display_order,
            category=category
        )
        self.positions[position.id] = position
        return replace(position)

    async def delete_position(self, position_id: int) -> None:
        if position_id not in self.positions:
            raise NotFoundError(f"Position {position_id} not found")
        if any(c.position_id == position_id for c in self.candidates.values()):
            raise ConflictError("Cannot delete position with assigned candidates")
        del self.positions[position_id]

    async def list_candidates(self, school_level: Optional[str] = None,
                              grade_level: Optional[str] = None) -> List[Candidate]:
        candidates = sorted(self.candidates.values(), key=lambda c: c.id)
        if grade_level:
            candidates = [c for c in candidates if grade_level in c.grade_levels]
        elif school_level:
            candidates = [c for c in candidates if school_level in c.school_levels]
        return [replace(c, school_levels=list(c.school_levels), grade_levels=list(c.grade_levels))
                for c in candidates]

    async def create_candidate(self, name: str, position_id: int, party_list_id: Optional[int] = None,
                               image_url: str = "", school_levels: Sequence[str] = (),
                               grade_levels: Sequence[str] = ()) -> Candidate:
        if position_id not in self.positions:
            raise NotFoundError(f"Position {position_id} not found")
        if party_list_id is not None and party_list_id not in self.party_lists:
            raise NotFoundError(f"Party list {party_list_id} not found")
        candidate = Candidate(
            id=self._next_id("candidates"),
            position_id=position_id,
            name=name,
            party_list_id=party_list_id,
            image_url=image_url,
            vote_count=0,
            school_levels=list(school_levels),
            grade_levels=list(grade_levels)
        )
        self.candidates[candidate.id] = candidate
        return replace(candidate)

    async def update_candidate(self, candidate_id: int, updates: Dict[str, Any]) -> Candidate:
        candidate = self.candidates.get(candidate_id)
        if candidate is None:
            raise NotFoundError(f"Candidate {candidate_id} not found")
        updates = filter_updates(updates, CANDIDATE_FIELDS)
        party_list_id = updates.get("party_list_id")
        if party_list_id is not None and party_list_id not in self.party_lists:
            raise NotFoundError(f"Party list {party_list_id} not found")
        if "position_id" in updates and updates["position_id"] != candidate.position_id:
            if updates["position_id"] not in self.positions:
                raise NotFoundError(f"Position {updates['position_id']} not found")
            if self._is_on_any_ballot(candidate_id):
                raise ConflictError("Cannot move a candidate that has received votes")
        for key, value in updates.items():
            setattr(candidate, key, value)
        return replace(candidate)

    async def delete_candidate(self, candidate_id: int) -> None:
        if candidate_id not in self.candidates:
            raise NotFoundError(f"Candidate {candidate_id} not found")
        if self._is_on_any_ballot(candidate_id):
            raise ConflictError("Cannot delete a candidate that has received votes")
        del self.candidates[candidate_id]

    def _is_on_any_ballot(self, candidate_id: int) -> bool:
        return any(candidate_id in v.ballot for v in self.users.values())

    async def list_party_lists(self) -> List[PartyList]:
        return [replace(p) for _, p in sorted(self.party_lists.items())]

    async def create_party_list(self, name: str, color: str = "#0088FE") -> PartyList:
        party = PartyList(id=self._next_id("party_lists"), name=name, color=color)
        self.party_lists[party.id] = party
        return replace(party)

    async def update_party_list(self, party_list_id: int, updates: Dict[str, Any]) -> PartyList:
        party = self.party_lists.get(party_list_id)
        if party is None:
            raise NotFoundError("Party list not found")
        for key, value in filter_updates(updates, PARTY_LIST_FIELDS).items():
            setattr(party, key, value)
        return replace(party)

    async def get_system_settings(self) -> SystemSettings:
        return replace(self.settings)

    async def update_system_settings(self, updates: Dict[str, Any]) -> SystemSettings:
        for key, value in filter_updates(updates, SETTINGS_FIELDS).items():
            setattr(self.settings, key, value)
        return replace(self.settings)
