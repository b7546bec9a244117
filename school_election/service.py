"""
Request-layer collaborator for the voting core.

VotingService loads records through a Storage backend, invokes the
admission rules, and turns the result into an outcome for the API.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .ballot import (
    Decision,
    Voter,
    find_count_drift,
    is_complete,
    remaining_votes,
)
from .storage import Storage
from . import tally

logger = logging.getLogger(__name__)


class VoteDenied(Exception):
    """A business rule rejected the vote."""

    def __init__(self, decision: Decision):
        super().__init__(decision.message)
        self.decision = decision


@dataclass
class VoteOutcome:
    """Result of an admitted vote."""
    voter: Voter
    candidate_id: int
    voting_complete: bool
    remaining: Dict[int, int]


class VotingService:
    """Voting operations on top of a Storage backend."""

    def __init__(self, storage: Storage, admin_credentials: Optional[Tuple[str, str]] = None):
        self.storage = storage
        self.admin_credentials = admin_credentials

    def is_admin_credentials(self, reference_number: str, student_name: str) -> bool:
        return (reference_number, student_name) == self.admin_credentials

    async def ensure_admin(self) -> Optional[Voter]:
        """Create the configured administrator account if it does not exist."""
        if not self.admin_credentials:
            return None
        reference_number, name = self.admin_credentials
        admin = await self.storage.get_user_by_reference(reference_number)
        if admin is None:
            admin = await self.storage.create_user(reference_number, name, is_admin=True)
            logger.info(f"Administrator account {reference_number} created")
        return admin

    async def register(self, reference_number: str, student_name: str) -> Voter:
        return await self.storage.create_user(
            reference_number,
            student_name,
            is_admin=self.is_admin_credentials(reference_number, student_name)
        )

    async def mass_register(self, users: Sequence[Tuple[str, str]]) -> List[Voter]:
        created = await self.storage.mass_register(users, self.admin_credentials)
        logger.info(f"Mass registration created {len(created)} users")
        return created

    async def authenticate(self, reference_number: str, student_name: str) -> Optional[Voter]:
        """Return the user whose reference number and name both match."""
        user = await self.storage.get_user_by_reference(reference_number)
        if user is None or user.student_name != student_name:
            return None
        return user

    async def cast_vote(self, voter_id: int, candidate_id: int) -> VoteOutcome:
        """
        Cast a vote for a candidate.

        Args:
            voter_id: Authenticated voter
            candidate_id: Target candidate

        Returns:
            VoteOutcome: Updated voter, completion flag and remaining votes

        Raises:
            VoteDenied: If an admission rule rejected the vote
            StorageError: If the vote could not be persisted
        """
        decision, voter = await self.storage.cast_vote(voter_id, candidate_id)
        if not decision.allowed:
            logger.info(
                f"Vote denied: voter={voter_id}, candidate={candidate_id}, "
                f"reason={decision.reason.value}"
            )
            raise VoteDenied(decision)

        positions = await self.storage.list_positions()
        outcome = VoteOutcome(
            voter=voter,
            candidate_id=candidate_id,
            voting_complete=is_complete(positions, voter.ballot),
            remaining=remaining_votes(positions, voter.ballot)
        )
        logger.info(
            f"Vote recorded: voter={voter_id}, candidate={candidate_id}, "
            f"complete={outcome.voting_complete}"
        )
        return outcome

    async def reset_vote(self, voter_id: int) -> List[int]:
        decremented = await self.storage.reset_vote(voter_id)
        logger.info(f"Vote reset: voter={voter_id}, candidates={decremented}")
        return decremented

    async def finish_voting(self, voter_id: int) -> None:
        await self.storage.mark_voted(voter_id)
        logger.info(f"Voter {voter_id} finished voting")

    async def ballot_view(self, voter: Voter) -> Dict[str, Any]:
        """Everything the voting page needs for one voter."""
        positions = await self.storage.list_positions()
        candidates = await self.storage.list_candidates(
            school_level=voter.school_level,
            grade_level=voter.grade_level
        )
        return {
            "positions": positions,
            "candidates": candidates,
            "party_lists": await self.storage.list_party_lists(),
            "system_settings": await self.storage.get_system_settings(),
            "votes": list(voter.ballot),
            "has_voted": voter.has_voted,
            "remaining_votes": remaining_votes(positions, voter.ballot),
            "voting_complete": is_complete(positions, voter.ballot)
        }

    async def results(self) -> Dict[str, Any]:
        """Live tallies for administrators."""
        positions = await self.storage.list_positions()
        candidates = await self.storage.list_candidates()
        return {
            "positions": tally.position_results(positions, candidates),
            "party_lists": tally.party_totals(await self.storage.list_party_lists(), candidates),
            "turnout": tally.turnout(await self.storage.list_users())
        }

    async def integrity_report(self) -> Dict[str, Any]:
        """Stored vote counts that disagree with a recount of all ballots."""
        drift = find_count_drift(
            await self.storage.list_users(),
            await self.storage.list_candidates()
        )
        if drift:
            logger.warning(f"Vote count drift detected: {drift}")
        return {
            "consistent": not drift,
            "mismatches": [
                {"candidate_id": cid, "stored": stored, "derived": derived}
                for cid, (stored, derived) in sorted(drift.items())
            ]
        }
