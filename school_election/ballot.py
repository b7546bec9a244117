"""
Vote admission and ledger consistency rules.

This module contains:
- Voter, Candidate, Position, Ballot: the records the rules operate on
- can_vote: the ordered admission check for a single vote
- apply_vote / reset_vote: in-memory application of an admitted vote or a reset
- is_complete: whether every position's cap has been reached
- recount / find_count_drift: derived vote counts recomputed from ballots

Nothing here performs I/O. Storage backends load the records, call these
functions and persist the resulting mutation as one unit of work.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple


class Denial(str, Enum):
    """Reasons a vote is not admitted."""
    CANDIDATE_NOT_FOUND = "candidate_not_found"
    POSITION_NOT_FOUND = "position_not_found"
    ADMIN_CANNOT_VOTE = "admin_cannot_vote"
    BALLOT_LOCKED = "ballot_locked"
    DUPLICATE_VOTE = "duplicate_vote"
    POSITION_CAP_EXCEEDED = "position_cap_exceeded"


class PositionCategory(str, Enum):
    """Ballot sections positions are grouped under."""
    EXECUTIVE = "Executive"
    LEGISLATIVE = "Legislative"
    DEPARTMENTAL = "Departmental"


class Ballot:
    """
    The set of candidates a voter has voted for.

    Entries are keyed by candidate id and remember the position each
    candidate runs for, so per-position counts need no candidate lookup.
    """

    def __init__(self, entries: Optional[Mapping[int, int]] = None):
        self._entries: Dict[int, int] = dict(entries or {})

    def __contains__(self, candidate_id: object) -> bool:
        return candidate_id in self._entries

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Ballot):
            return self._entries == other._entries
        return NotImplemented

    def __repr__(self) -> str:
        return f"Ballot({self._entries!r})"

    def count_for(self, position_id: int) -> int:
        """Number of entries for candidates running for ``position_id``."""
        return sum(1 for pid in self._entries.values() if pid == position_id)

    def add(self, candidate_id: int, position_id: int) -> None:
        self._entries[candidate_id] = position_id

    def clear(self) -> None:
        self._entries.clear()

    def copy(self) -> "Ballot":
        return Ballot(self._entries)

    def as_dict(self) -> Dict[int, int]:
        return dict(self._entries)


@dataclass
class Position:
    """An office on the ballot with a per-voter cap."""
    id: int
    name: str = ""
    max_votes: int = 1
    display_order: int = 0
    category: str = PositionCategory.EXECUTIVE.value


@dataclass
class Candidate:
    """
    A candidate running for a position.

    vote_count is a derived aggregate: it must always equal the number of
    ballots that include this candidate.
    """
    id: int
    position_id: int
    name: str = ""
    party_list_id: Optional[int] = None
    image_url: str = ""
    vote_count: int = 0
    school_levels: List[str] = field(default_factory=list)
    grade_levels: List[str] = field(default_factory=list)


@dataclass
class Voter:
    """A registered student (or administrator) and their ballot."""
    id: int
    reference_number: str = ""
    student_name: str = ""
    is_admin: bool = False
    has_voted: bool = False
    ballot: Ballot = field(default_factory=Ballot)
    school_level: Optional[str] = None
    grade_level: Optional[str] = None


@dataclass(frozen=True)
class VoteMutation:
    """The two writes an admitted vote requires, applied together."""
    voter_id: int
    candidate_id: int
    position_id: int


@dataclass(frozen=True)
class Decision:
    """Outcome of the admission check: Allow (with mutation) or Deny (with reason)."""
    allowed: bool
    reason: Optional[Denial] = None
    cap: Optional[int] = None
    mutation: Optional[VoteMutation] = None

    @classmethod
    def allow(cls, mutation: VoteMutation) -> "Decision":
        return cls(allowed=True, mutation=mutation)

    @classmethod
    def deny(cls, reason: Denial, cap: Optional[int] = None) -> "Decision":
        return cls(allowed=False, reason=reason, cap=cap)

    @property
    def message(self) -> str:
        """Human readable text for the outcome."""
        if self.allowed:
            return "Vote recorded successfully"
        if self.reason == Denial.POSITION_CAP_EXCEEDED:
            plural = "s" if (self.cap or 0) > 1 else ""
            return f"You can only vote for {self.cap} candidate{plural} for this position"
        return DENIAL_MESSAGES[self.reason]


DENIAL_MESSAGES = {
    Denial.CANDIDATE_NOT_FOUND: "Candidate not found",
    Denial.POSITION_NOT_FOUND: "Position not found",
    Denial.ADMIN_CANNOT_VOTE: "Admins cannot vote",
    Denial.BALLOT_LOCKED: "You have already finished voting",
    Denial.DUPLICATE_VOTE: "You have already voted for this candidate",
}


def can_vote(
    voter: Voter,
    candidate: Optional[Candidate],
    position: Optional[Position],
    ballot: Optional[Ballot] = None
) -> Decision:
    """
    Decide whether ``voter`` may add ``candidate`` to their ballot.

    Rules are evaluated in order and the first failing rule determines the
    denial reason.

    Args:
        voter: The voter casting the vote
        candidate: Target candidate, or None if it does not exist
        position: Position the candidate runs for, or None if it does not exist
        ballot: Current ballot; defaults to ``voter.ballot``

    Returns:
        Decision: Allow with the mutation to persist, or Deny with a reason
    """
    if ballot is None:
        ballot = voter.ballot

    if candidate is None:
        return Decision.deny(Denial.CANDIDATE_NOT_FOUND)
    if position is None or position.id != candidate.position_id:
        return Decision.deny(Denial.POSITION_NOT_FOUND)

    if voter.is_admin:
        return Decision.deny(Denial.ADMIN_CANNOT_VOTE)

    if voter.has_voted:
        return Decision.deny(Denial.BALLOT_LOCKED)

    if candidate.id in ballot:
        return Decision.deny(Denial.DUPLICATE_VOTE)

    if ballot.count_for(position.id) >= position.max_votes:
        return Decision.deny(Denial.POSITION_CAP_EXCEEDED, cap=position.max_votes)

    return Decision.allow(VoteMutation(
        voter_id=voter.id,
        candidate_id=candidate.id,
        position_id=position.id
    ))


def apply_vote(voter: Voter, candidate: Candidate, mutation: VoteMutation) -> None:
    """
    Apply an admitted vote to in-memory records.

    Raises:
        ValueError: If the mutation does not belong to this voter/candidate
    """
    if mutation.voter_id != voter.id or mutation.candidate_id != candidate.id:
        raise ValueError("Mutation does not match voter and candidate")
    voter.ballot.add(mutation.candidate_id, mutation.position_id)
    candidate.vote_count += 1


def plan_reset(voter: Voter) -> List[int]:
    """Candidate ids whose vote counts drop by one when ``voter`` is reset."""
    return list(voter.ballot)


def reset_vote(voter: Voter, candidates: Mapping[int, Candidate]) -> List[int]:
    """
    Undo every vote on ``voter``'s ballot and unlock it.

    Each counted candidate loses exactly one vote, the ballot is emptied and
    ``has_voted`` is cleared. An empty ballot makes this a no-op apart from
    the flag.

    Args:
        voter: Voter to reset
        candidates: Candidates by id

    Returns:
        list: Candidate ids that were decremented
    """
    decremented = plan_reset(voter)
    for candidate_id in decremented:
        candidate = candidates.get(candidate_id)
        if candidate is not None and candidate.vote_count > 0:
            candidate.vote_count -= 1
    voter.ballot.clear()
    voter.has_voted = False
    return decremented


def is_complete(positions: Iterable[Position], ballot: Ballot) -> bool:
    """True once every position's cap has been met by ``ballot``."""
    return all(ballot.count_for(p.id) >= p.max_votes for p in positions)


def remaining_votes(positions: Iterable[Position], ballot: Ballot) -> Dict[int, int]:
    """Votes still available per position id."""
    return {p.id: max(p.max_votes - ballot.count_for(p.id), 0) for p in positions}


def recount(voters: Iterable[Voter]) -> Counter:
    """Per-candidate vote counts recomputed from ballots."""
    counts: Counter = Counter()
    for voter in voters:
        counts.update(voter.ballot)
    return counts


def find_count_drift(
    voters: Iterable[Voter],
    candidates: Iterable[Candidate]
) -> Dict[int, Tuple[int, int]]:
    """
    Compare stored vote counts against a recount of all ballots.

    Returns:
        dict: candidate_id -> (stored_count, derived_count) for mismatches only
    """
    derived = recount(voters)
    return {
        c.id: (c.vote_count, derived.get(c.id, 0))
        for c in candidates
        if c.vote_count != derived.get(c.id, 0)
    }
