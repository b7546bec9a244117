"""
School election voting service.

This package contains:
- Vote admission rules and ledger consistency helpers (ballot)
- Tally aggregates (tally)
- Storage backends: in-process and PostgreSQL (storage, database)
- The FastAPI application (main)
"""

from .ballot import (
    Ballot,
    Candidate,
    Decision,
    Denial,
    Position,
    PositionCategory,
    Voter,
    VoteMutation,
    apply_vote,
    can_vote,
    find_count_drift,
    is_complete,
    plan_reset,
    recount,
    remaining_votes,
    reset_vote,
)

__all__ = [
    'Ballot',
    'Candidate',
    'Decision',
    'Denial',
    'Position',
    'PositionCategory',
    'Voter',
    'VoteMutation',
    'apply_vote',
    'can_vote',
    'find_count_drift',
    'is_complete',
    'plan_reset',
    'recount',
    'remaining_votes',
    'reset_vote',
]

__version__ = '1.0.0'
