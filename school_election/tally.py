"""Read-only aggregates derived from the ledger."""

from typing import Dict, Iterable, List, Any

from .ballot import Candidate, Position, Voter
from .storage import PartyList


def turnout(voters: Iterable[Voter]) -> Dict[str, Any]:
    """
    Voter turnout among non-admin users.

    Returns:
        dict: total_voters, voted_count and percentage (0.0 when nobody is registered)
    """
    students = [v for v in voters if not v.is_admin]
    voted = sum(1 for v in students if v.has_voted)
    percentage = (voted / len(students) * 100) if students else 0.0
    return {
        "total_voters": len(students),
        "voted_count": voted,
        "percentage": round(percentage, 1)
    }


def position_results(
    positions: Iterable[Position],
    candidates: Iterable[Candidate]
) -> List[Dict[str, Any]]:
    """
    Per-position results ordered by display order, candidates by votes.

    Percentages are relative to the votes cast for that position.
    """
    by_position: Dict[int, List[Candidate]] = {}
    for candidate in candidates:
        by_position.setdefault(candidate.position_id, []).append(candidate)

    results = []
    for position in sorted(positions, key=lambda p: (p.display_order, p.id)):
        running = by_position.get(position.id, [])
        total_votes = sum(c.vote_count for c in running)
        rows = []
        for c in sorted(running, key=lambda c: (-c.vote_count, c.id)):
            percentage = (c.vote_count / total_votes * 100) if total_votes > 0 else 0
            rows.append({
                "candidate_id": c.id,
                "name": c.name,
                "party_list_id": c.party_list_id,
                "votes": c.vote_count,
                "percentage": round(percentage, 2)
            })
        results.append({
            "position_id": position.id,
            "position_name": position.name,
            "category": position.category,
            "max_votes": position.max_votes,
            "candidates": rows,
            "total_votes": total_votes
        })
    return results


def party_totals(
    party_lists: Iterable[PartyList],
    candidates: Iterable[Candidate]
) -> List[Dict[str, Any]]:
    """Total votes received by each party list's candidates."""
    candidates = list(candidates)
    return [
        {
            "party_list_id": party.id,
            "name": party.name,
            "votes": sum(c.vote_count for c in candidates if c.party_list_id == party.id)
        }
        for party in party_lists
    ]
