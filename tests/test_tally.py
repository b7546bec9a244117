"""Unit tests for the read-only tally aggregates."""

from school_election.ballot import Candidate, Position, Voter
from school_election.storage import PartyList
from school_election.tally import party_totals, position_results, turnout


class TestTurnout:

    def test_excludes_admins(self):
        voters = [
            Voter(id=1, is_admin=True, has_voted=True),
            Voter(id=2, has_voted=True),
            Voter(id=3),
            Voter(id=4),
        ]
        assert turnout(voters) == {"total_voters": 3, "voted_count": 1, "percentage": 33.3}

    def test_empty_roster(self):
        assert turnout([]) == {"total_voters": 0, "voted_count": 0, "percentage": 0.0}


class TestPositionResults:

    def test_orders_positions_and_candidates(self):
        positions = [
            Position(id=2, name="Senator", max_votes=2, display_order=2, category="Legislative"),
            Position(id=1, name="President", max_votes=1, display_order=1),
        ]
        candidates = [
            Candidate(id=1, position_id=1, name="A", vote_count=1),
            Candidate(id=2, position_id=1, name="B", vote_count=2),
            Candidate(id=3, position_id=2, name="C", vote_count=0),
        ]

        results = position_results(positions, candidates)

        assert [r["position_name"] for r in results] == ["President", "Senator"]
        president = results[0]
        assert president["total_votes"] == 3
        assert [row["candidate_id"] for row in president["candidates"]] == [2, 1]
        assert president["candidates"][0]["percentage"] == 66.67
        assert president["candidates"][1]["percentage"] == 33.33

    def test_position_without_votes(self):
        results = position_results(
            [Position(id=1, name="Treasurer")],
            [Candidate(id=1, position_id=1, name="A")]
        )
        assert results[0]["total_votes"] == 0
        assert results[0]["candidates"][0]["percentage"] == 0

    def test_position_without_candidates(self):
        results = position_results([Position(id=1, name="Auditor")], [])
        assert results[0]["candidates"] == []


def test_party_totals():
    parties = [PartyList(id=1, name="Unity"), PartyList(id=2, name="Progress")]
    candidates = [
        Candidate(id=1, position_id=1, party_list_id=1, vote_count=5),
        Candidate(id=2, position_id=2, party_list_id=1, vote_count=2),
        Candidate(id=3, position_id=1, party_list_id=None, vote_count=4),
    ]

    totals = party_totals(parties, candidates)

    assert totals == [
        {"party_list_id": 1, "name": "Unity", "votes": 7},
        {"party_list_id": 2, "name": "Progress", "votes": 0},
    ]
