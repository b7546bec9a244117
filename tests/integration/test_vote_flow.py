"""End-to-end integration tests for the complete vote flow.

Tests the voting pipeline from POST /api/vote through the admission rules
to the stored ballot and candidate vote counts, including caps, duplicates,
completion, locking and administrator resets.
"""

import asyncio

import httpx
import pytest


async def vote_counts(api_client: httpx.AsyncClient):
    candidates = (await api_client.get("/api/candidates")).json()
    return {c["id"]: c["vote_count"] for c in candidates}


@pytest.mark.asyncio
class TestVoteFlow:
    """End-to-end vote flow tests."""

    async def test_president_cap_then_reset(self, api_client: httpx.AsyncClient, election,
                                            admin_headers, register_student):
        """Test: Cap-1 position admits one vote and a reset undoes it.

        Flow:
        1. Vote for A -> 200, A has 1 vote
        2. Vote for B -> 400 with the cap in the message
        3. Admin resets the voter -> A back to 0, ballot empty
        """
        user, headers = await register_student()

        response = await api_client.post("/api/vote/1", headers=headers)
        assert response.status_code == 200
        assert response.json()["votes"] == [1]
        assert (await vote_counts(api_client))[1] == 1

        response = await api_client.post("/api/vote/2", headers=headers)
        assert response.status_code == 400
        error = response.json()
        assert error["error"] == "position_cap_exceeded"
        assert error["message"] == "You can only vote for 1 candidate for this position"
        assert error["details"] == {"cap": 1}

        response = await api_client.post(f"/api/users/{user['id']}/reset-vote",
                                          headers=admin_headers)
        assert response.status_code == 200

        counts = await vote_counts(api_client)
        assert counts[1] == 0
        assert counts[2] == 0
        assert (await api_client.get("/api/user", headers=headers)).json()["votes"] == []

    async def test_senator_cap_and_duplicate(self, api_client: httpx.AsyncClient, election,
                                             register_student):
        """Test: Cap-2 position admits two votes, then reports cap and duplicates.

        Flow:
        1. Vote C, D -> 200
        2. Vote E -> 400 (cap 2)
        3. Vote C again -> 409 duplicate
        """
        _, headers = await register_student()

        assert (await api_client.post("/api/vote/3", headers=headers)).status_code == 200
        assert (await api_client.post("/api/vote/4", headers=headers)).status_code == 200

        response = await api_client.post("/api/vote/5", headers=headers)
        assert response.status_code == 400
        assert response.json()["details"] == {"cap": 2}
        assert response.json()["message"] == "You can only vote for 2 candidates for this position"

        response = await api_client.post("/api/vote/3", headers=headers)
        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_vote"

        counts = await vote_counts(api_client)
        assert (counts[3], counts[4], counts[5]) == (1, 1, 0)

    async def test_voting_complete_flag(self, api_client: httpx.AsyncClient, election,
                                        register_student):
        """Test: voting_complete turns true once every position cap is met."""
        _, headers = await register_student()

        data = (await api_client.post("/api/vote/1", headers=headers)).json()
        assert data["voting_complete"] is False
        assert data["remaining_votes"] == {"1": 0, "2": 2}

        data = (await api_client.post("/api/vote/3", headers=headers)).json()
        assert data["voting_complete"] is False

        data = (await api_client.post("/api/vote/4", headers=headers)).json()
        assert data["voting_complete"] is True
        assert data["remaining_votes"] == {"1": 0, "2": 0}

    async def test_ballot_view(self, api_client: httpx.AsyncClient, election, register_student):
        _, headers = await register_student()
        await api_client.post("/api/vote/5", headers=headers)

        response = await api_client.get("/api/ballot", headers=headers)

        assert response.status_code == 200
        ballot = response.json()
        assert [p["name"] for p in ballot["positions"]] == ["President", "Senator"]
        assert len(ballot["candidates"]) == 5
        assert ballot["votes"] == [5]
        assert ballot["has_voted"] is False
        assert ballot["remaining_votes"] == {"1": 1, "2": 1}
        assert ballot["voting_complete"] is False

    async def test_ballot_filtered_by_grade_level(self, api_client: httpx.AsyncClient, election,
                                                  admin_headers, register_student):
        user, headers = await register_student()
        created = await api_client.post("/api/candidates", headers=admin_headers, json={
            "name": "Grade 8 Rep",
            "position_id": election["senator"].id,
            "school_levels": ["junior_high"],
            "grade_levels": ["8"]
        })
        await api_client.patch(f"/api/users/{user['id']}/grade-level", headers=headers,
                               json={"grade_level": "8"})

        ballot = (await api_client.get("/api/ballot", headers=headers)).json()

        assert [c["id"] for c in ballot["candidates"]] == [created.json()["id"]]

    async def test_finished_ballot_is_locked_until_reset(self, api_client: httpx.AsyncClient,
                                                         election, admin_headers,
                                                         register_student):
        """Test: After mark-voted no more votes are admitted; a reset unlocks."""
        user, headers = await register_student()
        await api_client.post("/api/vote/1", headers=headers)

        response = await api_client.post("/api/users/mark-voted", headers=headers)
        assert response.status_code == 200

        response = await api_client.post("/api/vote/3", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "ballot_locked"

        await api_client.post(f"/api/users/{user['id']}/reset-vote", headers=admin_headers)
        me = (await api_client.get("/api/user", headers=headers)).json()
        assert me["has_voted"] is False

        response = await api_client.post("/api/vote/2", headers=headers)
        assert response.status_code == 200

    async def test_reset_twice_is_noop(self, api_client: httpx.AsyncClient, election,
                                       admin_headers, register_student):
        user, headers = await register_student()
        _, other_headers = await register_student("2025-00999", "Ana Reyes")
        await api_client.post("/api/vote/1", headers=headers)
        await api_client.post("/api/vote/1", headers=other_headers)

        for _ in range(2):
            response = await api_client.post(f"/api/users/{user['id']}/reset-vote",
                                              headers=admin_headers)
            assert response.status_code == 200

        assert (await vote_counts(api_client))[1] == 1

    async def test_admin_cannot_vote(self, api_client: httpx.AsyncClient, election,
                                     admin_headers):
        response = await api_client.post("/api/vote/1", headers=admin_headers)

        assert response.status_code == 403
        assert response.json()["error"] == "admin_cannot_vote"
        assert (await vote_counts(api_client))[1] == 0

    async def test_unknown_candidate(self, api_client: httpx.AsyncClient, election,
                                     student_headers):
        response = await api_client.post("/api/vote/999", headers=student_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "candidate_not_found"

    async def test_vote_requires_authentication(self, api_client: httpx.AsyncClient, election):
        response = await api_client.post("/api/vote/1")
        assert response.status_code == 401

    async def test_reset_requires_admin(self, api_client: httpx.AsyncClient, election,
                                        register_student):
        user, headers = await register_student()
        response = await api_client.post(f"/api/users/{user['id']}/reset-vote", headers=headers)
        assert response.status_code == 403


@pytest.mark.asyncio
class TestConcurrentVotes:
    """Concurrent submissions through the API."""

    async def test_concurrent_votes_same_position(self, api_client: httpx.AsyncClient, election,
                                                  register_student):
        """Test: Simultaneous votes by one voter are serialized against the cap."""
        _, headers = await register_student()

        responses = await asyncio.gather(*[
            api_client.post(f"/api/vote/{candidate_id}", headers=headers)
            for candidate_id in (3, 4, 5)
        ])

        codes = sorted(r.status_code for r in responses)
        assert codes == [200, 200, 400]
        counts = await vote_counts(api_client)
        assert counts[3] + counts[4] + counts[5] == 2

    async def test_concurrent_votes_different_voters(self, api_client: httpx.AsyncClient,
                                                     election, register_student):
        """Test: Different voters vote for the same candidate independently."""
        voters = [
            await register_student(f"2025-0050{i}", f"Student Number {i}") for i in range(8)
        ]

        responses = await asyncio.gather(*[
            api_client.post("/api/vote/1", headers=headers) for _, headers in voters
        ])

        assert all(r.status_code == 200 for r in responses)
        assert (await vote_counts(api_client))[1] == 8
