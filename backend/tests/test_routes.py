"""
Tests for the HTTP surface.

Validates:
1. Signup opens a credit account; planner routes require a bearer token
2. The two-phase path over HTTP: structure, background job, polling, resume
3. Planner errors come back with their status code and machine-readable kind
4. Rate limiting answers 429 with kind "rate_limited"
"""

import asyncio
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.main import app, wire_services
from backend.middleware.rate_limit import RateLimitMiddleware
from backend.services.credits import CreditOperation
from backend.tests.fakes import FakeLLM

START = {"destination": "Switzerland", "start_date": "2026-06-01", "end_date": "2026-06-05"}


@pytest.fixture
def client():
    wire_services(app, llm=FakeLLM())
    with TestClient(app) as test_client:
        yield test_client


def _signup(client) -> tuple[str, dict]:
    response = client.post("/api/auth/signup", json={
        "email": f"{uuid.uuid4().hex[:8]}@Example.com",
        "password": "correct-horse",
        "name": "Traveller",
    })
    assert response.status_code == 200
    body = response.json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}


class TestAuth:
    """Test identity routes."""

    def test_signup_login_me(self, client):
        email = f"{uuid.uuid4().hex[:8]}@example.com"
        signup = client.post("/api/auth/signup", json={"email": email.upper(), "password": "correct-horse"})
        assert signup.status_code == 200
        assert signup.json()["user"]["email"] == email
        assert signup.json()["user"]["credits_balance"] == 20

        login = client.post("/api/auth/login", json={"email": email, "password": "correct-horse"})
        assert login.status_code == 200
        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {login.json()['token']}"})
        assert me.json()["email"] == email

    def test_duplicate_signup(self, client):
        email = f"{uuid.uuid4().hex[:8]}@example.com"
        client.post("/api/auth/signup", json={"email": email, "password": "correct-horse"})
        again = client.post("/api/auth/signup", json={"email": email, "password": "correct-horse"})
        assert again.status_code == 409

    def test_wrong_password(self, client):
        email = f"{uuid.uuid4().hex[:8]}@example.com"
        client.post("/api/auth/signup", json={"email": email, "password": "correct-horse"})
        assert client.post("/api/auth/login", json={"email": email, "password": "wrong-horse"}).status_code == 401

    def test_planner_requires_token(self, client):
        assert client.get("/api/planner/create").status_code == 401
        assert client.get("/api/planner/create", headers={"Authorization": "Bearer nonsense"}).status_code == 401


class TestPlannerFlow:
    """Test a full conversation over HTTP."""

    def test_structure_job_and_resume(self, client):
        user_id, headers = _signup(client)

        state = client.get("/api/planner/create", headers=headers).json()
        assert state["phase"] == "idle"
        assert state["restored"] is False

        state = client.post("/api/planner/create/start", json=START, headers=headers).json()
        assert state["phase"] == "conversing"
        state = client.post(
            "/api/planner/create/messages",
            json={"content": "Mountains and trains", "client_message_id": "c-1"},
            headers=headers,
        ).json()
        assert len(state["messages"]) == 4
        assert state["last_metadata"]["ready_to_plan"] is True

        state = client.post("/api/planner/create/structure", headers=headers).json()
        assert state["phase"] == "structure_overview"
        assert state["structure"]["day_count"] == 5

        state = client.post("/api/planner/create/structure/generate-all", headers=headers).json()
        assert state["phase"] == "generating_plan"
        job_id = state["active_job_id"]
        job = client.get(f"/api/jobs/{job_id}", headers=headers).json()
        assert job["status"] == "pending"
        assert job["progress_step"] == "structure"

        asyncio.run(app.state.jobs.run_once())

        job = client.get(f"/api/jobs/{job_id}", headers=headers).json()
        assert job["status"] == "done"
        assert job["progress_step"] == "done"
        assert job["result"]["days_created"] == 5

        recent = client.get("/api/jobs/recent-completed", params={"mode": "create"}, headers=headers)
        assert recent.json()["id"] == job_id
        again = client.get("/api/jobs/recent-completed", params={"mode": "create"}, headers=headers)
        assert again.json() is None

        state = client.get("/api/planner/create", headers=headers).json()
        assert state["phase"] == "completed"
        assert state["restored"] is True
        assert state["execution_result"]["days_created"] == 5
        assert client.get("/api/credits", headers=headers).json()["balance"] == 20 - 1 - 1 - 3 - 1

        listed = client.get("/api/planner", headers=headers).json()
        assert [c["phase"] for c in listed] == ["completed"]

    def test_direct_plan_and_agents(self, client):
        _, headers = _signup(client)
        client.post("/api/planner/create/start", json=START, headers=headers)
        client.post("/api/planner/create/messages", json={"content": "Slow pace"}, headers=headers)

        state = client.post("/api/planner/create/plan", headers=headers).json()
        assert state["phase"] == "previewing_plan"
        state = client.post("/api/planner/create/plan/confirm", headers=headers).json()
        assert state["phase"] == "completed"
        trip_id = state["execution_result"]["trip_id"]

        packing = client.post("/api/planner/create/agent/packing-list", headers=headers).json()
        assert packing["trip_id"] == trip_id
        assert packing["items_created"] == 3
        budget = client.post("/api/planner/create/agent/budget-categories", headers=headers).json()
        assert [c["name"] for c in budget["categories"]] == ["Activities", "Souvenirs"]

    def test_reset_and_save(self, client):
        _, headers = _signup(client)
        client.post("/api/planner/create/start", json=START, headers=headers)
        assert client.post("/api/planner/create/save", headers=headers).json()["phase"] == "conversing"
        state = client.post("/api/planner/create/reset", headers=headers).json()
        assert state["phase"] == "idle"
        assert state["messages"] == []


class TestErrors:
    """Test error responses."""

    def test_insufficient_credits_is_402(self, client):
        user_id, headers = _signup(client)
        app.state.ledger.charge(user_id, 20, CreditOperation.CONVERSATION)
        response = client.post("/api/planner/create/start", json=START, headers=headers)
        assert response.status_code == 402
        assert response.json()["kind"] == "insufficient_credits"
        assert response.json()["required"] == 1
        assert client.get("/api/planner/create", headers=headers).json()["phase"] == "idle"

    def test_invalid_phase_is_409(self, client):
        _, headers = _signup(client)
        response = client.post("/api/planner/create/plan/confirm", headers=headers)
        assert response.status_code == 409
        assert response.json()["kind"] == "invalid_phase"

    def test_enhance_needs_trip_id(self, client):
        _, headers = _signup(client)
        assert client.get("/api/planner/enhance", headers=headers).status_code == 422

    def test_unknown_mode(self, client):
        _, headers = _signup(client)
        assert client.get("/api/planner/explore", headers=headers).status_code == 422

    def test_other_users_job_is_404(self, client):
        _, headers = _signup(client)
        client.post("/api/planner/create/start", json=START, headers=headers)
        client.post("/api/planner/create/structure", headers=headers)
        job_id = client.post("/api/planner/create/structure/generate-all", headers=headers).json()["active_job_id"]

        _, other = _signup(client)
        response = client.get(f"/api/jobs/{job_id}", headers=other)
        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "healthy"


class TestRateLimit:
    """Test the sliding-window limiter in isolation."""

    def _app(self):
        limited = FastAPI()
        limited.add_middleware(RateLimitMiddleware, requests_per_minute=3, ai_requests_per_minute=1, auth_requests_per_minute=1)

        @limited.get("/api/ping")
        async def ping():
            return {"ok": True}

        @limited.post("/api/planner/create/messages")
        async def message():
            return {"ok": True}

        return limited

    def test_general_limit(self):
        client = TestClient(self._app())
        codes = [client.get("/api/ping").status_code for _ in range(4)]
        assert codes == [200, 200, 200, 429]

    def test_ai_limit(self):
        client = TestClient(self._app())
        assert client.post("/api/planner/create/messages").status_code == 200
        limited = client.post("/api/planner/create/messages")
        assert limited.status_code == 429
        assert limited.json()["kind"] == "rate_limited"
