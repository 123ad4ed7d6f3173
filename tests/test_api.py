"""
Tests for the read-only status API.
"""

from datetime import timedelta
from uuid import uuid4

import httpx
import pytest

from role_approval.core.database import get_session
from role_approval.main import app


@pytest.fixture
async def client(session_factory):
    """HTTP client against the app, backed by the test database."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestConversationsApi:
    """GET /api/v1/conversations..."""

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_list_and_filter(self, client, talk_workflow, request_for):
        await talk_workflow.engine.start(request_for(role="developer", user="alice"))
        await talk_workflow.engine.start(request_for(role="observer", user="bob"))
        await talk_workflow.engine.start(request_for(role="developer", project="jersey"))

        response = await client.get("/api/v1/conversations")
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert body["total_pages"] == 1

        response = await client.get(
            "/api/v1/conversations", params={"state": "awaiting_reply"}
        )
        items = response.json()["items"]
        assert [item["user_name"] for item in items] == ["bob"]
        assert items[0]["deadline"] is not None

        response = await client.get("/api/v1/conversations", params={"project": "jersey"})
        assert response.json()["total"] == 1

    async def test_pagination(self, client, talk_workflow, request_for):
        for user in ("alice", "bob", "carol"):
            await talk_workflow.engine.start(request_for(role="developer", user=user))

        response = await client.get(
            "/api/v1/conversations", params={"page": 2, "page_size": 2}
        )

        body = response.json()
        assert body["total"] == 3
        assert body["total_pages"] == 2
        assert len(body["items"]) == 1

    async def test_detail_includes_history(self, client, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for(role="observer"))
        clock.advance(timedelta(days=7))
        await wf.engine.handle_deadline(conversation.id)

        response = await client.get(f"/api/v1/conversations/{conversation.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "denied"
        assert body["outcome"] == "denied"
        assert body["pending_message_id"] == wf.sender.sent[0].message_id
        event_types = {event["event_type"] for event in body["events"]}
        assert {"created", "message_sent", "action_applied"} <= event_types
        assert body["processed_replies"] == []

    async def test_unknown_conversation_is_404(self, client):
        response = await client.get(f"/api/v1/conversations/{uuid4()}")

        assert response.status_code == 404

    async def test_stats(self, client, talk_workflow, request_for):
        await talk_workflow.engine.start(request_for(role="developer"))
        await talk_workflow.engine.start(request_for(role="observer"))

        response = await client.get("/api/v1/conversations/stats")

        assert response.json() == {
            "by_state": {"approved": 1, "awaiting_reply": 1},
            "total": 2,
        }

    async def test_events_endpoint(self, client, talk_workflow, request_for):
        conversation = await talk_workflow.engine.start(request_for(role="developer"))

        response = await client.get(f"/api/v1/conversations/{conversation.id}/events")

        assert response.status_code == 200
        events = response.json()
        assert events[0]["event_type"] == "created"
        assert events[-1]["to_state"] == "approved"

    async def test_events_of_unknown_conversation_is_404(self, client):
        response = await client.get(f"/api/v1/conversations/{uuid4()}/events")

        assert response.status_code == 404

    async def test_summary_flags_terminal_states(self, client, talk_workflow, request_for):
        await talk_workflow.engine.start(request_for(role="developer"))

        response = await client.get("/api/v1/conversations")

        assert response.json()["items"][0]["is_terminal"] is True
