"""Tests for the REST API — auth, agents, chats, credits, packs and payments."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from config import settings
from models.agent import Agent
from models.conversation import Conversation
from models.payment import MessagePack
from services.credits import CreditLedger
from services.payments import sign


# ---------------------------------------------------------------------------
# Override the database dependency and install a relay for tests
# ---------------------------------------------------------------------------

@pytest.fixture
def app(db, relay):
    """Test app with DB overridden to use the test session and a fake-backed relay."""
    from main import app as _app
    from database import get_db

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    _app.dependency_overrides[get_db] = _override_get_db
    _app.state.relay = relay
    yield _app
    _app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_client(client, api_key):
    client.headers["Authorization"] = f"Bearer {api_key.key}"
    return client


@pytest.fixture
def admin_client(app, db, admin):
    from models.user import APIKey

    key = APIKey(user_id=admin.id)
    db.add(key)
    db.commit()
    c = TestClient(app)
    c.headers["Authorization"] = f"Bearer {key.key}"
    return c


@pytest.fixture
def pack(db):
    p = MessagePack(name="Starter", message_count=20, price=99.0)
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


# ── Auth ──────────────────────────────────────────────────────────────────────


class TestAuthAPI:
    def test_register_returns_key(self, client):
        resp = client.post(
            "/api/v1/auth/register/",
            json={"email": "New@Example.com", "password": "longenough", "name": "New"},
        )
        assert resp.status_code == 201
        key = resp.json()["key"]
        assert len(key) == 36

        me = client.get("/api/v1/auth/me/", headers={"Authorization": f"Bearer {key}"})
        assert me.status_code == 200
        assert me.json()["email"] == "new@example.com"
        assert me.json()["role"] == "user"

    def test_register_duplicate_email(self, client, user):
        resp = client.post(
            "/api/v1/auth/register/",
            json={"email": "user@example.com", "password": "longenough"},
        )
        assert resp.status_code == 409

    def test_register_short_password(self, client):
        resp = client.post("/api/v1/auth/register/", json={"email": "a@b.co", "password": "short"})
        assert resp.status_code == 422

    def test_obtain_token(self, client, user):
        resp = client.post(
            "/api/v1/auth/token/",
            json={"email": "user@example.com", "password": "testpass123"},
        )
        assert resp.status_code == 200
        assert len(resp.json()["key"]) == 36

    def test_obtain_token_regenerates_key(self, client, user):
        body = {"email": "user@example.com", "password": "testpass123"}
        resp1 = client.post("/api/v1/auth/token/", json=body)
        resp2 = client.post("/api/v1/auth/token/", json=body)
        assert resp1.json()["key"] != resp2.json()["key"]

    def test_obtain_token_invalid_credentials(self, client, user):
        resp = client.post(
            "/api/v1/auth/token/",
            json={"email": "user@example.com", "password": "wrong"},
        )
        assert resp.status_code == 401

    def test_unauthenticated(self, client):
        resp = client.get("/api/v1/chats/")
        assert resp.status_code in (401, 403)

    def test_bad_bearer(self, client):
        resp = client.get("/api/v1/chats/", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401


# ── Agents ────────────────────────────────────────────────────────────────────


class TestAgentsAPI:
    def test_list_active_only(self, auth_client, db, agent):
        db.add(Agent(title="Retired", status="inactive"))
        db.commit()
        resp = auth_client.get("/api/v1/agents/")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["items"][0]["title"] == "Career Coach"
        assert "assistantId" not in data["items"][0]

    def test_details(self, auth_client, agent):
        resp = auth_client.get(f"/api/v1/agents/{agent.id}/")
        assert resp.status_code == 200
        assert resp.json()["isPaid"] is False

    def test_details_inactive(self, auth_client, db, agent):
        agent.status = "inactive"
        db.commit()
        resp = auth_client.get(f"/api/v1/agents/{agent.id}/")
        assert resp.status_code == 404
        assert resp.json()["code"] == "agent_unavailable"

    def test_create_requires_admin(self, auth_client):
        resp = auth_client.post("/api/v1/agents/", json={"title": "New"})
        assert resp.status_code == 403

    def test_admin_creates_agent(self, admin_client):
        resp = admin_client.post(
            "/api/v1/agents/",
            json={"title": "Tutor", "assistantId": "asst_new", "tags": ["math"]},
        )
        assert resp.status_code == 201
        assert resp.json()["title"] == "Tutor"
        assert resp.json()["tags"] == ["math"]


# ── Chats ─────────────────────────────────────────────────────────────────────


class TestChatsAPI:
    def test_create_then_reuse(self, auth_client, agent):
        first = auth_client.post("/api/v1/chats/", json={"agentId": agent.id})
        assert first.status_code == 201
        assert first.json()["agent"]["title"] == "Career Coach"

        second = auth_client.post("/api/v1/chats/", json={"agentId": agent.id})
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]

    def test_create_for_unknown_agent(self, auth_client):
        resp = auth_client.post("/api/v1/chats/", json={"agentId": 999})
        assert resp.status_code == 404

    def test_list(self, auth_client, conversation):
        resp = auth_client.get("/api/v1/chats/")
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["items"][0]["unreadCount"] == 0

    def test_other_users_chat_hidden(self, client, db, other_user, conversation):
        from models.user import APIKey

        key = APIKey(user_id=other_user.id)
        db.add(key)
        db.commit()
        resp = client.get(
            f"/api/v1/chats/{conversation.id}/",
            headers={"Authorization": f"Bearer {key.key}"},
        )
        assert resp.status_code == 404
        assert resp.json()["code"] == "conversation_not_found"

    def test_send_message(self, auth_client, db, user, agent, conversation, fake_assistant):
        fake_assistant.statuses = ["completed"]
        resp = auth_client.post(
            f"/api/v1/chats/{conversation.id}/message",
            json={"content": "  Hi there  "},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["data"]["content"] == "Hi there"
        assert data["data"]["sender"] == "user"
        assert data["reply"]["content"] == fake_assistant.reply
        assert data["reply"]["tokensUsed"] == fake_assistant.tokens_used
        assert data["credits"] == {"remaining": 2, "hasCredits": True}

        detail = auth_client.get(f"/api/v1/chats/{conversation.id}/").json()
        assert [m["sender"] for m in detail["messages"]] == ["user", "agent"]
        assert detail["conversation"]["threadId"] == "thread_1"
        assert detail["conversation"]["unreadCount"] == 1

    def test_send_message_empty(self, auth_client, conversation):
        resp = auth_client.post(f"/api/v1/chats/{conversation.id}/message", json={"content": ""})
        assert resp.status_code == 422

    def test_send_message_whitespace_only(self, auth_client, conversation):
        resp = auth_client.post(f"/api/v1/chats/{conversation.id}/message", json={"content": "   "})
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_request"

    def test_send_message_without_credits(self, auth_client, db, user, agent, conversation, fake_assistant):
        ledger = CreditLedger(db)
        for _ in range(3):
            ledger.deduct_credit(user.id, agent.id)
        resp = auth_client.post(f"/api/v1/chats/{conversation.id}/message", json={"content": "Hi"})
        assert resp.status_code == 402
        assert resp.json()["code"] == "insufficient_credits"
        assert resp.json()["remaining"] == 0
        assert fake_assistant.runs == []

    def test_send_message_assistant_failure(self, auth_client, conversation, fake_assistant):
        fake_assistant.statuses = ["failed"]
        resp = auth_client.post(f"/api/v1/chats/{conversation.id}/message", json={"content": "Hi"})
        assert resp.status_code == 502
        assert resp.json()["code"] == "assistant_unavailable"
        assert resp.json()["run_status"] == "failed"

    def test_history_paging(self, auth_client, conversation, db):
        from services.messages import MessageLog

        log = MessageLog(db)
        for i in range(5):
            log.append(conversation.id, "user", f"m{i}")
        resp = auth_client.get(f"/api/v1/chats/{conversation.id}/history?page=1&limit=2")
        assert resp.status_code == 200
        data = resp.json()
        assert [m["content"] for m in data["messages"]] == ["m3", "m4"]
        assert data["pagination"] == {"page": 1, "limit": 2, "total": 5, "pages": 3}

    def test_mark_read_and_unread_count(self, auth_client, db, conversation):
        from services.conversations import ConversationDirectory
        from services.messages import MessageLog

        MessageLog(db).append(conversation.id, "agent", "reply", status="sent")
        ConversationDirectory(db).record_turn(conversation.id, "reply", "agent")
        assert auth_client.get("/api/v1/chats/unread-count/").json() == {"count": 1}

        resp = auth_client.post(f"/api/v1/chats/{conversation.id}/read/")
        assert resp.status_code == 200
        assert resp.json() == {"conversationId": conversation.id, "updatedCount": 1}
        assert auth_client.get("/api/v1/chats/unread-count/").json() == {"count": 0}

    def test_pin_toggle(self, auth_client, conversation):
        assert auth_client.post(f"/api/v1/chats/{conversation.id}/pin/").json()["pinned"] is True
        assert auth_client.post(f"/api/v1/chats/{conversation.id}/pin/").json()["pinned"] is False

    def test_archive_then_new_conversation(self, auth_client, agent, conversation):
        resp = auth_client.post(f"/api/v1/chats/{conversation.id}/archive/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "archived"

        fresh = auth_client.post("/api/v1/chats/", json={"agentId": agent.id})
        assert fresh.status_code == 201
        assert fresh.json()["id"] != conversation.id

    def test_close(self, auth_client, db, conversation):
        resp = auth_client.delete(f"/api/v1/chats/{conversation.id}/")
        assert resp.status_code == 204
        db.expire_all()
        assert db.get(Conversation, conversation.id).status == "closed"
        assert auth_client.get("/api/v1/chats/").json()["total"] == 0
        assert auth_client.get("/api/v1/chats/?include_closed=true").json()["total"] == 1


# ── Credits ───────────────────────────────────────────────────────────────────


class TestCreditsAPI:
    def test_agent_balance_initialised(self, auth_client, agent):
        resp = auth_client.get(f"/api/v1/credits/{agent.id}/")
        assert resp.status_code == 200
        data = resp.json()
        assert data["freeMessages"] == 3
        assert data["remaining"] == 3
        assert data["hasCredits"] is True

    def test_unknown_agent(self, auth_client):
        assert auth_client.get("/api/v1/credits/999/").status_code == 404

    def test_stats(self, auth_client, db, user, agent):
        CreditLedger(db).deduct_credit(user.id, agent.id)
        data = auth_client.get("/api/v1/credits/").json()
        assert data["totalAgents"] == 1
        assert data["totalUsedMessages"] == 1


# ── Message packs and payments ───────────────────────────────────────────────


class TestPaymentsAPI:
    def test_list_packs(self, auth_client, pack):
        data = auth_client.get("/api/v1/message-packs/").json()
        assert data["total"] == 1
        assert data["items"][0]["pricePerMessage"] == pytest.approx(4.95)

    def test_order_verify_credits(self, auth_client, db, user, agent, pack, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_KEY_SECRET", "api-test-secret")
        resp = auth_client.post(
            f"/api/v1/message-packs/{pack.id}/orders/",
            json={"agentId": agent.id, "quantity": 2},
        )
        assert resp.status_code == 201
        order_id = resp.json()["orderId"]
        assert resp.json()["amount"] == 19800

        resp = auth_client.post(
            "/api/v1/payments/verify/",
            json={"orderId": order_id, "paymentId": "pay_1", "signature": sign(order_id, "pay_1")},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        assert CreditLedger(db).balance(user.id, agent.id).purchased_messages == 40

    def test_verify_bad_signature(self, auth_client, agent, pack):
        order_id = auth_client.post(
            f"/api/v1/message-packs/{pack.id}/orders/", json={"agentId": agent.id},
        ).json()["orderId"]
        resp = auth_client.post(
            "/api/v1/payments/verify/",
            json={"orderId": order_id, "paymentId": "pay_1", "signature": "bad"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_payment_signature"

    def test_forged_signature_refused_without_secret(self, auth_client, db, user, agent, pack, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_KEY_SECRET", "")
        order_id = auth_client.post(
            f"/api/v1/message-packs/{pack.id}/orders/", json={"agentId": agent.id},
        ).json()["orderId"]
        resp = auth_client.post(
            "/api/v1/payments/verify/",
            json={"orderId": order_id, "paymentId": "pay_fake", "signature": sign(order_id, "pay_fake", "")},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_payment_signature"
        assert CreditLedger(db).balance(user.id, agent.id).purchased_messages == 0

    def test_cancel_and_history(self, auth_client, agent, pack):
        order_id = auth_client.post(
            f"/api/v1/message-packs/{pack.id}/orders/", json={"agentId": agent.id},
        ).json()["orderId"]
        resp = auth_client.post(f"/api/v1/payments/{order_id}/cancel/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        history = auth_client.get("/api/v1/payments/?status=cancelled").json()
        assert [p["orderId"] for p in history["payments"]] == [order_id]
        assert history["pagination"]["total"] == 1

    def test_order_quantity_bounds(self, auth_client, agent, pack):
        resp = auth_client.post(
            f"/api/v1/message-packs/{pack.id}/orders/",
            json={"agentId": agent.id, "quantity": 0},
        )
        assert resp.status_code == 422


# ── Health ────────────────────────────────────────────────────────────────────


class TestHealthAPI:
    def test_health_ok(self, client):
        resp = client.get("/api/v1/health/")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "database": "ok"}

    def test_health_database_down(self, client, db, monkeypatch):
        from sqlalchemy.exc import OperationalError

        def boom(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("down"))

        monkeypatch.setattr(db, "execute", boom)
        resp = client.get("/api/v1/health/")
        assert resp.status_code == 503
