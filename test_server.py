"""Tests for the FastAPI transport.

Tests: /health, WebSocket auth, START/PING round trip, invalid frames,
       END_CONVERSATION reply, reconnect after disconnect.

Run: pytest test_server.py
"""

import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from callcoach.config import CoachingTimings
from callcoach.models import ConversationStage, DialogueOption, Recommendation, now_ms
from callcoach.server import app


class StaticTips:
    async def _tip(self, conversation_id):
        return Recommendation(
            recommendation_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            stage=ConversationStage.DISCOVERY,
            heading="Ask More",
            context="test",
            options=(DialogueOption("Minimal", "Tell me more?"),),
            timestamp=now_ms(),
        )

    async def generate_greeting_tip(self, conversation_id, history):
        return await self._tip(conversation_id)

    async def generate_periodic_tip(self, conversation_id, history):
        return await self._tip(conversation_id)

    async def generate_contextual_tip(self, request):
        return await self._tip(request.conversation_id)


def _client(api_key=""):
    app.state.tip_engine = StaticTips()
    app.state.timings = CoachingTimings(warmup=60, auto_tip_interval=60, retention=60)
    app.state.api_key = api_key
    return TestClient(app)


def _start(ws):
    ws.send_json({"type": "START_CONVERSATION", "payload": {"agentId": "agent-1"}})
    reply = ws.receive_json()
    assert reply["type"] == "CONVERSATION_STARTED"
    return reply["payload"]["conversationId"]


# ======================================================================
# Test Group 1: HTTP
# ======================================================================

def test_health_reports_active_conversations():
    with _client() as client:
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["activeConversations"] == 0
        assert isinstance(body["timestamp"], int)

        with client.websocket_connect("/ws") as ws:
            _start(ws)
            assert client.get("/health").json()["activeConversations"] == 1


# ======================================================================
# Test Group 2: WebSocket protocol
# ======================================================================

def test_ping_pong():
    with _client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "PING", "payload": {}})
            reply = ws.receive_json()
            assert reply["type"] == "PONG"
            assert "timestamp" in reply["payload"]


def test_invalid_json_keeps_connection_open():
    with _client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            reply = ws.receive_json()
            assert reply["type"] == "ERROR"
            assert reply["payload"]["code"] == "INVALID_MESSAGE"

            ws.send_json({"type": "PING"})
            assert ws.receive_json()["type"] == "PONG"


def test_request_next_tip_round_trip():
    with _client() as client:
        with client.websocket_connect("/ws") as ws:
            cid = _start(ws)
            ws.send_json({
                "type": "REQUEST_NEXT_TIP",
                "payload": {"conversationId": cid, "selectedOption": 1, "selectedScript": "Hi"},
            })
            reply = ws.receive_json()
            assert reply["type"] == "AI_TIP"
            assert reply["payload"]["conversationId"] == cid
            assert reply["payload"]["options"] == [{"label": "Minimal", "script": "Tell me more?"}]


def test_end_conversation_reply():
    with _client() as client:
        with client.websocket_connect("/ws") as ws:
            cid = _start(ws)
            ws.send_json({"type": "END_CONVERSATION", "payload": {"conversationId": cid}})
            reply = ws.receive_json()
            assert reply == {
                "type": "CONVERSATION_ENDED",
                "payload": {"conversationId": cid, "timestamp": reply["payload"]["timestamp"]},
            }
        assert client.get("/health").json()["activeConversations"] == 0


def test_reconnect_after_disconnect_keeps_conversation():
    with _client() as client:
        with client.websocket_connect("/ws") as ws:
            cid = _start(ws)
        assert client.get("/health").json()["activeConversations"] == 1
        assert not app.state.store.conversations.get(cid).ended

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "END_CONVERSATION", "payload": {"conversationId": cid}})
            assert ws.receive_json()["type"] == "CONVERSATION_ENDED"
        assert client.get("/health").json()["activeConversations"] == 0


# ======================================================================
# Test Group 3: Authentication
# ======================================================================

def test_wrong_api_key_is_rejected():
    with _client(api_key="secret") as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws?apiKey=wrong") as ws:
                ws.receive_json()
        assert exc.value.code == 1008


def test_missing_api_key_is_rejected():
    with _client(api_key="secret") as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
        assert exc.value.code == 1008


def test_correct_api_key_is_accepted():
    with _client(api_key="secret") as client:
        with client.websocket_connect("/ws?apiKey=secret") as ws:
            ws.send_json({"type": "PING"})
            assert ws.receive_json()["type"] == "PONG"
