"""
Tests for the chat HTTP endpoint
"""

import pytest
from fastapi.testclient import TestClient

from aqichat_api.main import app
from aqichat_api.routers.chat import get_chatbot_service
from aqichat_api.services.ai.chatbot import (
    CONFIG_ERROR_REPLY,
    SERVER_ERROR_REPLY,
    ChatResult,
)


class StubChatbot:
    """Chatbot service stub recording answered messages"""

    def __init__(self, result=None, configured=True, error=None):
        self.result = result or ChatResult(reply="PM2.5 is moderate.")
        self.configured = configured
        self.error = error
        self.calls = []

    def is_configured(self):
        return self.configured

    async def answer(self, user_message, history=None):
        self.calls.append((user_message, history))
        if self.error:
            raise self.error
        return self.result

    async def health_check(self):
        return {"llm_service": "configured"}


class TestChatEndpoint:
    """Tests for POST /api/aqi-chat"""

    def setup_method(self):
        """Setup test fixtures"""
        self.stub = StubChatbot()
        app.dependency_overrides[get_chatbot_service] = lambda: self.stub
        self.client = TestClient(app)

    def teardown_method(self):
        app.dependency_overrides.clear()

    def test_reply_without_action(self):
        """Test plain reply and no-store headers"""
        response = self.client.post("/api/aqi-chat", json={"userMessage": "Top 3 polluted cities now"})

        assert response.status_code == 200
        assert response.json() == {"reply": "PM2.5 is moderate."}
        assert "no-store" in response.headers["cache-control"]
        assert response.headers["netlify-cdn-cache-control"] == "no-store"

    def test_reply_with_action(self):
        """Test map action is passed through"""
        self.stub.result = ChatResult(
            reply="Hanoi is at 88 µg/m³.",
            action={"kind": "centerOn", "place": "Hanoi", "country": "Vietnam"},
        )

        response = self.client.post("/api/aqi-chat", json={"userMessage": "PM2.5 in Hanoi"})

        assert response.json()["action"] == {"kind": "centerOn", "place": "Hanoi", "country": "Vietnam"}

    @pytest.mark.parametrize("method", ["get", "put", "delete", "patch"])
    def test_post_only(self, method):
        """Test other methods are rejected"""
        response = getattr(self.client, method)("/api/aqi-chat")

        assert response.status_code == 405
        assert response.json() == {"error": "POST only"}
        assert self.stub.calls == []

    def test_netlify_path(self):
        """Test the dashboard's legacy function path"""
        response = self.client.post("/.netlify/functions/AQI-Chat", json={"userMessage": "AQI?"})

        assert response.status_code == 200
        assert self.stub.calls[0][0] == "AQI?"

    def test_message_trimmed_and_capped(self):
        """Test user message length cap"""
        self.client.post("/api/aqi-chat", json={"userMessage": "  " + "a" * 700, "history": []})

        assert self.stub.calls[0][0] == "a" * 598

    def test_history_forwarded(self):
        """Test history reaches the service"""
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

        self.client.post("/api/aqi-chat", json={"userMessage": "PM2.5?", "history": history})

        assert self.stub.calls[0][1] == history

    @pytest.mark.parametrize("body", [{"userMessage": "   "}, {}, {"history": []}])
    def test_empty_message(self, body):
        """Test input validation without upstream calls"""
        response = self.client.post("/api/aqi-chat", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "userMessage is required"
        assert self.stub.calls == []

    def test_malformed_json(self):
        """Test unparseable body counts as an empty message"""
        response = self.client.post(
            "/api/aqi-chat", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert self.stub.calls == []

    def test_missing_credentials(self):
        """Test configuration error before any network call"""
        self.stub.configured = False

        response = self.client.post("/api/aqi-chat", json={"userMessage": "PM2.5 in Hanoi"})

        assert response.status_code == 200
        assert response.json() == {"reply": CONFIG_ERROR_REPLY}
        assert self.stub.calls == []

    def test_unexpected_error(self):
        """Test internal faults become a 200 reply"""
        self.stub.error = RuntimeError("boom")

        response = self.client.post("/api/aqi-chat", json={"userMessage": "PM2.5 in Hanoi"})

        assert response.status_code == 200
        assert response.json() == {"reply": SERVER_ERROR_REPLY}

    def test_chat_health(self):
        """Test chat health endpoint"""
        response = self.client.get("/api/chat/health")

        assert response.json() == {"llm_service": "configured"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
