"""
Tests for the Twilio webhook endpoints.

These tests verify:
1. /twilio-voice greets, listens and loops back on silence
2. /gather answers immediately and hands speech to the dispatcher
3. /gather asks to repeat on empty speech, without queuing work
4. /gather hangs up when CallSid is missing, without queuing work
5. The full lifespan wires dispatcher -> orchestrator -> live call update
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from callbridge import main, twiml
from callbridge.chat_client import ChatAPIClient
from callbridge.config import ConfigurationError, Settings
from callbridge.main import app
from callbridge.models import UtteranceTask

CALLER = "+15551234567"


@pytest.fixture
def client():
    """Create test client (no lifespan)."""
    return TestClient(app)


@pytest.fixture
def mock_dispatcher():
    dispatcher = MagicMock()
    dispatcher.running = True
    with patch("callbridge.main.dispatcher", dispatcher):
        yield dispatcher


class TestHealth:

    def test_root_returns_confirmation_text(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.text == "Twilio Voice <-> Next-AGI Chatbot is running!"

    def test_health_json(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data


class TestTwilioVoice:

    def test_greeting_listens_and_redirects(self, client):
        """Call start from a caller: greeting + Gather + redirect back to /twilio-voice."""
        response = client.post("/twilio-voice", data={"From": CALLER, "CallSid": "CA123"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        content = response.text
        assert f"Welcome to the {main.settings.default_assistant_name}" in content
        assert "<Gather" in content
        assert 'action="/gather"' in content
        assert "<Redirect>/twilio-voice</Redirect>" in content


class TestTwilioGather:

    def test_speech_returns_processing_and_queues_task(self, client, mock_dispatcher):
        response = client.post(
            "/gather",
            data={
                "From": CALLER,
                "SpeechResult": "check my balance",
                "Confidence": "0.92",
                "CallSid": "CA123",
            },
        )

        assert response.status_code == 200
        assert response.text == twiml.processing(main.settings.processing_pause_seconds)
        assert "<Pause" in response.text

        mock_dispatcher.submit.assert_called_once()
        task = mock_dispatcher.submit.call_args.args[0]
        assert isinstance(task, UtteranceTask)
        assert task.call_sid == "CA123"
        assert task.caller == CALLER
        assert task.speech_result == "check my balance"
        assert task.confidence == "0.92"

    def test_repeated_event_queues_again(self, client, mock_dispatcher):
        """Identical events are not deduplicated."""
        data = {"From": CALLER, "SpeechResult": "check my balance", "CallSid": "CA123"}

        client.post("/gather", data=data)
        client.post("/gather", data=data)

        assert mock_dispatcher.submit.call_count == 2

    def test_empty_speech_asks_to_repeat(self, client, mock_dispatcher):
        for speech in ("", "   "):
            response = client.post("/gather", data={"From": CALLER, "SpeechResult": speech, "CallSid": "CA123"})

            assert response.status_code == 200
            assert "I didn't catch that" in response.text
            assert "<Gather" in response.text

        mock_dispatcher.submit.assert_not_called()

    def test_missing_speech_field_asks_to_repeat(self, client, mock_dispatcher):
        response = client.post("/gather", data={"From": CALLER, "CallSid": "CA123"})

        assert "I didn't catch that" in response.text
        mock_dispatcher.submit.assert_not_called()

    def test_missing_call_sid_hangs_up(self, client, mock_dispatcher):
        response = client.post("/gather", data={"From": CALLER, "SpeechResult": "check my balance"})

        assert response.status_code == 200
        assert "<Hangup" in response.text
        assert "<Gather" not in response.text
        mock_dispatcher.submit.assert_not_called()

    def test_dispatcher_down_gives_apology(self, client):
        with patch("callbridge.main.dispatcher", None):
            response = client.post("/gather", data={"From": CALLER, "SpeechResult": "hi", "CallSid": "CA123"})

        assert response.text == twiml.apology_and_restart()


@pytest.fixture
def app_settings():
    return Settings(
        twilio_account_sid="ACtest",
        twilio_auth_token="secret",
        api_base_url="https://chat.example.test/v1",
        api_keys={"default": "key-default"},
        chat_timeout_seconds=5.0,
        processing_pause_seconds=45,
    )


class TestLifespan:

    def test_missing_credentials_refuse_to_start(self):
        with patch("callbridge.main.settings", Settings()):
            with pytest.raises(ConfigurationError):
                with TestClient(app):
                    pass

    def test_gather_answers_while_upstream_pending(self, app_settings):
        """/gather replies with the processing script before the chat API has answered."""
        gate = {}
        chat_requests = []

        async def make_gate():
            gate["release"] = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            chat_requests.append(request)
            await gate["release"].wait()
            return httpx.Response(200, content=b'data: {"conversation_id": "conv_9", "answer": "Finally."}\n\n')

        def chat_client_factory(base_url, timeout):
            return ChatAPIClient(base_url, timeout=timeout, transport=httpx.MockTransport(handler))

        twilio_service = MagicMock()
        twilio_service.update_call = AsyncMock()

        with patch("callbridge.main.settings", app_settings), \
                patch("callbridge.main.ChatAPIClient", side_effect=chat_client_factory), \
                patch("callbridge.main.get_twilio_service", return_value=twilio_service):
            with TestClient(app) as client:
                # the event must belong to the app loop
                client.portal.call(make_gate)
                response = client.post(
                    "/gather",
                    data={"From": CALLER, "SpeechResult": "check my balance", "CallSid": "CA123"},
                )

                assert response.status_code == 200
                assert response.text == twiml.processing(45)
                twilio_service.update_call.assert_not_awaited()
                assert main.dispatcher.pending == 1

                client.portal.call(gate["release"].set)
                client.portal.call(main.dispatcher.join)

        assert len(chat_requests) == 1
        twilio_service.update_call.assert_awaited_once()
        call_sid, content = twilio_service.update_call.await_args.args
        assert call_sid == "CA123"
        assert "Finally." in content

    def test_end_to_end_turn(self, app_settings):
        """Speech in, processing script out, answer pushed onto the call afterwards."""
        chat_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            chat_requests.append(request)
            body = (
                b'data: {"event": "message", "conversation_id": "conv_9", "answer": "Your balance is $42."}\n\n'
                b'data: {"event": "message_end", "conversation_id": "conv_9"}\n\n'
            )
            return httpx.Response(200, content=body)

        def chat_client_factory(base_url, timeout):
            return ChatAPIClient(base_url, timeout=timeout, transport=httpx.MockTransport(handler))

        twilio_service = MagicMock()
        twilio_service.update_call = AsyncMock()

        with patch("callbridge.main.settings", app_settings), \
                patch("callbridge.main.ChatAPIClient", side_effect=chat_client_factory), \
                patch("callbridge.main.get_twilio_service", return_value=twilio_service):
            with TestClient(app) as client:
                response = client.post(
                    "/gather",
                    data={"From": CALLER, "SpeechResult": "check my balance", "CallSid": "CA123"},
                )
                assert response.text == twiml.processing(45)

                client.portal.call(main.dispatcher.join)

                assert main.conversation_store.get(CALLER) == "conv_9"

        assert json.loads(chat_requests[0].content)["conversation_id"] == ""
        twilio_service.update_call.assert_awaited_once()
        call_sid, content = twilio_service.update_call.await_args.args
        assert call_sid == "CA123"
        assert "Your balance is $42." in content
        assert "<Gather" in content
