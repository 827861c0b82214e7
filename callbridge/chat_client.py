"""
HTTP client for the streaming chat-messages API.
"""

import logging
import time
from typing import AsyncIterator, Dict, Optional

import httpx

from .models import ChatMessageRequest, ResponseMode, StreamEvent
from .sse import SSEDecoder, iter_stream_events

logger = logging.getLogger(__name__)

CHAT_MESSAGES_PATH = "/chat-messages"

# Maximum chars of an error body to keep
MAX_ERROR_BODY_CHARS = 2000


class ChatAPIError(Exception):
    """Raised when the chat API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ChatAPIClient:
    """
    Streaming client for POST {base_url}/chat-messages.

    A new httpx.AsyncClient is opened per request; the bearer key is passed
    per call because it depends on the active assistant.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 40.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API base, e.g. https://api.next-agi.com/v1
            timeout: Per-operation httpx timeout in seconds
            transport: Optional transport override (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _get_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    async def stream_chat(
        self,
        api_key: str,
        query: str,
        conversation_id: str,
        user: str,
        log_prefix: str = "",
    ) -> AsyncIterator[StreamEvent]:
        """
        Send a streaming chat request and yield decoded events as they arrive.

        Args:
            api_key: Bearer key for the assistant
            query: Recognized caller speech
            conversation_id: Continuation token ("" starts a new conversation)
            user: Caller identifier used as the "user" tag
            log_prefix: Prefix for log lines, e.g. "[CA123] "

        Yields:
            StreamEvent items, ending with an END event

        Raises:
            ChatAPIError: On non-2xx status, network failure or timeout
        """
        url = f"{self.base_url}{CHAT_MESSAGES_PATH}"
        payload = ChatMessageRequest(
            query=query,
            response_mode=ResponseMode.STREAMING,
            conversation_id=conversation_id,
            user=user,
        )

        logger.debug(f"{log_prefix}Chat request payload: {payload.model_dump_json()}")

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream(
                    "POST",
                    url,
                    json=payload.model_dump(mode="json"),
                    headers=self._get_headers(api_key),
                ) as response:
                    elapsed_ms = (time.monotonic() - start) * 1000
                    logger.info(f"{log_prefix}API call took {elapsed_ms:.0f} ms. Status: {response.status_code}")

                    if not response.is_success:
                        await response.aread()
                        body = response.text[:MAX_ERROR_BODY_CHARS]
                        raise ChatAPIError(
                            f"API error! Status: {response.status_code}. Body: {body}",
                            status_code=response.status_code,
                            response_body=body,
                        )

                    decoder = SSEDecoder(context=log_prefix)
                    async for event in iter_stream_events(response.aiter_bytes(), decoder):
                        yield event

                    if decoder.malformed_count:
                        logger.warning(f"{log_prefix}Skipped {decoder.malformed_count} malformed stream line(s)")

        except httpx.TimeoutException as e:
            raise ChatAPIError(f"Timed out calling {CHAT_MESSAGES_PATH}: {e}")
        except httpx.RequestError as e:
            raise ChatAPIError(f"Network error calling {CHAT_MESSAGES_PATH}: {e}")
