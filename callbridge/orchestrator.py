"""
Utterance orchestration - one chat round trip per recognized utterance.

Runs outside the webhook request/response cycle:
1. Snapshot the caller's conversation_id
2. Resolve the chat API key for the active assistant
3. Stream the chat answer, accumulating fragments
4. Store a newer conversation_id (last write wins)
5. Push the answer TwiML onto the live call

Any failure in steps 2-4 is converted into the apology TwiML and pushed
through the same live-update channel, so the caller is never left without a
way to continue. A failed live update is only logged.
"""

import asyncio
import logging
from datetime import datetime

from . import twiml
from .chat_client import ChatAPIClient, ChatAPIError
from .config import ConfigurationError, Settings
from .conversation_store import ConversationStore
from .models import StreamResult, UtteranceTask
from .sse import apply_event
from .twilio_service import TwilioService

logger = logging.getLogger(__name__)

# Chars of the answer to include in logs
ANSWER_PREVIEW_CHARS = 100


class UtteranceOrchestrator:
    """Turns an UtteranceTask into a live call update."""

    def __init__(
        self,
        settings: Settings,
        store: ConversationStore,
        chat_client: ChatAPIClient,
        twilio_service: TwilioService,
    ):
        self.settings = settings
        self.store = store
        self.chat_client = chat_client
        self.twilio_service = twilio_service

    async def process(self, task: UtteranceTask) -> None:
        """Run one utterance end to end. Never raises."""
        prefix = f"[{task.call_sid}] "
        logger.info(f"{prefix}Starting async API call for: \"{task.speech_result}\"")
        waited_ms = (datetime.utcnow() - task.received_at).total_seconds() * 1000
        logger.debug(f"{prefix}[TIMING] Task started {waited_ms:.0f}ms after the webhook")

        try:
            response_twiml = await self._answer(task, prefix)
        except Exception as e:
            if isinstance(e, (ChatAPIError, ConfigurationError)):
                logger.error(f"{prefix}Error during async processing: {e}")
            else:
                logger.error(f"{prefix}Unexpected error during async processing: {e}", exc_info=True)
            await self._push(task.call_sid, twiml.apology_and_restart(), prefix, "error message")
            return

        logger.info(f"{prefix}Updating live call with final TwiML.")
        await self._push(task.call_sid, response_twiml, prefix, "final TwiML")

    async def _answer(self, task: UtteranceTask, prefix: str) -> str:
        conversation_id = self.store.get(task.caller)
        assistant_name = self.settings.default_assistant_name

        api_key = self.settings.get_api_key(assistant_name)
        if not api_key:
            raise ConfigurationError(f"Could not determine API key for assistant: {assistant_name}")

        try:
            result = await asyncio.wait_for(
                self._stream(task, api_key, conversation_id, prefix),
                timeout=self.settings.chat_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ChatAPIError(f"Chat API did not finish within {self.settings.chat_timeout_seconds:g}s")

        if result.conversation_id and result.conversation_id != conversation_id:
            logger.info(f"{prefix}Updating conversation ID for {task.caller} to {result.conversation_id}")
            self.store.set(task.caller, result.conversation_id)

        if result.answer.strip():
            logger.info(f"{prefix}Speaking response to {task.caller}: \"{result.answer[:ANSWER_PREVIEW_CHARS]}...\"")
        else:
            logger.info(f"{prefix}No answer content received from API for {task.caller}.")

        return twiml.answer(result.answer)

    async def _stream(
        self,
        task: UtteranceTask,
        api_key: str,
        conversation_id: str,
        prefix: str,
    ) -> StreamResult:
        result = StreamResult(conversation_id=conversation_id)
        async for event in self.chat_client.stream_chat(
            api_key=api_key,
            query=task.speech_result,
            conversation_id=conversation_id,
            user=task.caller,
            log_prefix=prefix,
        ):
            apply_event(result, event)
        logger.debug(f"{prefix}Stream finished: {result.fragments} answer fragment(s)")
        return result

    async def _push(self, call_sid: str, response_twiml: str, prefix: str, label: str) -> bool:
        try:
            await self.twilio_service.update_call(call_sid, response_twiml)
        except Exception as e:
            # The caller falls back to the placeholder's own pause + redirect
            logger.error(f"{prefix}Failed to update call with {label}: {e}")
            return False
        logger.info(f"{prefix}Live call update successful.")
        return True
