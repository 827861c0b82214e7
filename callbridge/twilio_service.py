"""
Twilio Service - live call updates.

The webhook responses only ever carry placeholder TwiML; the real answer
reaches the caller by replacing the TwiML of the in-progress call through the
Twilio REST API.

Python 3.9 compatible - uses typing.Optional
"""

import asyncio
import logging
from typing import Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from .config import Settings

logger = logging.getLogger(__name__)


class CallUpdateError(Exception):
    """Raised when Twilio rejects or cannot deliver a live call update."""

    def __init__(self, message: str, call_sid: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.call_sid = call_sid
        self.status_code = status_code


class TwilioService:
    """Thin wrapper over the Twilio REST client."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        phone_number: Optional[str] = None,
        client: Optional[TwilioClient] = None,
    ):
        self.account_sid = account_sid
        self.phone_number = phone_number
        self.client = client or TwilioClient(account_sid, auth_token)
        logger.info(f"TwilioService configured (phone: {phone_number or 'not set'})")

    async def update_call(self, call_sid: str, twiml: str) -> None:
        """Replace the pending TwiML of a live call.

        The REST client is blocking, so the request runs in the default
        executor to keep the event loop free.

        Raises:
            CallUpdateError: If Twilio rejects the update (e.g. call already ended)
        """
        loop = asyncio.get_running_loop()

        def _update():
            return self.client.calls(call_sid).update(twiml=twiml)

        try:
            call = await loop.run_in_executor(None, _update)
        except TwilioRestException as e:
            raise CallUpdateError(
                f"Twilio rejected update for call {call_sid}: {e.msg}",
                call_sid=call_sid,
                status_code=e.status,
            )
        except TwilioException as e:
            raise CallUpdateError(f"Twilio update failed for call {call_sid}: {e}", call_sid=call_sid)
        except Exception as e:
            # transport failures surface from the REST client's HTTP layer
            raise CallUpdateError(f"Twilio update failed for call {call_sid}: {e}", call_sid=call_sid)

        logger.debug(f"[{call_sid}] Call update accepted, status={getattr(call, 'status', 'unknown')}")


# Singleton instance (created lazily)
_twilio_service: Optional[TwilioService] = None


def get_twilio_service(settings: Settings) -> TwilioService:
    """Get or create the TwilioService singleton."""
    global _twilio_service
    if _twilio_service is None:
        _twilio_service = TwilioService(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            phone_number=settings.twilio_phone_number,
        )
    return _twilio_service


def reset_twilio_service() -> None:
    """Drop the singleton (used on shutdown)."""
    global _twilio_service
    _twilio_service = None
