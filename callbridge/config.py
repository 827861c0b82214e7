"""
Runtime configuration for the voice bridge.

Settings are read once from the environment (a .env file is honoured, see
main.py). Twilio credentials are mandatory; everything else has a default.

Python 3.9 compatible - uses typing.Dict, typing.Optional
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.next-agi.com/v1"
DEFAULT_ASSISTANT_NAME = "Xpectrum Assistant"
DEFAULT_PORT = 3000

# Keep below the processing pause so a hung upstream still gets an apology
DEFAULT_CHAT_TIMEOUT_SECONDS = 40.0
DEFAULT_PROCESSING_PAUSE_SECONDS = 45

# Assistant name substring -> key slot in Settings.api_keys
ASSISTANT_KEY_MARKERS = (
    ("HRMS", "HRMS"),
    ("Hospitality", "Hospitality"),
)
DEFAULT_KEY_SLOT = "default"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or unusable."""


def mask_key(key: Optional[str]) -> str:
    """Mask a secret showing only the last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


@dataclass
class Settings:
    """Process configuration, loaded at startup."""
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    api_base_url: str = DEFAULT_API_BASE_URL
    default_assistant_name: str = DEFAULT_ASSISTANT_NAME
    port: int = DEFAULT_PORT
    api_keys: Dict[str, Optional[str]] = field(default_factory=dict)
    chat_timeout_seconds: float = DEFAULT_CHAT_TIMEOUT_SECONDS
    processing_pause_seconds: int = DEFAULT_PROCESSING_PAUSE_SECONDS
    debug: bool = False

    def validate(self) -> None:
        """Fail fast if the Twilio credentials are absent.

        A chat timeout that does not fit inside the processing pause is
        allowed but logged: the placeholder's own fallback would fire first.
        """
        if not self.twilio_account_sid or not self.twilio_auth_token:
            raise ConfigurationError(
                "Twilio credentials (TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN) are required. "
                "Set them in .env or as environment variables."
            )

        if self.chat_timeout_seconds >= self.processing_pause_seconds:
            logger.warning(
                f"CHAT_API_TIMEOUT_SECONDS ({self.chat_timeout_seconds:g}) is not below "
                f"PROCESSING_PAUSE_SECONDS ({self.processing_pause_seconds}); slow answers will "
                "arrive after the call has already restarted"
            )

    def get_api_key(self, assistant_name: Optional[str]) -> Optional[str]:
        """Resolve the chat API key for an assistant.

        The first marker contained in the assistant name selects its key;
        anything else falls back to the default key. Returns None when the
        selected slot is empty.
        """
        if assistant_name:
            for marker, slot in ASSISTANT_KEY_MARKERS:
                if marker in assistant_name:
                    return self.api_keys.get(slot) or None
        return self.api_keys.get(DEFAULT_KEY_SLOT) or None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER"),
        api_base_url=os.getenv("NEXT_AGI_API_BASE_URL") or DEFAULT_API_BASE_URL,
        default_assistant_name=os.getenv("DEFAULT_ASSISTANT_NAME") or DEFAULT_ASSISTANT_NAME,
        port=_env_int("PORT", DEFAULT_PORT),
        api_keys={
            "HRMS": os.getenv("NEXT_AGI_API_KEY_HRMS"),
            "Hospitality": os.getenv("NEXT_AGI_API_KEY_HOSPITALITY"),
            DEFAULT_KEY_SLOT: os.getenv("NEXT_AGI_API_KEY_DEFAULT"),
        },
        chat_timeout_seconds=_env_float("CHAT_API_TIMEOUT_SECONDS", DEFAULT_CHAT_TIMEOUT_SECONDS),
        processing_pause_seconds=_env_int("PROCESSING_PAUSE_SECONDS", DEFAULT_PROCESSING_PAUSE_SECONDS),
        debug=os.getenv("DEBUG", "false").lower() == "true",
    )
