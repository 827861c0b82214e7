"""
Shared models for the voice bridge.
Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ResponseMode(str, Enum):
    STREAMING = "streaming"
    BLOCKING = "blocking"


class ChatMessageRequest(BaseModel):
    """Body of POST {base}/chat-messages."""
    inputs: Dict[str, Any] = Field(default_factory=dict)
    query: str
    response_mode: ResponseMode = ResponseMode.STREAMING
    conversation_id: str = ""
    user: str
    files: List[Dict[str, Any]] = Field(default_factory=list)


class StreamEventType(str, Enum):
    ANSWER = "answer"
    CONVERSATION_ID = "conversation_id"
    END = "end"


@dataclass
class StreamEvent:
    """One decoded item from the chat event stream."""
    type: StreamEventType
    value: str = ""
    event: Optional[str] = None  # upstream "event" field, e.g. "message", "message_end"


@dataclass
class StreamResult:
    """Accumulated outcome of one chat stream."""
    answer: str = ""
    conversation_id: str = ""
    fragments: int = 0


@dataclass
class UtteranceTask:
    """A recognized utterance waiting for a chat round trip."""
    call_sid: str
    caller: str
    speech_result: str
    confidence: Optional[str] = None
    received_at: datetime = field(default_factory=datetime.utcnow)


class HealthResponse(BaseModel):
    status: str
    version: str
    conversations: int
    pendingTasks: int
