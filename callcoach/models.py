"""Data models shared by the stores, the state machine and the wire protocol.

Wire payloads use camelCase keys and integer millisecond timestamps.
"""

import time
from dataclasses import dataclass, field
from enum import Enum

from .config import REQUEST_HISTORY_WINDOW


def now_ms() -> int:
    return int(time.time() * 1000)


class InvalidPayload(ValueError):
    """An inbound payload is missing fields or carries out-of-range values."""


class Speaker(str, Enum):
    AGENT = "agent"
    CALLER = "caller"


class ConversationStage(str, Enum):
    GREETING = "GREETING"
    DISCOVERY = "DISCOVERY"
    VALUE_PROP = "VALUE_PROP"
    OBJECTION_HANDLING = "OBJECTION_HANDLING"
    NEXT_STEPS = "NEXT_STEPS"
    CONVERSION = "CONVERSION"


class CoachingState(str, Enum):
    IDLE = "IDLE"
    DISPLAYING_TIP = "DISPLAYING_TIP"
    CAPTURING_AGENT_RESPONSE = "CAPTURING_AGENT_RESPONSE"
    CAPTURING_CUSTOMER_REACTION = "CAPTURING_CUSTOMER_REACTION"
    GENERATING_NEXT = "GENERATING_NEXT"


def require_field(payload: dict, key: str):
    if not isinstance(payload, dict):
        raise InvalidPayload("payload must be an object")
    value = payload.get(key)
    if value is None or value == "":
        raise InvalidPayload(f"missing '{key}'")
    return value


def _parse_timestamp(value) -> int:
    if value is None or value == "":
        return now_ms()
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidPayload(f"timestamp must be epoch milliseconds, got {value!r}") from None


def _parse_speaker(value) -> Speaker:
    try:
        return Speaker(value)
    except ValueError:
        raise InvalidPayload(f"unknown speaker '{value}'") from None


@dataclass(frozen=True)
class TranscriptSegment:
    """One final piece of speech. Interim transcripts never become segments."""

    speaker: Speaker
    text: str
    timestamp: int
    confidence: float = 1.0

    @classmethod
    def from_payload(cls, payload: dict) -> "TranscriptSegment":
        text = require_field(payload, "text")
        confidence = float(payload.get("confidence", 1.0))
        if not 0.0 <= confidence <= 1.0:
            raise InvalidPayload(f"confidence {confidence} outside 0..1")
        return cls(
            speaker=_parse_speaker(require_field(payload, "speaker")),
            text=str(text),
            timestamp=_parse_timestamp(payload.get("timestamp")),
            confidence=confidence,
        )

    def to_dict(self) -> dict:
        return {
            "speaker": self.speaker.value,
            "text": self.text,
            "timestamp": self.timestamp,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class DialogueOption:
    label: str
    script: str

    def to_dict(self) -> dict:
        return {"label": self.label, "script": self.script}


@dataclass(frozen=True)
class Recommendation:
    """A generated coaching tip with one or more phrasing options."""

    recommendation_id: str
    conversation_id: str
    stage: ConversationStage
    heading: str
    context: str
    options: tuple
    timestamp: int

    def option(self, number: int) -> DialogueOption | None:
        """Look up a 1-based option number; None when out of range."""
        if not isinstance(number, int) or isinstance(number, bool):
            return None
        if number < 1 or number > len(self.options):
            return None
        return self.options[number - 1]

    def to_dict(self) -> dict:
        return {
            "recommendationId": self.recommendation_id,
            "conversationId": self.conversation_id,
            "stage": self.stage.value,
            "heading": self.heading,
            "context": self.context,
            "options": [o.to_dict() for o in self.options],
            "timestamp": self.timestamp,
        }


@dataclass
class NextTipRequest:
    """Everything the contextual generator needs to suggest the next move."""

    conversation_id: str
    selected_option: int
    selected_script: str
    selected_recommendation_id: str = ""
    agent_response: TranscriptSegment | None = None
    customer_reaction: TranscriptSegment | None = None
    transcript_history: list = field(default_factory=list)
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_payload(cls, payload: dict) -> "NextTipRequest":
        conversation_id = str(require_field(payload, "conversationId"))
        try:
            selected_option = int(payload.get("selectedOption", 1))
        except (TypeError, ValueError, OverflowError):
            raise InvalidPayload("selectedOption must be a number") from None

        agent_response = payload.get("agentResponse")
        customer_reaction = payload.get("customerReaction")
        history = payload.get("transcriptHistory") or []
        if not isinstance(history, list):
            raise InvalidPayload("transcriptHistory must be a list")

        return cls(
            conversation_id=conversation_id,
            selected_option=selected_option,
            selected_script=str(payload.get("selectedScript") or ""),
            selected_recommendation_id=str(payload.get("selectedRecommendationId") or ""),
            agent_response=TranscriptSegment.from_payload(agent_response) if agent_response else None,
            customer_reaction=TranscriptSegment.from_payload(customer_reaction) if customer_reaction else None,
            transcript_history=[
                TranscriptSegment.from_payload(s) for s in history[-REQUEST_HISTORY_WINDOW:]
            ],
            timestamp=_parse_timestamp(payload.get("timestamp")),
        )
