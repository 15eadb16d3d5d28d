"""Conversation record and the event-driven coaching state machine.

A conversation moves through:

    IDLE -> DISPLAYING_TIP -> CAPTURING_AGENT_RESPONSE
         -> CAPTURING_CUSTOMER_REACTION -> GENERATING_NEXT -> DISPLAYING_TIP ...

Every (state, event) pair has an entry in TRANSITIONS, either a move or an
explicit stay, so an unhandled combination shows up as a KeyError in tests
rather than a silent no-op at runtime.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from .config import TRANSCRIPT_HISTORY_LIMIT
from .models import CoachingState, NextTipRequest, Speaker, TranscriptSegment, now_ms

logger = logging.getLogger("callcoach.conversation")


class CoachingEvent(str, Enum):
    TIP_SENT = "TIP_SENT"                      # greeting or auto tip delivered
    OPTION_SELECTED = "OPTION_SELECTED"
    AGENT_SILENCE = "AGENT_SILENCE"            # response-silence timer fired
    REACTION_SILENCE = "REACTION_SILENCE"      # reaction-silence timer fired
    TIP_GENERATED = "TIP_GENERATED"            # contextual tip produced
    GENERATION_FAILED = "GENERATION_FAILED"


_S = CoachingState
_E = CoachingEvent

TRANSITIONS: dict[CoachingState, dict[CoachingEvent, CoachingState]] = {
    _S.IDLE: {
        _E.TIP_SENT: _S.DISPLAYING_TIP,
        _E.OPTION_SELECTED: _S.CAPTURING_AGENT_RESPONSE,
        _E.AGENT_SILENCE: _S.IDLE,
        _E.REACTION_SILENCE: _S.IDLE,
        _E.TIP_GENERATED: _S.IDLE,
        _E.GENERATION_FAILED: _S.IDLE,
    },
    _S.DISPLAYING_TIP: {
        _E.TIP_SENT: _S.DISPLAYING_TIP,
        _E.OPTION_SELECTED: _S.CAPTURING_AGENT_RESPONSE,
        _E.AGENT_SILENCE: _S.DISPLAYING_TIP,
        _E.REACTION_SILENCE: _S.DISPLAYING_TIP,
        _E.TIP_GENERATED: _S.DISPLAYING_TIP,
        _E.GENERATION_FAILED: _S.DISPLAYING_TIP,
    },
    _S.CAPTURING_AGENT_RESPONSE: {
        _E.TIP_SENT: _S.CAPTURING_AGENT_RESPONSE,
        _E.OPTION_SELECTED: _S.CAPTURING_AGENT_RESPONSE,
        _E.AGENT_SILENCE: _S.CAPTURING_CUSTOMER_REACTION,
        _E.REACTION_SILENCE: _S.CAPTURING_AGENT_RESPONSE,
        _E.TIP_GENERATED: _S.CAPTURING_AGENT_RESPONSE,
        _E.GENERATION_FAILED: _S.CAPTURING_AGENT_RESPONSE,
    },
    _S.CAPTURING_CUSTOMER_REACTION: {
        _E.TIP_SENT: _S.CAPTURING_CUSTOMER_REACTION,
        _E.OPTION_SELECTED: _S.CAPTURING_AGENT_RESPONSE,
        _E.AGENT_SILENCE: _S.CAPTURING_CUSTOMER_REACTION,
        _E.REACTION_SILENCE: _S.GENERATING_NEXT,
        _E.TIP_GENERATED: _S.CAPTURING_CUSTOMER_REACTION,
        _E.GENERATION_FAILED: _S.CAPTURING_CUSTOMER_REACTION,
    },
    _S.GENERATING_NEXT: {
        _E.TIP_SENT: _S.GENERATING_NEXT,
        _E.OPTION_SELECTED: _S.CAPTURING_AGENT_RESPONSE,
        _E.AGENT_SILENCE: _S.GENERATING_NEXT,
        _E.REACTION_SILENCE: _S.GENERATING_NEXT,
        _E.TIP_GENERATED: _S.DISPLAYING_TIP,
        _E.GENERATION_FAILED: _S.DISPLAYING_TIP,
    },
}


@dataclass
class Conversation:
    """One tracked sales call. Mutate only through the methods below."""

    agent_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None
    metadata: dict = field(default_factory=dict)
    transcript_history: deque = field(
        default_factory=lambda: deque(maxlen=TRANSCRIPT_HISTORY_LIMIT)
    )
    state: CoachingState = CoachingState.IDLE
    last_analysis_time: int | None = None

    # Selection context for event-driven coaching
    last_selected_recommendation_id: str = ""
    last_selected_option: int = 0
    last_selected_script: str = ""
    last_script_type: str = ""
    last_script_timestamp: int | None = None
    captured_response: str = ""
    customer_reaction: str = ""
    response_timestamp: int | None = None
    reaction_timestamp: int | None = None

    # Serializes every tip generation path for this conversation
    generation_lock: asyncio.Lock = field(
        default_factory=asyncio.Lock, repr=False, compare=False
    )

    @property
    def ended(self) -> bool:
        return self.end_time is not None

    # -- State machine -----------------------------------------------------

    def apply(self, event: CoachingEvent) -> bool:
        """Feed an event to the state machine. Returns True if the state changed."""
        new_state = TRANSITIONS[self.state][event]
        if new_state is self.state:
            logger.debug(f"[{self.id}] {event.value} ignored in {self.state.value}")
            return False
        logger.info(f"[{self.id}] {self.state.value} -> {new_state.value} ({event.value})")
        self.state = new_state
        return True

    def expects(self, speaker: Speaker) -> bool:
        """Whether a segment from this speaker belongs to the open capture window."""
        if self.state is CoachingState.CAPTURING_AGENT_RESPONSE:
            return speaker is Speaker.AGENT
        if self.state is CoachingState.CAPTURING_CUSTOMER_REACTION:
            return speaker is Speaker.CALLER
        return False

    # -- Transcript --------------------------------------------------------

    def add_segment(self, segment: TranscriptSegment):
        # deque(maxlen) drops the oldest segment on overflow
        self.transcript_history.append(segment)

    def history(self) -> list[TranscriptSegment]:
        return list(self.transcript_history)

    # -- Capture buffers ---------------------------------------------------

    def select_option(self, recommendation_id: str, option_number: int, script: str, label: str):
        self.last_selected_recommendation_id = recommendation_id
        self.last_selected_option = option_number
        self.last_selected_script = script
        self.last_script_type = label
        self.last_script_timestamp = now_ms()
        self._reset_capture()
        self.apply(CoachingEvent.OPTION_SELECTED)

    def append_agent_response(self, text: str):
        if not self.captured_response:
            self.captured_response = text
            self.response_timestamp = now_ms()
        else:
            self.captured_response += " " + text

    def append_customer_reaction(self, text: str):
        if not self.customer_reaction:
            self.customer_reaction = text
            self.reaction_timestamp = now_ms()
        else:
            self.customer_reaction += " " + text

    def _reset_capture(self):
        self.captured_response = ""
        self.customer_reaction = ""
        self.response_timestamp = None
        self.reaction_timestamp = None

    # -- Generation lifecycle ----------------------------------------------

    def begin_generation(self) -> bool:
        return self.apply(CoachingEvent.REACTION_SILENCE)

    def complete_generation(self) -> bool:
        """Close the capture cycle after a contextual tip was produced.

        Buffers are only reset when the machine was still waiting on this
        generation; a selection made meanwhile has already opened a new window.
        """
        if self.state is not CoachingState.GENERATING_NEXT:
            return False
        self._reset_capture()
        return self.apply(CoachingEvent.TIP_GENERATED)

    def fail_generation(self) -> bool:
        return self.apply(CoachingEvent.GENERATION_FAILED)

    def build_next_tip_request(self) -> NextTipRequest:
        """Snapshot the captured context for contextual generation."""
        agent_response = None
        if self.captured_response:
            agent_response = TranscriptSegment(
                speaker=Speaker.AGENT,
                text=self.captured_response,
                timestamp=self.response_timestamp or now_ms(),
            )
        customer_reaction = None
        if self.customer_reaction:
            customer_reaction = TranscriptSegment(
                speaker=Speaker.CALLER,
                text=self.customer_reaction,
                timestamp=self.reaction_timestamp or now_ms(),
            )
        return NextTipRequest(
            conversation_id=self.id,
            selected_option=self.last_selected_option or 1,
            selected_script=self.last_selected_script,
            selected_recommendation_id=self.last_selected_recommendation_id,
            agent_response=agent_response,
            customer_reaction=customer_reaction,
            transcript_history=self.history(),
        )

    def end(self):
        if self.end_time is None:
            self.end_time = now_ms()
