"""
Coaching orchestrator: one per WebSocket connection.

Wires inbound events to the conversation state machine and its timers, and
calls the tip generator at the right moments:

  - warmup timer      -> greeting tip, then the periodic (auto) cadence
  - periodic timer    -> auto tip every N seconds, whatever the coaching state
  - response silence  -> agent finished, start listening for the customer
  - reaction silence  -> customer finished (or never answered), contextual tip
  - REQUEST_NEXT_TIP  -> explicit contextual tip, state machine untouched

All tip generation for one conversation goes through that conversation's
generation lock, so two tips are never produced for it at the same time.
"""

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

from .config import CoachingTimings
from .conversation import CoachingEvent, Conversation
from .models import (
    CoachingState,
    InvalidPayload,
    NextTipRequest,
    Recommendation,
    TranscriptSegment,
    now_ms,
    require_field,
)
from .store import CoachingStore
from .timers import ConversationTimers
from .tip_engine import TipGenerator

logger = logging.getLogger("callcoach.coaching")

SendFn = Callable[[dict], Awaitable[Any]]

# Failure codes for handler errors that are not payload problems
_FAILURE_CODES = {"START_CONVERSATION": "START_ERROR"}


class CoachingOrchestrator:
    def __init__(
        self,
        store: CoachingStore,
        tips: TipGenerator,
        send: SendFn,
        timings: CoachingTimings | None = None,
    ):
        self.store = store
        self.tips = tips
        self._send = send
        self.timings = timings or CoachingTimings()

        self._timers: dict[str, ConversationTimers] = {}
        self._tasks: set[asyncio.Task] = set()

        self._handlers = {
            "START_CONVERSATION": self.start_conversation,
            "TRANSCRIPT": self.handle_transcript,
            "OPTION_SELECTED": self.select_option,
            "REQUEST_NEXT_TIP": self.request_next_tip,
            "END_CONVERSATION": self.end_conversation,
            "PING": self.ping,
        }

    # -- Client communication ------------------------------------------------

    async def send(self, event_type: str, payload: dict):
        try:
            await self._send({"type": event_type, "payload": payload})
        except Exception as e:
            logger.warning(f"send failed ({event_type}): {e}")

    async def send_error(self, message: str, code: str, conversation_id: str | None = None):
        payload = {"message": message, "code": code, "timestamp": now_ms()}
        if conversation_id:
            payload["conversationId"] = conversation_id
        await self.send("ERROR", payload)

    # -- Dispatch ----------------------------------------------------------

    async def handle_message(self, message: dict):
        """Route one decoded client frame. Never raises."""
        msg_type = message.get("type") if isinstance(message, dict) else None
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning(f"Unknown message type: {msg_type!r}")
            await self.send_error(f"Unknown message type: {msg_type}", "INVALID_MESSAGE")
            return

        payload = message.get("payload") or {}
        if not isinstance(payload, dict):
            logger.warning(f"Invalid {msg_type} payload: not an object")
            await self.send_error(f"Invalid {msg_type} payload", "INVALID_MESSAGE")
            return
        try:
            await handler(payload)
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid {msg_type} payload: {e}")
            await self.send_error(f"Invalid {msg_type} payload: {e}", "INVALID_MESSAGE", self._conversation_id_of(payload))
        except Exception as e:
            logger.error(f"Error processing {msg_type}: {e}", exc_info=True)
            code = _FAILURE_CODES.get(msg_type)
            if code:
                await self.send_error(f"Failed to process {msg_type}", code, self._conversation_id_of(payload))

    @staticmethod
    def _conversation_id_of(payload) -> str | None:
        if isinstance(payload, dict) and isinstance(payload.get("conversationId"), str):
            return payload["conversationId"]
        return None

    def timers_for(self, conversation_id: str) -> ConversationTimers:
        timers = self._timers.get(conversation_id)
        if timers is None:
            timers = self._timers[conversation_id] = ConversationTimers(conversation_id)
            self.store.timers.register(timers)
        return timers

    def _live_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self.store.conversations.get(conversation_id)
        if conversation is None:
            logger.warning(f"Conversation {conversation_id} not found")
            return None
        if conversation.ended:
            logger.info(f"Conversation {conversation_id} already ended - skipping")
            return None
        return conversation

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- START_CONVERSATION ------------------------------------------------

    async def start_conversation(self, payload: dict) -> str:
        agent_id = str(require_field(payload, "agentId"))
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise InvalidPayload("metadata must be an object")

        conversation = self.store.conversations.start(agent_id, metadata)
        cid = conversation.id

        await self.send("CONVERSATION_STARTED", {"conversationId": cid, "timestamp": now_ms()})

        self.timers_for(cid).arm_warmup(self.timings.warmup, lambda: self._run_greeting(cid))
        logger.info(f"[{cid}] warmup armed ({self.timings.warmup:.0f}s)")
        return cid

    async def _run_greeting(self, cid: str):
        conversation = self._live_conversation(cid)
        if conversation is None:
            return

        async with conversation.generation_lock:
            try:
                tip = await self.tips.generate_greeting_tip(cid, self.store.transcripts.history(cid))
            except Exception as e:
                logger.error(f"[{cid}] Error generating greeting: {e}")
                await self.send_error("Failed to generate greeting", "GREETING_ERROR", cid)
                return
            if not await self._deliver_auto_tip(conversation, tip):
                return

        logger.info(f"[{cid}] Warmup complete - greeting sent, auto tips every {self.timings.auto_tip_interval:.0f}s")
        self.timers_for(cid).arm_periodic(self.timings.auto_tip_interval, lambda: self._run_periodic(cid))

    async def _run_periodic(self, cid: str):
        conversation = self._live_conversation(cid)
        if conversation is None:
            return

        async with conversation.generation_lock:
            try:
                tip = await self.tips.generate_periodic_tip(cid, self.store.transcripts.history(cid))
            except Exception as e:
                logger.error(f"[{cid}] Error generating periodic tip: {e}")
                await self.send_error("Failed to generate periodic tip", "PERIODIC_TIP_ERROR", cid)
                return
            if await self._deliver_auto_tip(conversation, tip):
                conversation.last_analysis_time = now_ms()
                logger.info(f"[{cid}] Periodic tip sent: {tip.heading}")

    async def _deliver_auto_tip(self, conversation: Conversation, tip: Recommendation) -> bool:
        if conversation.ended:
            logger.info(f"[{conversation.id}] ended while generating - dropping tip {tip.recommendation_id}")
            return False
        self.store.recommendations.store(tip)
        conversation.apply(CoachingEvent.TIP_SENT)
        await self.send("AI_TIP", tip.to_dict())
        return True

    # -- TRANSCRIPT --------------------------------------------------------

    async def handle_transcript(self, payload: dict):
        if not payload.get("isFinal"):
            return

        cid = str(require_field(payload, "conversationId"))
        segment = TranscriptSegment.from_payload(payload)

        # Always stored, whatever the coaching state
        if not self.store.transcripts.append(cid, segment):
            return

        conversation = self.store.conversations.get(cid)
        if conversation is None or conversation.ended or not conversation.expects(segment.speaker):
            return

        timers = self.timers_for(cid)
        if conversation.state is CoachingState.CAPTURING_AGENT_RESPONSE:
            logger.info(f"[{cid}] Capturing agent response ({len(segment.text)} chars)")
            conversation.append_agent_response(segment.text)
            timers.arm_response_silence(self.timings.response_silence, lambda: self._on_agent_silence(cid))
        else:
            logger.info(f"[{cid}] Capturing customer reaction ({len(segment.text)} chars)")
            conversation.append_customer_reaction(segment.text)
            timers.arm_reaction_silence(self.timings.reaction_silence, lambda: self._on_reaction_silence(cid))

    async def _on_agent_silence(self, cid: str):
        conversation = self._live_conversation(cid)
        if conversation is None:
            return
        if not conversation.apply(CoachingEvent.AGENT_SILENCE):
            return

        logger.info(
            f"[{cid}] Agent finished speaking - listening for customer reaction "
            f"(captured={conversation.captured_response[:100]!r})"
        )
        self.timers_for(cid).arm_reaction_silence(
            self.timings.reaction_fallback, lambda: self._on_reaction_silence(cid)
        )

    async def _on_reaction_silence(self, cid: str):
        conversation = self._live_conversation(cid)
        if conversation is None:
            return

        if conversation.customer_reaction:
            logger.info(
                f"[{cid}] Customer finished responding - generating next tip "
                f"(reaction={conversation.customer_reaction[:100]!r})"
            )
        else:
            logger.warning(f"[{cid}] Customer reaction timeout - generating tip anyway")
        await self.generate_contextual_next_tip(cid)

    async def generate_contextual_next_tip(self, cid: str):
        conversation = self._live_conversation(cid)
        if conversation is None:
            return
        if not conversation.begin_generation():
            logger.warning(f"[{cid}] Not ready for a contextual tip in state {conversation.state.value}")
            return

        request = conversation.build_next_tip_request()
        logger.info(
            f"[{cid}] Generating contextual tip with captured context "
            f"(agent_response={request.agent_response is not None}, "
            f"customer_reaction={request.customer_reaction is not None}, "
            f"segments={len(request.transcript_history)})"
        )

        async with conversation.generation_lock:
            try:
                tip = await self.tips.generate_contextual_tip(request)
            except Exception as e:
                logger.error(f"[{cid}] Error generating contextual tip: {e}")
                conversation.fail_generation()
                await self.send_error("Failed to generate next tip", "CONTEXTUAL_TIP_ERROR", cid)
                return

            self.store.recommendations.store(tip)
            conversation.complete_generation()
            await self.send("AI_TIP", tip.to_dict())

        started = conversation.last_script_timestamp or now_ms()
        logger.info(f"[{cid}] Contextual tip sent: {tip.heading} (response_time={now_ms() - started}ms)")

    # -- OPTION_SELECTED ---------------------------------------------------

    async def select_option(self, payload: dict):
        recommendation_id = str(require_field(payload, "recommendationId"))
        number = payload.get("selectedOption")
        if isinstance(number, str) and number.isdigit():
            number = int(number)
        logger.info(f"Option selected: recommendation={recommendation_id}, option={number}")

        tip = self.store.recommendations.get(recommendation_id)
        if tip is None:
            logger.warning(f"Recommendation not found: {recommendation_id}")
            return

        option = tip.option(number)
        if option is None:
            logger.warning(
                f"Invalid option number {number!r} for recommendation {recommendation_id} "
                f"({len(tip.options)} options)"
            )
            return

        cid = tip.conversation_id
        conversation = self._live_conversation(cid)
        if conversation is None:
            return

        # A new selection opens a fresh capture window
        self.timers_for(cid).cancel_silence()
        conversation.select_option(recommendation_id, number, option.script, option.label)
        logger.info(
            f"[{cid}] Script selection stored - listening for agent response "
            f"(type={option.label}, script={option.script[:50]!r})"
        )

    # -- REQUEST_NEXT_TIP --------------------------------------------------

    async def request_next_tip(self, payload: dict):
        request = NextTipRequest.from_payload(payload)
        self._spawn(self._run_requested_tip(request))

    async def _run_requested_tip(self, request: NextTipRequest):
        cid = request.conversation_id
        logger.info(
            f"[{cid}] Generating requested next tip "
            f"(option={request.selected_option}, "
            f"agent_response={request.agent_response is not None}, "
            f"customer_reaction={request.customer_reaction is not None})"
        )

        conversation = self.store.conversations.get(cid)
        lock = conversation.generation_lock if conversation is not None else contextlib.nullcontext()
        async with lock:
            try:
                tip = await self.tips.generate_contextual_tip(request)
            except Exception as e:
                logger.error(f"[{cid}] Error generating requested tip: {e}")
                await self.send_error("Failed to generate next tip", "CONTEXTUAL_TIP_ERROR", cid)
                return

            self.store.recommendations.store(tip)
            await self.send("AI_TIP", tip.to_dict())
        logger.info(f"[{cid}] Requested tip sent: {tip.heading}")

    # -- END_CONVERSATION / PING -------------------------------------------

    async def end_conversation(self, payload: dict):
        cid = str(require_field(payload, "conversationId"))

        # Timers armed by other connections for this conversation stop too
        self._timers.pop(cid, None)
        self.store.timers.cancel_conversation(cid)

        if self.store.conversations.end(cid, self.timings.retention) is None:
            return
        await self.send("CONVERSATION_ENDED", {"conversationId": cid, "timestamp": now_ms()})

    async def ping(self, payload: dict):
        await self.send("PONG", {"timestamp": now_ms()})

    # -- Teardown ----------------------------------------------------------

    def close(self):
        """Cancel everything this connection scheduled.

        Conversations stay live: only END_CONVERSATION ends one, so a client
        that reconnects keeps coaching where it left off.
        """
        for timers in self._timers.values():
            timers.cancel_all()
            self.store.timers.unregister(timers)
        cancelled = len(self._timers)
        self._timers.clear()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        logger.info(f"Orchestrator closed (timers cancelled for {cancelled} conversation(s))")
