"""Per-conversation timer bookkeeping.

Each conversation gets one ConversationTimers holding at most one task per
TimerKind. Arming a kind always cancels the previous instance first, and the
two silence timers exclude each other, so at most one of them is pending.

A one-shot timer stops counting as armed once it fires. Its callback then
runs as an in-flight task that cancel_all() still reaches.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger("callcoach.timers")

TimerCallback = Callable[[], Awaitable[None]]


class TimerKind(str, Enum):
    WARMUP = "warmup"
    PERIODIC = "periodic"
    RESPONSE_SILENCE = "response_silence"
    REACTION_SILENCE = "reaction_silence"


_SILENCE_KINDS = (TimerKind.RESPONSE_SILENCE, TimerKind.REACTION_SILENCE)


class ConversationTimers:
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._armed: dict[TimerKind, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()

    # -- Arming ------------------------------------------------------------

    def arm_warmup(self, delay: float, callback: TimerCallback):
        self._arm_once(TimerKind.WARMUP, delay, callback)

    def arm_periodic(self, interval: float, callback: TimerCallback):
        self.cancel(TimerKind.PERIODIC)
        self._armed[TimerKind.PERIODIC] = asyncio.create_task(
            self._repeat(interval, callback),
            name=f"{TimerKind.PERIODIC.value}:{self.conversation_id}",
        )
        logger.debug(f"[{self.conversation_id}] periodic timer armed every {interval}s")

    def arm_response_silence(self, delay: float, callback: TimerCallback):
        self.cancel(TimerKind.REACTION_SILENCE)
        self._arm_once(TimerKind.RESPONSE_SILENCE, delay, callback)

    def arm_reaction_silence(self, delay: float, callback: TimerCallback):
        self.cancel(TimerKind.RESPONSE_SILENCE)
        self._arm_once(TimerKind.REACTION_SILENCE, delay, callback)

    # -- Cancelling --------------------------------------------------------

    def cancel(self, kind: TimerKind) -> bool:
        task = self._armed.pop(kind, None)
        if task is None:
            return False
        task.cancel()
        logger.debug(f"[{self.conversation_id}] {kind.value} timer cancelled")
        return True

    def cancel_silence(self):
        for kind in _SILENCE_KINDS:
            self.cancel(kind)

    def cancel_all(self):
        for kind in list(self._armed):
            self.cancel(kind)
        for task in list(self._inflight):
            if task is not asyncio.current_task():
                task.cancel()
        self._inflight.clear()

    # -- Introspection -----------------------------------------------------

    def is_armed(self, kind: TimerKind) -> bool:
        task = self._armed.get(kind)
        return task is not None and not task.done()

    @property
    def armed(self) -> set[TimerKind]:
        return {kind for kind in self._armed if self.is_armed(kind)}

    # -- Internals ---------------------------------------------------------

    def _arm_once(self, kind: TimerKind, delay: float, callback: TimerCallback):
        self.cancel(kind)
        self._armed[kind] = asyncio.create_task(
            self._fire_after(kind, delay, callback),
            name=f"{kind.value}:{self.conversation_id}",
        )
        logger.debug(f"[{self.conversation_id}] {kind.value} timer armed ({delay}s)")

    async def _fire_after(self, kind: TimerKind, delay: float, callback: TimerCallback):
        await asyncio.sleep(delay)

        me = asyncio.current_task()
        if self._armed.get(kind) is me:
            del self._armed[kind]
        self._inflight.add(me)
        logger.debug(f"[{self.conversation_id}] {kind.value} timer fired")
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.conversation_id}] {kind.value} timer callback failed: {e}", exc_info=True)
        finally:
            self._inflight.discard(me)

    async def _repeat(self, interval: float, callback: TimerCallback):
        while True:
            await asyncio.sleep(interval)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.conversation_id}] periodic timer callback failed: {e}", exc_info=True)


class TimerRegistry:
    """Every connection's ConversationTimers, grouped by conversation id.

    Ending a conversation has to stop the timers of every connection that
    touched it, not only the one that sent END_CONVERSATION.
    """

    def __init__(self):
        self._by_conversation: dict[str, set[ConversationTimers]] = {}

    def register(self, timers: ConversationTimers):
        self._by_conversation.setdefault(timers.conversation_id, set()).add(timers)

    def unregister(self, timers: ConversationTimers):
        group = self._by_conversation.get(timers.conversation_id)
        if group is None:
            return
        group.discard(timers)
        if not group:
            del self._by_conversation[timers.conversation_id]

    def cancel_conversation(self, conversation_id: str) -> int:
        group = self._by_conversation.pop(conversation_id, set())
        for timers in group:
            timers.cancel_all()
        return len(group)

    def cancel_everything(self):
        for conversation_id in list(self._by_conversation):
            self.cancel_conversation(conversation_id)
