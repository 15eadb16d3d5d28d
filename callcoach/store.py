"""In-memory stores shared by every connection in the process.

CoachingStore bundles them, together with the shared timer registry, so the
server can create one at startup, hand it to each orchestrator, and close it
at shutdown.
"""

import asyncio
import logging
from collections import OrderedDict

from .config import CONVERSATION_RETENTION_SECONDS, RECOMMENDATION_LIMIT
from .conversation import Conversation
from .models import Recommendation, TranscriptSegment
from .timers import TimerRegistry

logger = logging.getLogger("callcoach.store")


class ConversationStore:
    """Registry of live and recently ended conversations."""

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    def start(self, agent_id: str, metadata: dict | None = None) -> Conversation:
        conversation = Conversation(agent_id=agent_id, metadata=dict(metadata or {}))
        self._conversations[conversation.id] = conversation
        logger.info(f"Conversation started: {conversation.id} (agent={agent_id})")
        return conversation

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def active(self) -> list[Conversation]:
        return [c for c in self._conversations.values() if not c.ended]

    def __len__(self):
        return len(self._conversations)

    def end(self, conversation_id: str, retention: float = CONVERSATION_RETENTION_SECONDS) -> Conversation | None:
        """Mark a conversation ended and schedule its removal after `retention` seconds."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.warning(f"End requested for unknown conversation {conversation_id}")
            return None
        if conversation.ended:
            return conversation

        conversation.end()
        logger.info(
            f"Conversation ended: {conversation_id} "
            f"(duration={conversation.end_time - conversation.start_time}ms, "
            f"segments={len(conversation.transcript_history)})"
        )
        loop = asyncio.get_running_loop()
        self._evictions[conversation_id] = loop.call_later(retention, self._evict, conversation_id)
        return conversation

    def _evict(self, conversation_id: str):
        self._evictions.pop(conversation_id, None)
        if self._conversations.pop(conversation_id, None) is not None:
            logger.info(f"Conversation {conversation_id} cleaned up from memory")

    def close(self):
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self._conversations.clear()


class TranscriptStore:
    """Append-only, bounded speech history per conversation."""

    def __init__(self, conversations: ConversationStore):
        self._conversations = conversations

    def append(self, conversation_id: str, segment: TranscriptSegment) -> bool:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.warning(f"Transcript dropped - conversation {conversation_id} not found")
            return False
        conversation.add_segment(segment)
        return True

    def history(self, conversation_id: str) -> list[TranscriptSegment]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return []
        return conversation.history()


class RecommendationStore:
    """Generated tips keyed by recommendation id, oldest evicted past the cap."""

    def __init__(self, limit: int = RECOMMENDATION_LIMIT):
        self.limit = limit
        self._tips: OrderedDict[str, Recommendation] = OrderedDict()

    def store(self, tip: Recommendation):
        # Re-storing an id replaces the tip but keeps its age
        self._tips[tip.recommendation_id] = tip
        logger.info(f"Recommendation stored: {tip.recommendation_id} (conversation={tip.conversation_id})")
        while len(self._tips) > self.limit:
            evicted, _ = self._tips.popitem(last=False)
            logger.debug(f"Recommendation evicted: {evicted}")

    def get(self, recommendation_id: str) -> Recommendation | None:
        return self._tips.get(recommendation_id)

    def __len__(self):
        return len(self._tips)

    def clear(self):
        self._tips.clear()


class CoachingStore:
    def __init__(self, recommendation_limit: int = RECOMMENDATION_LIMIT):
        self.conversations = ConversationStore()
        self.transcripts = TranscriptStore(self.conversations)
        self.recommendations = RecommendationStore(recommendation_limit)
        self.timers = TimerRegistry()

    def close(self):
        self.timers.cancel_everything()
        self.conversations.close()
        self.recommendations.clear()
        logger.info("Coaching store closed")
