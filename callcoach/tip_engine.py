"""
OpenAI-backed tip generation.

TipEngine turns transcript context into a Recommendation. Every failure mode
(provider error, empty completion, unparseable or incomplete JSON) surfaces as
GenerationError so the orchestrator can roll back and notify the client.
"""

import json
import logging
import re
import uuid
from typing import Protocol

from openai import AsyncOpenAI

from .config import OPENAI_API_KEY, OPENAI_MODEL
from .models import (
    ConversationStage,
    DialogueOption,
    NextTipRequest,
    Recommendation,
    TranscriptSegment,
    now_ms,
)

logger = logging.getLogger("callcoach.tips")


class GenerationError(Exception):
    """The provider failed or returned output that is not a usable tip."""


class TipGenerator(Protocol):
    async def generate_greeting_tip(self, conversation_id: str, history: list[TranscriptSegment]) -> Recommendation: ...

    async def generate_periodic_tip(self, conversation_id: str, history: list[TranscriptSegment]) -> Recommendation: ...

    async def generate_contextual_tip(self, request: NextTipRequest) -> Recommendation: ...


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

TIP_JSON_FORMAT = """Return ONLY valid JSON:
{
  "heading": "2-word max heading",
  "stage": "GREETING" | "DISCOVERY" | "VALUE_PROP" | "OBJECTION_HANDLING" | "NEXT_STEPS" | "CONVERSION",
  "context": "one sentence on why this move fits right now",
  "options": [
    { "label": "Minimal", "script": "Exact words to say" },
    { "label": "Explanative", "script": "Exact words to say" },
    { "label": "Contextual", "script": "Exact words to say" }
  ]
}"""

GREETING_SYSTEM_PROMPT = f"""You are a live sales-call coach whispering to an outbound sales agent.
The call has just started. Help the agent open warmly, state who they are, and earn the right to ask questions.

RULES:
1. Scripts are spoken aloud: short, natural, under 30 words each.
2. Do not push for a commitment in the opener.
3. Use the stage "GREETING".

{TIP_JSON_FORMAT}"""

PERIODIC_SYSTEM_PROMPT = f"""You are a live sales-call coach whispering to a sales agent mid-call.
Read the recent conversation and suggest the single best next move.

RULES:
1. React to what the CUSTOMER said most recently.
2. If the customer is non-engaging ("not now", "busy"), diagnose before pivoting.
3. If the customer asks questions (price, features, timing), treat them as engaged and move toward a callback or next step.
4. Scripts are spoken aloud: short, natural, under 30 words each.

{TIP_JSON_FORMAT}"""

CONTEXTUAL_SYSTEM_PROMPT = f"""You are a live sales-call coach whispering to a sales agent mid-call.
The agent picked one of your suggested scripts. You are told what they actually said and how the customer reacted.

RULES:
1. Build on what ACTUALLY happened, not on what was suggested.
2. Read the customer's reaction: interested, skeptical, ready to move forward, or pushing back.
3. Stop pushing after two firm "no"s and offer a graceful exit (email, later callback).
4. Never start a script with "I understand" or "I see".
5. Scripts are spoken aloud: short, natural, under 30 words each.

{TIP_JSON_FORMAT}"""

STAGE_ALIASES = {
    "REBUTTAL": ConversationStage.OBJECTION_HANDLING,
    "OBJECTION": ConversationStage.OBJECTION_HANDLING,
    "CLOSING": ConversationStage.NEXT_STEPS,
    "CLOSE": ConversationStage.NEXT_STEPS,
}

_FENCE_RE = re.compile(r"```(?:json)?\s*")


def _render(segments: list[TranscriptSegment]) -> str:
    return "\n".join(f"{s.speaker.value.upper()}: {s.text}" for s in segments)


def clean_json_response(content: str) -> str:
    """Strip markdown fences and anything outside the outermost braces."""
    cleaned = _FENCE_RE.sub("", content)
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first:last + 1]
    return cleaned.strip()


def normalize_stage(value, default: ConversationStage) -> ConversationStage:
    key = str(value or "").strip().upper().replace(" ", "_")
    if key in STAGE_ALIASES:
        return STAGE_ALIASES[key]
    try:
        return ConversationStage(key)
    except ValueError:
        return default


def parse_tip(
    content: str | None,
    conversation_id: str,
    default_stage: ConversationStage = ConversationStage.DISCOVERY,
) -> Recommendation:
    """Validate a raw completion and build a Recommendation from it."""
    if not content or not content.strip():
        raise GenerationError("No response from OpenAI")

    try:
        parsed = json.loads(clean_json_response(content))
    except json.JSONDecodeError as e:
        raise GenerationError(f"Failed to parse AI response: {e}") from e
    if not isinstance(parsed, dict):
        raise GenerationError("AI response is not a JSON object")

    raw_options = parsed.get("options")
    if not isinstance(raw_options, list) or not raw_options:
        raise GenerationError("AI response missing valid options array")

    options = []
    for raw in raw_options:
        if not isinstance(raw, dict) or not raw.get("label") or not raw.get("script"):
            raise GenerationError("AI response has option missing label or script")
        options.append(DialogueOption(label=str(raw["label"]).strip(), script=str(raw["script"]).strip()))

    return Recommendation(
        recommendation_id=str(uuid.uuid4()),
        conversation_id=conversation_id,
        stage=normalize_stage(parsed.get("stage"), default_stage),
        heading=str(parsed.get("heading") or "").strip(),
        context=str(parsed.get("context") or "").strip(),
        options=tuple(options),
        timestamp=now_ms(),
    )


class TipEngine:
    """Generates greeting, periodic and contextual tips with the OpenAI chat API."""

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_MODEL, client: AsyncOpenAI | None = None):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def generate_greeting_tip(self, conversation_id: str, history: list[TranscriptSegment]) -> Recommendation:
        logger.info(f"Generating greeting tip for {conversation_id} ({len(history)} segments)")
        summary = _render(history[-5:]) or "No conversation yet - this is the very beginning"
        user_message = (
            "The agent is starting a sales call. Based on the conversation so far, generate a greeting recommendation.\n\n"
            f"Recent conversation:\n---\n{summary}\n---\n\n"
            "Generate a 2-word heading and up to 3 greeting options that build rapport, "
            "set a consultative tone and open the door for discovery."
        )
        content = await self._complete(GREETING_SYSTEM_PROMPT, user_message, temperature=0.7, max_tokens=500)
        return self._parse(content, conversation_id, ConversationStage.GREETING, "greeting")

    async def generate_periodic_tip(self, conversation_id: str, history: list[TranscriptSegment]) -> Recommendation:
        logger.info(f"Generating periodic tip for {conversation_id} ({len(history)} segments)")
        summary = _render(history[-10:]) or "No conversation captured yet"
        user_message = (
            "Analyze this sales conversation and provide the next coaching recommendation.\n\n"
            f"Recent conversation:\n---\n{summary}\n---\n\n"
            "Generate a 2-word heading and up to 3 options that move the conversation forward naturally."
        )
        content = await self._complete(PERIODIC_SYSTEM_PROMPT, user_message, temperature=0.7, max_tokens=500)
        return self._parse(content, conversation_id, ConversationStage.DISCOVERY, "periodic")

    async def generate_contextual_tip(self, request: NextTipRequest) -> Recommendation:
        logger.info(
            f"Generating contextual tip for {request.conversation_id} "
            f"(option={request.selected_option}, "
            f"agent_response={request.agent_response is not None}, "
            f"customer_reaction={request.customer_reaction is not None}, "
            f"segments={len(request.transcript_history)})"
        )
        content = await self._complete(
            CONTEXTUAL_SYSTEM_PROMPT, self.build_contextual_prompt(request), temperature=0.6, max_tokens=600
        )
        return self._parse(content, request.conversation_id, ConversationStage.DISCOVERY, "contextual")

    @staticmethod
    def build_contextual_prompt(request: NextTipRequest) -> str:
        summary = _render(request.transcript_history[-10:]) or "No conversation captured yet"

        analysis = ""
        if request.agent_response:
            analysis += (
                "\n## What the agent actually said\n"
                f'Suggested: "{request.selected_script}"\n'
                f'Agent said: "{request.agent_response.text}"\n'
                "Did the agent follow the suggestion, adapt it, and did it land?\n"
            )
        elif request.selected_script:
            analysis += f'\n## Suggested script\n"{request.selected_script}"\nThe agent has not been heard saying it.\n'

        if request.customer_reaction:
            analysis += (
                "\n## Customer reaction\n"
                f'Customer responded: "{request.customer_reaction.text}"\n'
                "What does this reveal about the customer's mindset?\n"
            )
        else:
            analysis += "\n## Customer reaction\nThe customer has not responded yet.\n"

        return (
            "You are analyzing a sales conversation in real time. The agent selected a coaching option "
            "and we captured what happened next.\n\n"
            f"## Conversation history (last 10 exchanges)\n{summary}\n"
            f"{analysis}\n"
            "## Your task\n"
            "Generate the next recommendation: acknowledge what actually happened, build on the customer's "
            "real reaction, and move the conversation forward. Provide Minimal, Explanative and Contextual options."
        )

    async def _complete(self, system_prompt: str, user_message: str, temperature: float, max_tokens: int) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            logger.error(f"OpenAI tip request failed: {e}", exc_info=True)
            raise GenerationError(f"OpenAI request failed: {e}") from e

        if not response.choices:
            raise GenerationError("No response from OpenAI")
        return response.choices[0].message.content or ""

    def _parse(self, content: str, conversation_id: str, default_stage: ConversationStage, kind: str) -> Recommendation:
        try:
            tip = parse_tip(content, conversation_id, default_stage)
        except GenerationError as e:
            logger.error(f"Failed to parse {kind} tip response: {e} (raw={content[:300]!r})")
            raise
        logger.info(
            f"Parsed {kind} tip '{tip.heading}' with {len(tip.options)} option(s) "
            f"(script lengths={[len(o.script) for o in tip.options]})"
        )
        return tip
