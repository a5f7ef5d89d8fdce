"""
AI Summarizer - turns a closed chat session into a structured summary.

The LLM is asked for a JSON object. When the answer is not parseable JSON the
raw text becomes the summary content and topics are picked by word frequency,
so a usable record is still produced. Transport failures and empty answers
raise SummarizationError.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional
import json
import logging
import re

from .errors import SummarizationError
from .models import (
    ChatSession,
    Message,
    MessageType,
    SenderRole,
    Sentiment,
    SummaryResult,
    Urgency,
)
from .openrouter_client import OpenRouterClient, get_llm_client
from .utils import ensure_aware, utcnow

logger = logging.getLogger(__name__)


class SessionSummarizer:
    _MAX_TOPICS = 8
    _FALLBACK_TOPICS = 5
    _JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")
    _STOPWORDS = frozenset({
        "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do",
        "does", "did", "will", "would", "could", "should", "may", "might", "can",
        "this", "that", "these", "those", "from", "about", "there", "their", "they",
    })

    def __init__(self, llm_client: Optional[OpenRouterClient] = None, max_tokens: int = 1200):
        self.llm_client = llm_client or get_llm_client()
        self.max_tokens = max_tokens

    async def summarize(self, session: ChatSession, messages: List[Message]) -> SummaryResult:
        transcript = self._messages_to_transcript(messages)
        prompt = self._build_prompt(transcript, session, len(messages))
        response = await self.llm_client._call_llm(
            prompt=prompt,
            max_tokens=self.max_tokens,
            temperature=0.2,
            json_mode=True
        )
        result = self.parse_response(response["content"])
        result.tokens_used = response.get("tokens_used", 0)
        result.model = response.get("model")
        logger.info(
            f"Summarized session {session.session_id}: "
            f"{len(messages)} messages, {result.tokens_used} tokens"
        )
        return result

    @staticmethod
    def _speaker_name(msg: Message) -> str:
        if msg.sender_role == SenderRole.BOT:
            return "Bot"
        if msg.sender_role == SenderRole.SYSTEM:
            return "System"
        if msg.user_name:
            return msg.user_name
        if msg.sender_role == SenderRole.GROUP_MEMBER:
            return "Group Member"
        return "User"

    @classmethod
    def _messages_to_transcript(cls, messages: List[Message]) -> str:
        lines: List[str] = []
        for msg in sorted(messages, key=lambda m: (ensure_aware(m.timestamp), m.id)):
            time_label = ensure_aware(msg.timestamp).strftime("%H:%M:%S")
            speaker = cls._speaker_name(msg)
            text = " ".join(msg.message.split())
            if msg.message_type == MessageType.TEXT:
                lines.append(f"[{time_label}] {speaker}: {text}")
            else:
                lines.append(f"[{time_label}] {speaker}: [{msg.message_type.value.upper()}] {text}")
        return "\n".join(lines)

    @staticmethod
    def _format_duration(start: datetime, end: Optional[datetime]) -> str:
        ongoing = end is None
        end = end or utcnow()
        total_minutes = int((ensure_aware(end) - ensure_aware(start)).total_seconds() // 60)
        hours, minutes = divmod(max(total_minutes, 0), 60)
        label = f"{hours}h {minutes}m" if hours else f"{minutes} minutes"
        return f"{label} (ongoing)" if ongoing else label

    @classmethod
    def _build_prompt(cls, transcript: str, session: ChatSession, message_count: int) -> str:
        room_type = session.room_type.value if session.room_type else "unknown"
        return (
            "You analyze and summarize LINE chat conversations.\n\n"
            "CONVERSATION DETAILS:\n"
            f"- Session ID: {session.session_id}\n"
            f"- Room: {session.room_name or session.room_id} ({room_type})\n"
            f"- Duration: {cls._format_duration(session.start_time, session.end_time)}\n"
            f"- Total Messages: {message_count}\n\n"
            f"CONVERSATION:\n{transcript}\n\n"
            "Respond with a single JSON object and nothing else:\n"
            "{\n"
            '  "summary": "2-3 paragraph summary: main topics, decisions, outcomes",\n'
            '  "key_topics": ["topic1", "topic2"],\n'
            '  "sentiment": "positive|neutral|negative",\n'
            '  "urgency": "low|medium|high",\n'
            '  "category": "general category of the conversation",\n'
            '  "action_items": ["action item 1"]\n'
            "}\n\n"
            "Rules:\n"
            "- Be objective and factual; do not invent details absent from the conversation.\n"
            "- key_topics ordered from most to least important, at most 8.\n"
            "- action_items empty when nothing actionable was said.\n"
            "- Write the summary in the main language of the conversation.\n"
        )

    @staticmethod
    def _clean_list(value: Any, limit: Optional[int] = None) -> List[str]:
        if not isinstance(value, list):
            return []
        items: List[str] = []
        for item in value:
            text = " ".join(str(item).split()) if item is not None else ""
            if text and text not in items:
                items.append(text)
        return items[:limit] if limit else items

    @staticmethod
    def _coerce_enum(enum_cls, value: Any, default):
        try:
            return enum_cls(str(value).strip().lower())
        except ValueError:
            return default

    @classmethod
    def _extract_topics_from_text(cls, text: str) -> List[str]:
        words = re.findall(r"[^\W\d_]{4,}", text.lower())
        counts = Counter(w for w in words if w not in cls._STOPWORDS)
        return [word for word, _ in counts.most_common(cls._FALLBACK_TOPICS)]

    @classmethod
    def parse_response(cls, text: str) -> SummaryResult:
        raw = (text or "").strip()
        if not raw:
            raise SummarizationError("LLM returned an empty summary")

        parsed: Optional[Dict[str, Any]] = None
        match = cls._JSON_BLOCK_RE.search(raw)
        if match:
            try:
                candidate = json.loads(match.group(0))
                if isinstance(candidate, dict):
                    parsed = candidate
            except json.JSONDecodeError:
                logger.warning("Could not parse summary response as JSON, using plain text")

        if parsed is None:
            return SummaryResult(
                content=raw,
                key_topics=cls._extract_topics_from_text(raw),
            )

        content = str(parsed.get("summary") or "").strip()
        if not content:
            raise SummarizationError("LLM summary JSON has no summary text")

        category = parsed.get("category")
        return SummaryResult(
            content=content,
            key_topics=cls._clean_list(parsed.get("key_topics"), limit=cls._MAX_TOPICS),
            sentiment=cls._coerce_enum(Sentiment, parsed.get("sentiment"), Sentiment.NEUTRAL),
            urgency=cls._coerce_enum(Urgency, parsed.get("urgency"), Urgency.LOW),
            category=str(category).strip() if category else None,
            action_items=cls._clean_list(parsed.get("action_items")),
        )
