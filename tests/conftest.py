import asyncio
import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest

from src.errors import DuplicateMessageError, SessionConflictError, SummaryInFlightError
from src.models import (
    ChatSession,
    Message,
    Room,
    RoomType,
    SessionPolicy,
    SessionStatus,
    Summary,
    SummaryResult,
    SummaryStatus,
)
from src.openrouter_client import get_llm_client
from src.session import SessionManager, set_session_manager
from src.store import _SESSION_PATCH_COLUMNS, _SUMMARY_PATCH_COLUMNS
from src.utils import utcnow


@pytest.fixture(autouse=True)
def _stub_llm_calls(monkeypatch):
    llm_client = get_llm_client()

    async def _stub_call_llm(*_args, **_kwargs):
        return {"content": '{"summary": "summary"}', "tokens_used": 0, "model": "stub"}

    monkeypatch.setattr(llm_client, "_call_llm", _stub_call_llm, raising=True)


class InMemoryStore:
    """
    Store double with the same guarantees as the Postgres store: one active
    session per room, one processing summary per session, one message per
    LINE message id, compare-and-set status updates. Every call yields to the
    loop first so concurrent tasks interleave between calls.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self.sessions: Dict[str, ChatSession] = {}
        self.messages: List[Message] = []
        self.summaries: Dict[int, Summary] = {}
        self.failures: Dict[str, Exception] = {}
        self._message_ids = itertools.count(1)
        self._summary_ids = itertools.count(1)

    async def _step(self, name: str) -> None:
        await asyncio.sleep(0)
        if name in self.failures:
            raise self.failures[name]

    # Test helpers (sync)
    def seed_room(self, room_id: str = "room-1", room_type: RoomType = RoomType.INDIVIDUAL) -> Room:
        room = Room(room_id=room_id, owner_id="owner-1", name=f"Room {room_id}", room_type=room_type)
        self.rooms[room_id] = room
        return room

    def age_session(self, session_id: str, hours: float) -> ChatSession:
        current = self.sessions[session_id]
        aged = current.model_copy(update={"start_time": utcnow() - timedelta(hours=hours)})
        self.sessions[session_id] = aged
        return aged

    def active_sessions(self, room_id: str) -> List[ChatSession]:
        return [
            s for s in self.sessions.values()
            if s.room_id == room_id and s.status == SessionStatus.ACTIVE
        ]

    # Rooms
    async def get_room(self, room_id: str) -> Optional[Room]:
        await self._step("get_room")
        return self.rooms.get(room_id)

    async def upsert_room(self, room_id: str, owner_id: str, name: Optional[str], room_type: Any) -> Room:
        await self._step("upsert_room")
        existing = self.rooms.get(room_id)
        if existing:
            room = existing.model_copy(update={"name": name or existing.name, "room_type": RoomType(room_type)})
        else:
            room = Room(room_id=room_id, owner_id=owner_id, name=name, room_type=RoomType(room_type))
        self.rooms[room_id] = room
        return room

    async def increment_room_stat(self, room_id: str, field: str, amount: int = 1) -> None:
        await self._step("increment_room_stat")
        room = self.rooms.get(room_id)
        if room:
            self.rooms[room_id] = room.model_copy(update={field: getattr(room, field) + amount})

    # Sessions
    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        await self._step("get_session")
        return self.sessions.get(session_id)

    async def find_active_session(self, room_id: str) -> Optional[ChatSession]:
        await self._step("find_active_session")
        active = self.active_sessions(room_id)
        return active[0] if active else None

    async def create_session(self, session: ChatSession) -> ChatSession:
        await self._step("create_session")
        if self.active_sessions(session.room_id):
            raise SessionConflictError(f"Room {session.room_id} already has an active session")
        now = utcnow()
        created = session.model_copy(update={"created_at": now, "updated_at": now})
        self.sessions[created.session_id] = created
        return created

    async def update_session(
        self,
        session_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[SessionStatus] = None
    ) -> Optional[ChatSession]:
        await self._step("update_session")
        unknown = set(patch) - _SESSION_PATCH_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported patch fields: {sorted(unknown)}")
        current = self.sessions.get(session_id)
        if current is None:
            return None
        if expected_status is not None and current.status != expected_status:
            return None
        updated = ChatSession(**{**current.model_dump(), **patch, "updated_at": utcnow()})
        self.sessions[session_id] = updated
        return updated

    async def touch_session(self, session_id: str) -> None:
        await self._step("touch_session")
        current = self.sessions.get(session_id)
        if current:
            self.sessions[session_id] = current.model_copy(update={"updated_at": utcnow()})

    async def find_expired_sessions(
        self,
        cutoff: datetime,
        limit: int = 100,
        after: Optional[Tuple[datetime, str]] = None
    ) -> List[ChatSession]:
        await self._step("find_expired_sessions")
        expired = [
            s for s in self.sessions.values()
            if s.status == SessionStatus.ACTIVE
            and s.start_time <= cutoff
            and (after is None or (s.start_time, s.session_id) > after)
        ]
        return sorted(expired, key=lambda s: (s.start_time, s.session_id))[:limit]

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        room_id: Optional[str] = None,
        limit: int = 100,
        owner_id: Optional[str] = None
    ) -> List[ChatSession]:
        await self._step("list_sessions")
        rows = [
            s for s in self.sessions.values()
            if (status is None or s.status == status)
            and (room_id is None or s.room_id == room_id)
            and (owner_id is None or s.owner_id == owner_id)
        ]
        return sorted(rows, key=lambda s: s.start_time, reverse=True)[:limit]

    async def find_sessions_with_failed_summary(self, limit: int = 100) -> List[ChatSession]:
        await self._step("find_sessions_with_failed_summary")
        result = []
        for s in self.sessions.values():
            if s.status != SessionStatus.CLOSED:
                continue
            summaries = self._summaries_for(s.session_id)
            if summaries and summaries[0].status == SummaryStatus.FAILED:
                result.append(s)
        return result[:limit]

    async def session_statistics(self, room_id: str) -> Dict[str, Any]:
        await self._step("session_statistics")
        counts: Dict[str, int] = {}
        durations: Dict[str, List[float]] = {}
        for s in self.sessions.values():
            if s.room_id != room_id:
                continue
            counts[s.status.value] = counts.get(s.status.value, 0) + 1
            if s.end_time is not None:
                durations.setdefault(s.status.value, []).append((s.end_time - s.start_time).total_seconds())
        return {
            "sessions": counts,
            "avg_duration_seconds": {status: sum(v) / len(v) for status, v in durations.items()},
            "total_messages": len([m for m in self.messages if m.room_id == room_id]),
        }

    # Messages
    async def append_message(self, session_id: str, fields: Dict[str, Any]) -> Optional[Message]:
        await self._step("append_message")
        current = self.sessions.get(session_id)
        if current is None or current.status != SessionStatus.ACTIVE:
            return None
        line_message_id = fields.get("line_message_id")
        if line_message_id and any(m.line_message_id == line_message_id for m in self.messages):
            raise DuplicateMessageError(f"LINE message {line_message_id} already stored")
        message = Message(
            **{
                **fields,
                "id": next(self._message_ids),
                "session_id": session_id,
                "room_id": current.room_id,
                "owner_id": current.owner_id,
                "timestamp": fields.get("timestamp") or utcnow(),
                "created_at": utcnow(),
            }
        )
        self.messages.append(message)
        return message

    async def count_messages(self, session_id: str) -> int:
        await self._step("count_messages")
        return len([m for m in self.messages if m.session_id == session_id])

    async def list_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Message]:
        await self._step("list_messages")
        rows = sorted(
            [m for m in self.messages if m.session_id == session_id],
            key=lambda m: (m.timestamp, m.id)
        )
        rows = rows[offset:]
        return rows[:limit] if limit is not None else rows

    async def find_message_by_platform_id(self, line_message_id: str) -> Optional[Message]:
        await self._step("find_message_by_platform_id")
        for m in self.messages:
            if m.line_message_id == line_message_id:
                return m
        return None

    # Summaries
    def _summaries_for(self, session_id: str) -> List[Summary]:
        rows = [s for s in self.summaries.values() if s.session_id == session_id]
        return sorted(rows, key=lambda s: s.id, reverse=True)

    async def create_summary(self, session: ChatSession) -> Summary:
        await self._step("create_summary")
        for existing in self.summaries.values():
            if existing.session_id == session.session_id and existing.status == SummaryStatus.PROCESSING:
                raise SummaryInFlightError(f"Summary already processing for session {session.session_id}")
        now = utcnow()
        summary = Summary(
            id=next(self._summary_ids),
            session_id=session.session_id,
            room_id=session.room_id,
            owner_id=session.owner_id,
            status=SummaryStatus.PROCESSING,
            created_at=now,
            updated_at=now,
        )
        self.summaries[summary.id] = summary
        return summary

    async def update_summary(self, summary_id: int, patch: Dict[str, Any]) -> Optional[Summary]:
        await self._step("update_summary")
        unknown = set(patch) - _SUMMARY_PATCH_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported patch fields: {sorted(unknown)}")
        current = self.summaries.get(summary_id)
        if current is None:
            return None
        updated = Summary(**{**current.model_dump(), **patch, "updated_at": utcnow()})
        self.summaries[summary_id] = updated
        return updated

    async def get_summary(self, summary_id: int) -> Optional[Summary]:
        await self._step("get_summary")
        return self.summaries.get(summary_id)

    async def list_summaries(self, session_id: str) -> List[Summary]:
        await self._step("list_summaries")
        return self._summaries_for(session_id)


class StubSummarizer:
    """Records calls; set `error` to fail, `delay` to stall."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.delay: float = 0.0
        self.result: Optional[SummaryResult] = None

    async def summarize(self, session: ChatSession, messages: List[Message]) -> SummaryResult:
        self.calls.append({"session_id": session.session_id, "message_count": len(messages)})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result or SummaryResult(
            content=f"Summary of {len(messages)} messages",
            key_topics=["greeting"],
            model="stub-model",
            tokens_used=42,
        )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def summarizer():
    return StubSummarizer()


@pytest.fixture
def policy():
    return SessionPolicy(
        max_messages_per_session=50,
        session_timeout_hours=24,
        min_messages_for_summary=1,
        summary_timeout_seconds=5.0,
    )


@pytest.fixture
def manager(store, summarizer, policy):
    return SessionManager(store, summarizer, policy)


@pytest.fixture
def installed_manager(manager):
    set_session_manager(manager)
    yield manager
    set_session_manager(None)
