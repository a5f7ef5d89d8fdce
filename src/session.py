"""
Session Manager - chat session lifecycle

A room has at most one `active` session. Messages are admitted into it until a
trigger fires:
- count trigger: effective message count reaches max_messages_per_session
- time trigger: the session is older than session_timeout_hours
- manual close, or the expiry sweeper for rooms that went quiet

Closing moves the session to `summarizing` while the AI summarizer runs and to
`closed` afterwards, whatever the summarizer did. Summarization failures are
recorded on the Summary row and never fail the close.

No in-process locks: every operation re-reads the stored status, and status
changes are compare-and-set updates, so concurrent workers cannot both win a
transition. The storage layer rejects a second active session per room and a
second processing summary per session.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union
import asyncio
import logging
import time

from .config import get_settings
from .db import Database
from .errors import (
    InvalidStateError,
    NotFoundError,
    SessionConflictError,
    SummaryInFlightError,
)
from .models import (
    AdmitResult,
    ChatSession,
    CloseReason,
    Message,
    MessageIn,
    Room,
    SenderRole,
    SessionPolicy,
    SessionStatus,
    Summary,
    SummaryResult,
    SummaryStatus,
)
from .store import SessionStore
from .summarizer import SessionSummarizer
from .utils import ensure_aware, generate_session_id, session_age_hours, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_BATCH_SIZE = 100
_ERROR_DETAIL_MAX_CHARS = 1000


class SessionManager:
    def __init__(self, store: SessionStore, summarizer: SessionSummarizer, policy: SessionPolicy):
        self.store = store
        self.summarizer = summarizer
        self.policy = policy

    def with_policy(self, policy: SessionPolicy) -> "SessionManager":
        """Same store and summarizer, different thresholds (e.g. a tenant override)."""
        return SessionManager(self.store, self.summarizer, policy)

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(hours=self.policy.session_timeout_hours)

    def _is_expired(self, session: ChatSession, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - ensure_aware(session.start_time) >= self.session_timeout

    def _evaluate_triggers(
        self,
        session: ChatSession,
        effective_count: int,
        now: Optional[datetime] = None
    ) -> Optional[CloseReason]:
        if effective_count >= self.policy.max_messages_per_session:
            return CloseReason.MESSAGE_LIMIT
        if self._is_expired(session, now):
            return CloseReason.TIMEOUT
        return None

    async def _require_session(self, session_id: str) -> ChatSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    async def get_session(self, session_id: str) -> ChatSession:
        return await self._require_session(session_id)

    async def get_session_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Message]:
        await self._require_session(session_id)
        return await self.store.list_messages(session_id, limit=limit, offset=offset)

    async def get_session_summaries(self, session_id: str) -> List[Summary]:
        await self._require_session(session_id)
        return await self.store.list_summaries(session_id)

    async def room_statistics(self, room_id: str) -> Dict[str, Any]:
        if await self.store.get_room(room_id) is None:
            raise NotFoundError(f"Room not found: {room_id}")
        return await self.store.session_statistics(room_id)

    async def get_or_create_active_session(self, room_id: str, owner_id: str) -> ChatSession:
        """Return the room's active session, replacing it first if it is spent."""
        room = await self.store.get_room(room_id)
        if room is None:
            raise NotFoundError(f"Room not found: {room_id}")

        active = await self.store.find_active_session(room_id)
        if active is not None:
            if self._is_expired(active):
                logger.info(
                    f"Session {active.session_id} expired after "
                    f"{session_age_hours(active.start_time):.1f}h, closing"
                )
                await self.close_session(active.session_id, CloseReason.TIMEOUT)
                active = None
            else:
                # Reconciles a session whose count-triggered close did not complete.
                count = await self.store.count_messages(active.session_id)
                if count >= self.policy.max_messages_per_session:
                    logger.info(
                        f"Session {active.session_id} already holds {count} messages, closing"
                    )
                    await self.close_session(active.session_id, CloseReason.MESSAGE_LIMIT)
                    active = None

        if active is not None:
            return active
        return await self._create_session(room, owner_id)

    async def _create_session(self, room: Room, owner_id: str) -> ChatSession:
        now = utcnow()
        candidate = ChatSession(
            session_id=generate_session_id(now),
            room_id=room.room_id,
            owner_id=owner_id,
            room_name=room.name,
            room_type=room.room_type,
            status=SessionStatus.ACTIVE,
            start_time=now,
        )
        try:
            created = await self.store.create_session(candidate)
        except SessionConflictError:
            winner = await self.store.find_active_session(room.room_id)
            if winner is None:
                raise
            logger.info(
                f"Lost session create race for room {room.room_id}, "
                f"using {winner.session_id}"
            )
            return winner

        await self.store.increment_room_stat(room.room_id, "total_sessions")
        logger.info(f"Created session {created.session_id} for room {room.room_id}")
        return created

    async def admit_message(
        self,
        session_id: str,
        message_fields: Union[MessageIn, Dict[str, Any]]
    ) -> AdmitResult:
        """
        Persist one message into an active session, then evaluate triggers.

        The message is written before any trigger runs, so a failure while
        closing never loses it.
        """
        if not isinstance(message_fields, MessageIn):
            message_fields = MessageIn(**message_fields)

        session = await self._require_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidStateError(
                f"Cannot add message to {session.status.value} session: {session_id}"
            )

        fields = message_fields.model_dump()
        fields["sender_role"] = SenderRole.derive(message_fields.direction, session.room_type)
        message = await self.store.append_message(session_id, fields)
        if message is None:
            raise InvalidStateError(f"Session {session_id} closed before the message was stored")

        await self.store.touch_session(session_id)
        await self.store.increment_room_stat(session.room_id, "total_messages")

        effective_count = await self.store.count_messages(session_id)
        reason = self._evaluate_triggers(session, effective_count)
        if reason is not None:
            logger.info(
                f"Session {session_id} triggered {reason.value} "
                f"(count={effective_count}/{self.policy.max_messages_per_session})"
            )
            session = await self.close_session(session_id, reason)
        else:
            session = await self.store.get_session(session_id) or session

        return AdmitResult(session=session, message=message, effective_count=effective_count)

    async def close_session(
        self,
        session_id: str,
        reason: Union[CloseReason, str] = CloseReason.MANUAL,
        attempt_summary: bool = True
    ) -> ChatSession:
        session, _ = await self._close(session_id, CloseReason(reason), attempt_summary)
        return session

    async def _close(
        self,
        session_id: str,
        reason: CloseReason,
        attempt_summary: bool
    ) -> Tuple[ChatSession, bool]:
        """Returns the current session and whether this call performed the close."""
        session = await self._require_session(session_id)
        if session.status == SessionStatus.CLOSED:
            logger.info(f"Session {session_id} already closed, nothing to do")
            return session, False
        if session.status == SessionStatus.SUMMARIZING:
            logger.info(f"Session {session_id} is already being closed")
            return session, False

        now = utcnow()
        effective_count = await self.store.count_messages(session_id)
        eligible = attempt_summary and effective_count >= self.policy.min_messages_for_summary
        target = SessionStatus.SUMMARIZING if eligible else SessionStatus.CLOSED

        updated = await self.store.update_session(
            session_id,
            {"status": target, "end_time": now, "close_reason": reason},
            expected_status=SessionStatus.ACTIVE
        )
        if updated is None:
            logger.info(f"Session {session_id} was closed concurrently")
            return await self._require_session(session_id), False

        logger.info(
            f"Closing session {session_id} - reason={reason.value}, "
            f"messages={effective_count}, summarize={eligible}"
        )
        if eligible:
            await self._summarize_and_close(updated)
            updated = await self._require_session(session_id)
        return updated, True

    async def _summarize_and_close(self, session: ChatSession) -> Optional[Summary]:
        """
        Run summary generation for a session in `summarizing`, then close it.

        The session reaches `closed` even when generation fails or a store
        call raises; in the latter case the error propagates after the close.
        """
        summary: Optional[Summary] = None
        try:
            try:
                record = await self.store.create_summary(session)
            except SummaryInFlightError:
                logger.warning(
                    f"Session {session.session_id} has a dangling processing summary; "
                    f"closing without a new one"
                )
                return None
            summary = await self._generate(session, record)
            return summary
        finally:
            patch: Dict[str, Any] = {"status": SessionStatus.CLOSED}
            if summary is not None and summary.status == SummaryStatus.COMPLETED:
                patch["summary_id"] = summary.id
            await self.store.update_session(
                session.session_id,
                patch,
                expected_status=SessionStatus.SUMMARIZING
            )
            logger.info(f"Session {session.session_id} closed")

    async def _generate(self, session: ChatSession, record: Summary) -> Summary:
        """Call the summarizer for a `processing` record and store the outcome."""
        started = time.monotonic()
        try:
            messages = await self.store.list_messages(session.session_id)
        except asyncio.CancelledError:
            await self._record_failure(record, "Summary generation cancelled", started)
            raise
        except Exception as e:
            await self._record_failure(record, f"Could not load messages: {e}", started)
            raise

        timeout = self.policy.summary_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.summarizer.summarize(session, messages),
                timeout=timeout
            )
        except asyncio.CancelledError:
            # No processing row may outlive the close.
            logger.warning(f"Summary {record.id} for session {session.session_id} cancelled")
            await self._record_failure(record, "Summary generation cancelled", started)
            raise
        except asyncio.TimeoutError:
            error = f"Summarizer timed out after {timeout}s"
        except Exception as e:
            error = f"{e.__class__.__name__}: {e}" if str(e) else e.__class__.__name__
        else:
            return await self._record_success(record, result, started)

        logger.warning(f"Summary {record.id} for session {session.session_id} failed: {error}")
        return await self._record_failure(record, error, started)

    async def _record_success(self, record: Summary, result: SummaryResult, started: float) -> Summary:
        patch = {
            "status": SummaryStatus.COMPLETED,
            "content": result.content,
            "key_topics": result.key_topics,
            "sentiment": result.sentiment,
            "urgency": result.urgency,
            "category": result.category,
            "action_items": result.action_items,
            "model": result.model,
            "tokens_used": result.tokens_used,
            "processing_time_ms": int((time.monotonic() - started) * 1000),
            "error_message": None,
        }
        updated = await self.store.update_summary(record.id, patch)
        logger.info(f"Summary {record.id} completed for session {record.session_id}")
        return updated or record.model_copy(update=patch)

    async def _record_failure(self, record: Summary, error: str, started: float) -> Summary:
        patch = {
            "status": SummaryStatus.FAILED,
            "error_message": error[:_ERROR_DETAIL_MAX_CHARS],
            "processing_time_ms": int((time.monotonic() - started) * 1000),
        }
        updated = await self.store.update_summary(record.id, patch)
        return updated or record.model_copy(update=patch)

    async def generate_summary_now(self, session_id: str) -> Summary:
        """
        Summarize on demand, ignoring count/time gates.

        An active session is closed manually through the usual path. A closed
        session keeps its status; only the new Summary cycles through
        `processing`, and it is attached if it completes.
        """
        session = await self._require_session(session_id)
        if session.status == SessionStatus.SUMMARIZING:
            raise InvalidStateError(f"Summary generation already in progress for {session_id}")

        effective_count = await self.store.count_messages(session_id)
        if effective_count < 1:
            raise InvalidStateError(
                f"Session {session_id} needs at least 1 message to generate a summary"
            )

        if session.status == SessionStatus.ACTIVE:
            summarizing = await self.store.update_session(
                session_id,
                {
                    "status": SessionStatus.SUMMARIZING,
                    "end_time": utcnow(),
                    "close_reason": CloseReason.MANUAL,
                },
                expected_status=SessionStatus.ACTIVE
            )
            if summarizing is None:
                raise InvalidStateError(f"Session {session_id} changed state concurrently")
            summary = await self._summarize_and_close(summarizing)
            if summary is None:
                raise InvalidStateError(f"Summary generation already in progress for {session_id}")
            return summary

        try:
            record = await self.store.create_summary(session)
        except SummaryInFlightError as e:
            raise InvalidStateError(
                f"Summary generation already in progress for {session_id}"
            ) from e

        logger.info(f"Re-summarizing closed session {session_id} (summary {record.id})")
        summary = await self._generate(session, record)
        if summary.status == SummaryStatus.COMPLETED:
            await self.store.update_session(
                session_id,
                {"summary_id": summary.id},
                expected_status=SessionStatus.CLOSED
            )
        return summary

    async def sweep_expired_sessions(self, batch_size: int = DEFAULT_SWEEP_BATCH_SIZE) -> int:
        """
        Close every active session past its time budget.

        Expired sessions are read in (start_time, session_id) order, batch_size
        at a time, with the cursor moving past each batch. Sessions that keep
        failing therefore never hide younger expired ones. One failure does not
        stop the run.
        """
        cutoff = utcnow() - self.session_timeout
        closed = 0
        after: Optional[Tuple[datetime, str]] = None
        while True:
            batch = await self.store.find_expired_sessions(cutoff, batch_size, after=after)
            for candidate in batch:
                try:
                    _, did_close = await self._close(
                        candidate.session_id,
                        CloseReason.AUTO_TIMEOUT,
                        attempt_summary=True
                    )
                except Exception as e:
                    logger.error(f"Failed to auto-close session {candidate.session_id}: {e}")
                    continue
                if did_close:
                    closed += 1
            if len(batch) < batch_size:
                break
            after = (batch[-1].start_time, batch[-1].session_id)

        if closed:
            logger.info(f"Auto-closed {closed} expired sessions")
        return closed


# Module-level singleton
_manager: Optional[SessionManager] = None


def init_session_manager(
    db: Database,
    summarizer: Optional[SessionSummarizer] = None,
    policy: Optional[SessionPolicy] = None
) -> SessionManager:
    """Initialize the session manager from settings"""
    global _manager
    settings = get_settings()
    _manager = SessionManager(
        store=SessionStore(db),
        summarizer=summarizer or SessionSummarizer(max_tokens=settings.summary_max_tokens),
        policy=policy or settings.session_policy()
    )
    logger.info(f"SessionManager initialized with policy {_manager.policy.model_dump()}")
    return _manager


def set_session_manager(manager: Optional[SessionManager]) -> None:
    global _manager
    _manager = manager


def get_session_manager() -> SessionManager:
    if _manager is None:
        raise RuntimeError("SessionManager not initialized")
    return _manager


async def expiry_sweep_loop(interval_seconds: int, batch_size: int) -> None:
    """Periodic expiry sweep. Best-effort and bounded per run."""
    while True:
        try:
            if _manager is not None:
                await _manager.sweep_expired_sessions(batch_size=batch_size)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Expiry sweep loop error: {e}")
        await asyncio.sleep(interval_seconds)


async def get_or_create_active_session(room_id: str, owner_id: str) -> ChatSession:
    return await get_session_manager().get_or_create_active_session(room_id, owner_id)


async def admit_message(
    session_id: str,
    message_fields: Union[MessageIn, Dict[str, Any]]
) -> AdmitResult:
    return await get_session_manager().admit_message(session_id, message_fields)


async def close_session(
    session_id: str,
    reason: Union[CloseReason, str] = CloseReason.MANUAL,
    attempt_summary: bool = True
) -> ChatSession:
    return await get_session_manager().close_session(
        session_id,
        reason=reason,
        attempt_summary=attempt_summary
    )


async def generate_summary_now(session_id: str) -> Summary:
    return await get_session_manager().generate_summary_now(session_id)


async def sweep_expired_sessions(batch_size: int = DEFAULT_SWEEP_BATCH_SIZE) -> int:
    """Run one expiry sweep"""
    return await get_session_manager().sweep_expired_sessions(batch_size=batch_size)
