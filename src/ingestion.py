"""
Ingestion Pipeline - LINE webhook events into chat sessions

Flow per message event:
1. Resolve the room from the event source (group > multi-user room > direct)
2. Upsert the room
3. get_or_create_active_session for it
4. admit_message (triggers may close the session right after)

Non-message events (follow, unfollow, join, ...) are acknowledged and skipped.
LINE redelivers on timeouts, so messages already stored under the same LINE
message id are skipped too.
"""

from typing import Any, Dict, Optional, Tuple
import logging

from .errors import DuplicateMessageError, InvalidStateError
from .models import (
    Direction,
    LineWebhookRequest,
    MessageIn,
    MessageType,
    RoomType,
    WebhookResponse,
)
from .session import SessionManager, get_session_manager
from .utils import from_epoch_millis

logger = logging.getLogger(__name__)

_KNOWN_MESSAGE_TYPES = {t.value for t in MessageType}


def resolve_room(source: Dict[str, Any]) -> Optional[Tuple[str, RoomType, str]]:
    """Return (room_id, room_type, fallback_name) or None when the source has no id."""
    group_id = source.get("groupId")
    multi_room_id = source.get("roomId")
    user_id = source.get("userId")
    if group_id:
        return group_id, RoomType.GROUP, f"Group Chat ({group_id[:8]})"
    if multi_room_id:
        return multi_room_id, RoomType.GROUP, f"Multi-User Chat ({multi_room_id[:8]})"
    if user_id:
        return user_id, RoomType.INDIVIDUAL, f"Direct Message ({user_id[:8]})"
    return None


def event_to_message(event: Dict[str, Any]) -> Optional[MessageIn]:
    """Map a LINE message event to admission fields. None for unsupported payloads."""
    message = event.get("message") or {}
    line_type = message.get("type")
    if line_type not in _KNOWN_MESSAGE_TYPES:
        return None

    message_type = MessageType(line_type)
    latitude = longitude = None
    file_name = None
    if message_type == MessageType.TEXT:
        text = (message.get("text") or "").strip()
        if not text:
            return None
    elif message_type == MessageType.IMAGE:
        text = "Image uploaded"
    elif message_type == MessageType.LOCATION:
        latitude = message.get("latitude")
        longitude = message.get("longitude")
        text = message.get("address") or message.get("title") or f"Location ({latitude}, {longitude})"
    else:
        file_name = message.get("fileName")
        text = f"{line_type} message"

    return MessageIn(
        direction=Direction.USER,
        message_type=message_type,
        message=text,
        line_message_id=message.get("id"),
        line_user_id=(event.get("source") or {}).get("userId"),
        timestamp=from_epoch_millis(event.get("timestamp")),
        file_name=file_name,
        latitude=latitude,
        longitude=longitude,
    )


async def ingest_event(
    manager: SessionManager,
    event: Dict[str, Any],
    owner_id: str
) -> Optional[str]:
    """
    Ingest one webhook event.

    Returns the session id the message landed in, or None when skipped.
    """
    if event.get("type") != "message":
        logger.info(f"Skipping LINE event type: {event.get('type')}")
        return None

    room = resolve_room(event.get("source") or {})
    if room is None:
        logger.warning("Skipping LINE event without a source id")
        return None
    room_id, room_type, room_name = room

    fields = event_to_message(event)
    if fields is None:
        logger.info(f"Skipping unsupported LINE message in room {room_id}")
        return None

    if fields.line_message_id:
        existing = await manager.store.find_message_by_platform_id(fields.line_message_id)
        if existing is not None:
            logger.info(f"Duplicate LINE message {fields.line_message_id}, already stored")
            return None

    await manager.store.upsert_room(room_id, owner_id, room_name, room_type)
    active = await manager.get_or_create_active_session(room_id, owner_id)
    try:
        try:
            result = await manager.admit_message(active.session_id, fields)
        except InvalidStateError:
            # Closed by a concurrent trigger between lookup and insert; the next
            # lookup opens its replacement.
            active = await manager.get_or_create_active_session(room_id, owner_id)
            result = await manager.admit_message(active.session_id, fields)
    except DuplicateMessageError:
        # A concurrent redelivery stored it first.
        logger.info(f"Duplicate LINE message {fields.line_message_id}, stored concurrently")
        return None

    return result.session.session_id


async def handle_webhook(request: LineWebhookRequest, owner_id: str) -> WebhookResponse:
    """Process every event in a webhook delivery. One failing event does not fail the batch."""
    manager = get_session_manager()
    processed = 0
    skipped = 0
    session_ids = []

    for event in request.events:
        try:
            session_id = await ingest_event(manager, event, owner_id)
        except Exception as e:
            logger.error(f"Failed to ingest LINE event {event.get('webhookEventId')}: {e}")
            skipped += 1
            continue

        if session_id is None:
            skipped += 1
            continue
        processed += 1
        if session_id not in session_ids:
            session_ids.append(session_id)

    logger.info(f"Webhook processed: {processed} ingested, {skipped} skipped")
    return WebhookResponse(
        status="ok",
        processed=processed,
        skipped=skipped,
        sessionIds=session_ids
    )
