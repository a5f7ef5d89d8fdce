from fastapi import FastAPI, HTTPException, Header
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging
from typing import List, Optional

from .models import (
    ActiveSessionRequest,
    AdmitResponse,
    ChatSession,
    CloseSessionRequest,
    LineWebhookRequest,
    Message,
    MessageIn,
    SessionStatistics,
    Summary,
    SweepResponse,
    WebhookResponse,
)
from .config import get_settings
from .db import Database
from .errors import DuplicateMessageError, InvalidStateError, NotFoundError
from . import session
from .ingestion import handle_webhook
from .migrate import run_migrations

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances
db = Database()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    # Startup
    logger.info("Starting LINE Session API")
    try:
        await db.get_pool()
        logger.info("Database connection pool initialized")

        await run_migrations(db)
        logger.info("Migrations completed")

        session.init_session_manager(db)
        logger.info("Session manager initialized")

        settings = get_settings()
        if settings.expiry_sweep_enabled:
            app.state.expiry_sweep_task = asyncio.create_task(
                session.expiry_sweep_loop(
                    interval_seconds=settings.expiry_sweep_interval_seconds,
                    batch_size=settings.expiry_sweep_batch_size
                )
            )
            logger.info("Expiry sweep loop started")

    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down LINE Session API")
    if getattr(app.state, "expiry_sweep_task", None):
        app.state.expiry_sweep_task.cancel()
        try:
            await app.state.expiry_sweep_task
        except asyncio.CancelledError:
            pass
    await db.close()
    logger.info("Database connection pool closed")


# Create FastAPI app with lifespan
app = FastAPI(
    title="LINE Session API",
    version="1.0.0",
    lifespan=lifespan
)


def _require_internal_token(token: str | None) -> None:
    settings = get_settings()
    if not settings.internal_token or not token or token != settings.internal_token:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidStateError, DuplicateMessageError)):
        return HTTPException(status_code=409, detail=str(e))
    logger.error(f"{action} failed: {e}")
    return HTTPException(status_code=500, detail=f"{action} failed")


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "line-session",
        "version": "1.0.0"
    }


@app.post("/webhook/line", response_model=WebhookResponse)
async def line_webhook(request: LineWebhookRequest):
    """
    LINE Messaging API webhook.

    Message events are stored into the room's active session; everything
    else is acknowledged and ignored.
    """
    try:
        logger.info(f"LINE webhook with {len(request.events)} events")
        return await handle_webhook(request, owner_id=get_settings().default_owner_id)
    except Exception as e:
        raise _http_error(e, "Webhook") from e


@app.post("/sessions/active", response_model=ChatSession)
async def active_session(request: ActiveSessionRequest):
    try:
        return await session.get_or_create_active_session(request.roomId, request.ownerId)
    except Exception as e:
        raise _http_error(e, "Active session lookup") from e


@app.get("/sessions/{session_id}", response_model=ChatSession)
async def get_session(session_id: str):
    try:
        return await session.get_session_manager().get_session(session_id)
    except Exception as e:
        raise _http_error(e, "Session lookup") from e


@app.get("/sessions/{session_id}/messages", response_model=List[Message])
async def get_session_messages(session_id: str, limit: Optional[int] = None, offset: int = 0):
    try:
        return await session.get_session_manager().get_session_messages(
            session_id,
            limit=limit,
            offset=offset
        )
    except Exception as e:
        raise _http_error(e, "Message listing") from e


@app.get("/sessions/{session_id}/summaries", response_model=List[Summary])
async def get_session_summaries(session_id: str):
    try:
        return await session.get_session_manager().get_session_summaries(session_id)
    except Exception as e:
        raise _http_error(e, "Summary listing") from e


@app.post("/sessions/{session_id}/messages", response_model=AdmitResponse)
async def admit_message(session_id: str, request: MessageIn):
    """Add one message; the response session shows whether a trigger closed it."""
    try:
        result = await session.admit_message(session_id, request)
        return AdmitResponse(
            session=result.session,
            message=result.message,
            effectiveCount=result.effective_count
        )
    except Exception as e:
        raise _http_error(e, "Message admission") from e


@app.post("/sessions/{session_id}/close", response_model=ChatSession)
async def close_session(session_id: str, request: Optional[CloseSessionRequest] = None):
    request = request or CloseSessionRequest()
    try:
        return await session.close_session(
            session_id,
            reason=request.reason,
            attempt_summary=request.attemptSummary
        )
    except Exception as e:
        raise _http_error(e, "Session close") from e


@app.post("/sessions/{session_id}/summary", response_model=Summary)
async def generate_summary(session_id: str):
    """Summarize now. A failed generation still returns 200 with status=failed."""
    try:
        return await session.generate_summary_now(session_id)
    except Exception as e:
        raise _http_error(e, "Summary generation") from e


@app.get("/rooms/{room_id}/statistics", response_model=SessionStatistics)
async def room_statistics(room_id: str):
    try:
        stats = await session.get_session_manager().room_statistics(room_id)
        return SessionStatistics(
            roomId=room_id,
            sessions=stats["sessions"],
            avgDurationSeconds=stats["avg_duration_seconds"],
            totalMessages=stats["total_messages"]
        )
    except Exception as e:
        raise _http_error(e, "Room statistics") from e


@app.post("/internal/sweep", response_model=SweepResponse)
async def sweep(
    batch_size: Optional[int] = None,
    x_internal_token: str | None = Header(default=None)
):
    """Internal: run one expiry sweep now."""
    _require_internal_token(x_internal_token)
    try:
        closed = await session.sweep_expired_sessions(
            batch_size=batch_size or get_settings().expiry_sweep_batch_size
        )
        return SweepResponse(closed=closed)
    except Exception as e:
        raise _http_error(e, "Expiry sweep") from e
