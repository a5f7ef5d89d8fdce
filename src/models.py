from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    ACTIVE = "active"
    SUMMARIZING = "summarizing"
    CLOSED = "closed"


class SummaryStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RoomType(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


class Direction(str, Enum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


class SenderRole(str, Enum):
    USER = "user"
    GROUP_MEMBER = "group_member"
    BOT = "bot"
    SYSTEM = "system"

    @classmethod
    def derive(cls, direction: Direction, room_type: Optional[RoomType]) -> "SenderRole":
        """Resolve the sender role once, at admission time."""
        if direction == Direction.BOT:
            return cls.BOT
        if direction == Direction.SYSTEM:
            return cls.SYSTEM
        if room_type == RoomType.GROUP:
            return cls.GROUP_MEMBER
        return cls.USER


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    STICKER = "sticker"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"
    LOCATION = "location"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CloseReason(str, Enum):
    MESSAGE_LIMIT = "message_limit"
    TIMEOUT = "timeout"
    AUTO_TIMEOUT = "auto_timeout"
    MANUAL = "manual"


class SessionPolicy(BaseModel):
    """Trigger thresholds for one lifecycle manager (per-tenant overrides are resolved by the caller)."""
    max_messages_per_session: int = Field(50, ge=1)
    session_timeout_hours: float = Field(24, gt=0)
    min_messages_for_summary: int = Field(1, ge=0)
    summary_timeout_seconds: float = Field(60.0, gt=0)


# Domain records
class Room(BaseModel):
    room_id: str
    owner_id: str
    name: Optional[str] = None
    room_type: RoomType = RoomType.INDIVIDUAL
    total_messages: int = 0
    total_sessions: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ChatSession(BaseModel):
    session_id: str
    room_id: str
    owner_id: str
    room_name: Optional[str] = None
    room_type: Optional[RoomType] = None
    status: SessionStatus = SessionStatus.ACTIVE
    start_time: datetime
    end_time: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None
    summary_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MessageIn(BaseModel):
    direction: Direction = Direction.USER
    message_type: MessageType = MessageType.TEXT
    message: str = Field(..., min_length=1)
    line_message_id: Optional[str] = None
    line_user_id: Optional[str] = None
    user_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class Message(BaseModel):
    id: int
    session_id: str
    room_id: str
    owner_id: str
    direction: Direction
    sender_role: SenderRole
    message_type: MessageType
    message: str
    line_message_id: Optional[str] = None
    line_user_id: Optional[str] = None
    user_name: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: datetime
    created_at: Optional[datetime] = None


class Summary(BaseModel):
    id: int
    session_id: str
    room_id: str
    owner_id: str
    status: SummaryStatus = SummaryStatus.PROCESSING
    content: Optional[str] = None
    key_topics: List[str] = []
    sentiment: Optional[Sentiment] = None
    urgency: Optional[Urgency] = None
    category: Optional[str] = None
    action_items: List[str] = []
    error_message: Optional[str] = None
    model: Optional[str] = None
    tokens_used: int = 0
    processing_time_ms: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SummaryResult(BaseModel):
    """What the AI summarizer hands back for one session."""
    content: str
    key_topics: List[str] = []
    sentiment: Sentiment = Sentiment.NEUTRAL
    urgency: Urgency = Urgency.LOW
    category: Optional[str] = None
    action_items: List[str] = []
    tokens_used: int = 0
    model: Optional[str] = None


class AdmitResult(BaseModel):
    session: ChatSession
    message: Message
    effective_count: int


# Request Models
class ActiveSessionRequest(BaseModel):
    roomId: str
    ownerId: str


class CloseSessionRequest(BaseModel):
    reason: CloseReason = CloseReason.MANUAL
    attemptSummary: bool = True


class LineWebhookRequest(BaseModel):
    destination: Optional[str] = None
    events: List[Dict[str, Any]] = []


# Response Models
class AdmitResponse(BaseModel):
    session: ChatSession
    message: Message
    effectiveCount: int


class WebhookResponse(BaseModel):
    status: str
    processed: int = 0
    skipped: int = 0
    sessionIds: List[str] = []


class SweepResponse(BaseModel):
    closed: int


class SessionStatistics(BaseModel):
    roomId: str
    sessions: Dict[str, int] = {}
    avgDurationSeconds: Dict[str, float] = {}
    totalMessages: int = 0
