"""Data models for the real-time synchronization transport."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


GLOBAL_SCOPE = "global"


def now_ms() -> int:
    """Current wall-clock time in milliseconds, as used on the wire."""
    return int(time.time() * 1000)


class Priority(Enum):
    """Delivery priority hint carried on outbound frames."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class DeltaAction(Enum):
    """Kinds of incremental change applied to a cached topic."""
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    REORDER = "reorder"


class TopicKey(NamedTuple):
    """Identifies a synchronized topic: message type plus scope."""
    message_type: str
    scope_id: str = GLOBAL_SCOPE

    @classmethod
    def of(cls, message_type: str, scope_id: Any = None) -> "TopicKey":
        if scope_id is None or scope_id == "":
            return cls(message_type, GLOBAL_SCOPE)
        return cls(message_type, str(scope_id))

    def __str__(self) -> str:
        return f"{self.message_type}_{self.scope_id}"


@dataclass
class Connection:
    """One physical connection, stamped with a monotonic generation."""
    connection_id: str
    channel: Any
    generation: int
    health: int = 100
    connected: bool = True
    active: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    last_ack_at: Optional[float] = None
    last_latency_ms: Optional[float] = None
    sent_count: int = 0


@dataclass
class CachedTopic:
    """Cached snapshot for a topic. ``checksum`` always matches ``snapshot``."""
    key: TopicKey
    snapshot: Union[List[Any], Dict[str, Any]]
    checksum: str
    last_updated_at: float


@dataclass
class OfflineMessage:
    """A message waiting in the offline queue for redelivery."""
    event: str
    payload: Any
    priority: Priority = Priority.NORMAL
    enqueued_at: float = field(default_factory=time.time)
    attempts: int = 0


@dataclass
class ErrorRecord:
    """Failure bookkeeping for one context key."""
    context_key: str
    count: int = 0
    last_occurred_at: Optional[float] = None
    last_error: Optional[str] = None


@dataclass
class SyncCheckResult:
    """Outcome of comparing a local topic checksum with the server's."""
    topic_key: TopicKey
    local_checksum: Optional[str]
    server_checksum: Optional[str]
    matched: bool


@dataclass
class MergeResult:
    """Result of applying an inbound topic update to the cache."""
    key: TopicKey
    data: Any
    checksum: Optional[str]
    needs_snapshot: bool = False
    applied_changes: int = 0


# Pydantic models for wire validation

class Envelope(BaseModel):
    """Named wire frame exchanged over the connection."""
    model_config = ConfigDict(populate_by_name=True)

    event: str = Field(min_length=1)
    payload: Any = None
    priority: Optional[Literal["high", "normal", "low"]] = None
    timestamp: Union[int, float, str, None] = Field(default_factory=now_ms)
    compressed: bool = False
    original_size: Optional[int] = Field(default=None, alias="originalSize")
    encoding: Optional[str] = None


class DeltaChange(BaseModel):
    """One incremental change to a topic snapshot."""
    model_config = ConfigDict(populate_by_name=True)

    action: DeltaAction
    item_id: Optional[Any] = Field(default=None, alias="itemId")
    item: Optional[Dict[str, Any]] = None
    position: Optional[int] = None
    from_index: Optional[int] = Field(default=None, alias="from")
    to_index: Optional[int] = Field(default=None, alias="to")

    @property
    def target_id(self) -> Any:
        """Id the change applies to, taken from ``item_id`` or ``item['id']``."""
        if self.item_id is not None:
            return self.item_id
        if self.item is not None:
            return self.item.get("id")
        return None


# Inbound messages, classified into a tagged union on ``kind``

class PongMessage(BaseModel):
    kind: Literal["pong"] = "pong"
    timestamp: Any = None
    probe_id: Optional[str] = Field(default=None, alias="probeId")


class SyncCheckResponse(BaseModel):
    kind: Literal["sync_check_response"] = "sync_check_response"
    message_type: str = Field(alias="type")
    scope_id: Optional[Any] = Field(default=None, alias="scopeId")
    checksum: Optional[str] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")

    @property
    def topic_key(self) -> TopicKey:
        return TopicKey.of(self.message_type, self.scope_id)


class ServerNotice(BaseModel):
    kind: Literal["server_notice"] = "server_notice"
    event: str
    reason: str = ""


class TopicUpdate(BaseModel):
    """A domain update for a topic: full snapshot or list of changes."""
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["topic_update"] = "topic_update"
    event: str
    scope_id: Optional[Any] = Field(default=None, alias="scopeId")
    is_incremental: bool = Field(default=False, alias="isIncremental")
    data: Any = None
    changes: List[DeltaChange] = Field(default_factory=list)
    checksum: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def topic_key(self) -> TopicKey:
        return TopicKey.of(self.event, self.scope_id)


class DomainEvent(BaseModel):
    """Any other named event, delivered to subscribers unchanged."""
    kind: Literal["event"] = "event"
    event: str
    payload: Any = None


InboundMessage = Annotated[
    Union[PongMessage, SyncCheckResponse, ServerNotice, TopicUpdate, DomainEvent],
    Field(discriminator="kind"),
]

inbound_adapter = TypeAdapter(InboundMessage)
