"""Domain models shared by the store, accumulator and dispatcher"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(str, Enum):
    SOURCE = "SOURCE"        # ingested log chunk
    ANALYSIS = "ANALYSIS"    # AI verdict


class MessageMetadata(BaseModel):
    """Fixed metadata carried by every stored message"""
    model_config = ConfigDict(frozen=True)

    build_number: int
    category: Optional[str] = None
    fingerprint: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """One persisted conversation record. Never mutated after insertion."""
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    build_number: int
    role: MessageRole
    content: Dict[str, Any]
    metadata: MessageMetadata
    created_at: Optional[datetime] = None
    logged_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    @property
    def category(self) -> Optional[str]:
        return self.metadata.category or self.content.get("type")


class LogEvent(BaseModel):
    """Validated inbound log event"""
    model_config = ConfigDict(frozen=True)

    category: str = Field(min_length=1)
    job_name: str = Field(min_length=1)
    build_number: int = Field(ge=1)
    timestamp: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None
    received_at: Optional[datetime] = None

    @property
    def conversation_id(self) -> str:
        return self.job_name

    @property
    def fingerprint(self) -> Optional[str]:
        if self.event_id:
            return f"{self.category}:{self.event_id}"
        return None

    def to_content(self) -> Dict[str, Any]:
        """Structured document stored as the SOURCE message content"""
        return {
            "type": self.category,
            "job_name": self.job_name,
            "build_number": self.build_number,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    def to_message(self, created_at: Optional[datetime] = None) -> Message:
        return Message(
            conversation_id=self.conversation_id,
            build_number=self.build_number,
            role=MessageRole.SOURCE,
            content=self.to_content(),
            metadata=MessageMetadata(
                build_number=self.build_number,
                category=self.category,
                fingerprint=self.fingerprint,
            ),
            created_at=created_at or self.received_at,
        )


class BuildKey(NamedTuple):
    conversation_id: str
    build_number: int

    def __str__(self) -> str:
        return f"{self.conversation_id}#{self.build_number}"


class AccumulatorState(str, Enum):
    ACCUMULATING = "ACCUMULATING"
    READY = "READY"
    DISPATCHING = "DISPATCHING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (AccumulatorState.COMPLETE, AccumulatorState.FAILED)


class Completeness(NamedTuple):
    """Result of recording one event against a build"""
    state: AccumulatorState
    became_ready: bool
    counted: bool
    received_total: int
    expected_total: int


class OutcomeStatus(str, Enum):
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class AnalysisOutcome(BaseModel):
    key: BuildKey
    status: OutcomeStatus
    message: Optional[Message] = None
    attempts: int = 0
    error: Optional[str] = None
