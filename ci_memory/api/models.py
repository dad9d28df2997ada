from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


# Response Models
class IngestResponse(BaseModel):
    job_name: str
    build_number: int
    message_id: Optional[int]
    state: str
    counted: bool
    received_total: int
    expected_total: int
    dispatched: bool
    backpressured: bool = False


class MessageView(BaseModel):
    id: Optional[int]
    conversation_id: str
    build_number: int
    role: str
    content: Dict[str, Any]
    metadata: Dict[str, Any]
    created_at: Optional[datetime] = None
    logged_at: Optional[datetime] = None


class ConversationListResponse(BaseModel):
    conversations: List[str]
    total: int


class ConversationMessagesResponse(BaseModel):
    conversation_id: str
    messages: List[MessageView]
    count: int


class DeleteResponse(BaseModel):
    conversation_id: str
    deleted: int


class PruneResponse(BaseModel):
    conversation_id: str
    keep: int
    removed: int


class BuildStatusResponse(BaseModel):
    job_name: str
    build_number: int
    state: str
    received: Dict[str, int]
    received_total: int
    expected_total: int
    terminal_seen: bool
    first_seen_at: str
    last_event_at: str
    ready_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None


class BuildListResponse(BaseModel):
    builds: List[BuildStatusResponse]
    count: int


class RedispatchResponse(BaseModel):
    job_name: str
    build_number: int
    status: str
