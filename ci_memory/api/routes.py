"""FastAPI routes: event intake and conversation/build maintenance"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool

from ci_memory.api.dependencies import get_engine
from ci_memory.api.models import (
    BuildListResponse, BuildStatusResponse, ConversationListResponse,
    ConversationMessagesResponse, DeleteResponse, IngestResponse, MessageView,
    PruneResponse, RedispatchResponse,
)
from ci_memory.core.engine import Engine
from ci_memory.core.models import BuildKey, Message


router = APIRouter()
logger = logging.getLogger(__name__)


def _message_view(message: Message) -> MessageView:
    return MessageView(
        id=message.id,
        conversation_id=message.conversation_id,
        build_number=message.build_number,
        role=message.role.value,
        content=message.content,
        metadata=message.metadata.model_dump(mode="json"),
        created_at=message.created_at,
        logged_at=message.logged_at,
    )


# ========= EVENT INTAKE =========

@router.post("/events", response_model=IngestResponse, status_code=202)
async def ingest_event(request: Request, engine: Engine = Depends(get_engine)):
    """Accept one log event. The response is sent only after it is stored."""
    raw = await request.body()
    result = await run_in_threadpool(engine.ingestion.ingest, raw)
    return result.to_dict()


# ========= CONVERSATIONS =========

@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(engine: Engine = Depends(get_engine)):
    conversations = sorted(engine.store.list_conversations())
    return {"conversations": conversations, "total": len(conversations)}


@router.get("/conversations/{conversation_id}/messages", response_model=ConversationMessagesResponse)
def get_messages(conversation_id: str,
                 limit: int = Query(100, ge=1, le=1000),
                 engine: Engine = Depends(get_engine)):
    messages = engine.store.recent(conversation_id, limit)
    return {
        "conversation_id": conversation_id,
        "messages": [_message_view(m) for m in messages],
        "count": len(messages),
    }


@router.delete("/conversations/{conversation_id}", response_model=DeleteResponse)
def delete_conversation(conversation_id: str, engine: Engine = Depends(get_engine)):
    deleted = engine.store.delete_conversation(conversation_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    logger.info(f"🗑️  Deleted conversation {conversation_id} ({deleted} messages)")
    return {"conversation_id": conversation_id, "deleted": deleted}


@router.post("/conversations/{conversation_id}/prune", response_model=PruneResponse)
def prune_conversation(conversation_id: str,
                       keep: Optional[int] = Query(None, ge=0),
                       engine: Engine = Depends(get_engine)):
    keep = engine.settings.max_messages_per_conversation if keep is None else keep
    removed = engine.store.prune(conversation_id, keep)
    return {"conversation_id": conversation_id, "keep": keep, "removed": removed}


# ========= BUILDS =========

@router.get("/builds/stale", response_model=BuildListResponse)
def stale_builds(engine: Engine = Depends(get_engine)):
    builds = [s.to_dict() for s in engine.accumulator.stale()]
    return {"builds": builds, "count": len(builds)}


@router.get("/builds/failed", response_model=BuildListResponse)
def failed_builds(engine: Engine = Depends(get_engine)):
    builds = [s.to_dict() for s in engine.accumulator.failed()]
    return {"builds": builds, "count": len(builds)}


@router.get("/builds/{job_name}/{build_number}", response_model=BuildStatusResponse)
def build_status(job_name: str, build_number: int, engine: Engine = Depends(get_engine)):
    snapshot = engine.accumulator.snapshot(BuildKey(job_name, build_number))
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Build {job_name}#{build_number} not tracked")
    return snapshot.to_dict()


@router.post("/builds/{job_name}/{build_number}/redispatch", response_model=RedispatchResponse,
             status_code=202)
def redispatch_build(job_name: str, build_number: int, engine: Engine = Depends(get_engine)):
    key = BuildKey(job_name, build_number)
    if engine.accumulator.state(key) is None:
        raise HTTPException(status_code=404, detail=f"Build {key} not tracked")

    future = engine.dispatcher.redispatch(job_name, build_number)
    if future is None:
        state = engine.accumulator.state(key)
        raise HTTPException(status_code=409,
                            detail=f"Build {key} is {state.value if state else 'unknown'}, not re-dispatchable")
    logger.info(f"🔁 Re-dispatch requested for {key}")
    return {"job_name": job_name, "build_number": build_number, "status": "queued"}
