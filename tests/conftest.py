"""Pytest configuration and shared fixtures."""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from langchain_core.messages import AIMessage

from ci_memory.core.config import Settings
from ci_memory.services.analysis_dispatcher import AnalysisDispatcher
from ci_memory.services.build_accumulator import BuildAccumulator
from ci_memory.services.context_assembler import ContextWindowAssembler
from ci_memory.services.conversation_store import InMemoryConversationStore
from ci_memory.services.ingestion_service import LogIngestionService
from ci_memory.services.llm_service import LLMService


VERDICT = {
    "jobName": "build-x",
    "buildId": 42,
    "buildMetadata": {"status": "SUCCESS", "startTime": "2025-01-01T10:00:00Z", "durationSeconds": 312},
    "summary": "Build healthy, one hardcoded token detected",
    "riskScore": {"score": 35, "previousScore": 20, "change": 15, "riskLevel": "MEDIUM"},
    "anomalies": [{
        "type": "security",
        "severity": "HIGH",
        "description": "Hardcoded token in Jenkinsfile",
        "details": {"file": "Jenkinsfile", "line": 12},
        "recommendation": "Move the token to Jenkins credentials",
        "aiAnalysis": "Token pattern matches a GitHub PAT",
    }],
    "processedLogs": [{"type": "build_log_data", "source": "jenkins", "status": "processed"}],
    "regressionFromPreviousBuilds": True,
    "insights": {
        "trendAnalysis": "Risk rising over the last 3 builds",
        "criticalIssues": ["exposed secret"],
        "dependencyNotes": [],
        "recommendations": ["rotate token"],
    },
}


def make_settings(**overrides) -> Settings:
    """Settings for tests: in-memory store, no broker, no background threads"""
    values = dict(
        store_backend="memory",
        enforce_event_age=False,
        amqp_enabled=False,
        maintenance_enabled=False,
        analysis_workers=2,
        analysis_queue_size=8,
        analysis_queue_timeout_seconds=0.1,
        analysis_backoff_min_seconds=0,
        analysis_backoff_max_seconds=0,
    )
    values.update(overrides)
    return Settings(**values)


def make_event(category: str, job: str = "build-x", build: int = 42,
               event_id: Optional[str] = None, timestamp: Optional[str] = None,
               **payload) -> Dict[str, Any]:
    event = {
        "type": category,
        "job_name": job,
        "build_number": build,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    if event_id is not None:
        event["event_id"] = event_id
    return event


def full_build_events(job: str = "build-x", build: int = 42) -> List[Dict[str, Any]]:
    """The 13 documents the Jenkins log producer sends for one build"""
    events = []
    for category, count in make_settings().expected_categories.items():
        for index in range(count):
            payload = {"index": index}
            if category == "secret_detection" and index == count - 1:
                payload["source"] = "build_log"
            events.append(make_event(category, job, build, event_id=f"{category}-{index}", **payload))
    return events


class FakeChatModel:
    """Stands in for ChatOllama; replays scripted responses or raises scripted errors"""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.requests: List[list] = []

    def invoke(self, messages):
        self.requests.append(list(messages))
        if self.responses:
            response = self.responses.pop(0)
        else:
            response = json.dumps(VERDICT)
        if isinstance(response, BaseException):
            raise response
        return AIMessage(content=response)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def accumulator(settings):
    return BuildAccumulator.from_settings(settings)


@pytest.fixture
def dispatcher(settings, store, accumulator, chat_model):
    dispatcher = AnalysisDispatcher.from_settings(
        settings, store, accumulator,
        ContextWindowAssembler(store, settings.ai_memory_window_size),
        LLMService(chat_model=chat_model),
    )
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def ingestion(settings, store, accumulator, dispatcher):
    return LogIngestionService.from_settings(settings, store, accumulator, dispatcher)
