"""Analysis verdict schema and response cleanup

The analysis service is asked for strict JSON but small models still wrap
the document in code fences or prose. `clean_json_string` recovers the
object, `parse_verdict` validates it and fills every mandatory field with a
conservative default.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ci_memory.core.exceptions import MalformedAnalysisError


logger = logging.getLogger(__name__)

_FENCE_START = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```(?:json)?\s*$", re.IGNORECASE)


class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("*", mode="before")
    @classmethod
    def _drop_nulls(cls, value, info):
        # null means "unknown"; fall back to the field default
        if value is None:
            field = cls.model_fields[info.field_name]
            return field.get_default(call_default_factory=True)
        return value


class BuildMetadata(_Camel):
    status: str = "UNKNOWN"
    start_time: str = Field(default="", alias="startTime")
    duration_seconds: float = Field(default=0, alias="durationSeconds")


class RiskScore(_Camel):
    score: float = 0
    previous_score: float = Field(default=0, alias="previousScore")
    change: float = 0
    risk_level: str = Field(default="UNKNOWN", alias="riskLevel")


class Anomaly(_Camel):
    type: str = "unknown"
    severity: str = "LOW"
    description: str = ""
    details: Any = Field(default_factory=dict)
    recommendation: str = ""
    ai_analysis: str = Field(default="", alias="aiAnalysis")


class ProcessedLog(_Camel):
    type: str = "unknown"
    source: str = ""
    status: str = "processed"


class Insights(_Camel):
    trend_analysis: str = Field(default="", alias="trendAnalysis")
    critical_issues: List[str] = Field(default_factory=list, alias="criticalIssues")
    dependency_notes: List[str] = Field(default_factory=list, alias="dependencyNotes")
    recommendations: List[str] = Field(default_factory=list)


class AnalysisVerdict(_Camel):
    job_name: str = Field(default="", alias="jobName")
    build_id: int = Field(default=0, alias="buildId")
    build_metadata: BuildMetadata = Field(default_factory=BuildMetadata, alias="buildMetadata")
    summary: str = ""
    risk_score: RiskScore = Field(default_factory=RiskScore, alias="riskScore")
    anomalies: List[Anomaly] = Field(default_factory=list)
    processed_logs: List[ProcessedLog] = Field(default_factory=list, alias="processedLogs")
    regression_from_previous_builds: bool = Field(default=False, alias="regressionFromPreviousBuilds")
    insights: Insights = Field(default_factory=Insights)

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def clean_json_string(raw: Optional[str]) -> Optional[str]:
    """Strip code fences and surrounding prose, keep the first '{' .. last '}'"""
    if raw is None:
        return None
    text = _FENCE_START.sub("", raw)
    text = _FENCE_END.sub("", text).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and start < end:
        text = text[start:end + 1]
    return text


def parse_verdict(raw: str, job_name: str, build_number: int) -> AnalysisVerdict:
    """Recover, validate and normalize the analysis service response"""
    cleaned = clean_json_string(raw)
    if not cleaned:
        raise MalformedAnalysisError("Empty response from analysis service")

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedAnalysisError(f"Invalid JSON response: {e}") from e

    if not isinstance(data, dict):
        raise MalformedAnalysisError(f"Expected a JSON object, got {type(data).__name__}")

    # the build being analysed is authoritative, whatever the model echoed back
    echoed = (data.get("jobName"), data.get("buildId"))
    if echoed != (job_name, build_number) and any(echoed):
        logger.debug(f"Verdict identifiers {echoed[0]}#{echoed[1]} overridden with {job_name}#{build_number}")
    data["jobName"] = job_name
    data["buildId"] = build_number

    try:
        return AnalysisVerdict.model_validate(data)
    except ValidationError as e:
        raise MalformedAnalysisError(f"Verdict failed validation: {e}") from e
