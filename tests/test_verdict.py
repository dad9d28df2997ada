"""Unit tests for verdict cleanup and normalization."""
import json

import pytest

from ci_memory.core.exceptions import MalformedAnalysisError
from ci_memory.core.prompts import render_user_prompt
from ci_memory.core.verdict import clean_json_string, parse_verdict

from conftest import VERDICT


def test_clean_json_string_strips_fences():
    raw = "```json\n{\"summary\": \"ok\"}\n```"

    assert clean_json_string(raw) == '{"summary": "ok"}'


def test_clean_json_string_strips_prose():
    raw = 'Here is the analysis: {"summary": "ok", "insights": {}} hope it helps'

    assert clean_json_string(raw) == '{"summary": "ok", "insights": {}}'


def test_clean_json_string_passthrough():
    assert clean_json_string(None) is None
    assert clean_json_string("no json at all") == "no json at all"


def test_parse_full_verdict():
    verdict = parse_verdict(json.dumps(VERDICT), "build-x", 42)

    assert verdict.risk_score.score == 35
    assert verdict.anomalies[0].ai_analysis == "Token pattern matches a GitHub PAT"
    assert verdict.regression_from_previous_builds is True
    assert verdict.to_content()["riskScore"]["riskLevel"] == "MEDIUM"


def test_missing_and_null_fields_get_defaults():
    raw = json.dumps({
        "summary": "partial",
        "riskScore": {"score": None, "riskLevel": "LOW"},
        "anomalies": [{"type": "build", "severity": None}],
        "insights": None,
    })

    content = parse_verdict(raw, "job-a", 3).to_content()

    assert content["jobName"] == "job-a"
    assert content["buildId"] == 3
    assert content["buildMetadata"] == {"status": "UNKNOWN", "startTime": "", "durationSeconds": 0}
    assert content["riskScore"]["score"] == 0
    assert content["anomalies"][0]["severity"] == "LOW"
    assert content["insights"]["criticalIssues"] == []
    assert content["processedLogs"] == []
    assert content["regressionFromPreviousBuilds"] is False
    assert None not in content.values()


def test_build_identity_is_authoritative():
    raw = json.dumps({**VERDICT, "jobName": "other", "buildId": "not-a-number"})

    verdict = parse_verdict(raw, "build-x", 43)

    assert verdict.job_name == "build-x"
    assert verdict.build_id == 43


@pytest.mark.parametrize("raw", ["", "   ", "not json", "[1, 2, 3]"])
def test_unrecoverable_responses(raw):
    with pytest.raises(MalformedAnalysisError):
        parse_verdict(raw, "job-a", 1)


def test_render_user_prompt_names_the_build():
    prompt = json.loads(render_user_prompt("job-a", 7))

    assert prompt["jobName"] == "job-a"
    assert prompt["buildId"] == 7
    assert "job-a#7" in prompt["instructions"]
