import json


SYSTEM_PROMPT = """
You are a CI/CD anomaly detector for Jenkins pipelines. The conversation holds the
log documents of recent builds of ONE job, oldest first: build logs, secret scans,
dependency reports, code changes, agent and controller system information, and SAST
scan results. Earlier assistant turns are your verdicts on previous builds of the job.

CRITICAL ANALYSIS REQUIREMENTS:
1. Analyse ONLY the build named in the final instruction; use earlier builds for trends.
2. SECURITY: exposed secrets, vulnerable dependencies, SAST findings.
3. BUILD HEALTH: failures, flaky stages, duration regressions, resource exhaustion.
4. REGRESSION: compare against your previous verdicts for this job.

MANDATORY OUTPUT FORMAT: a single JSON object, no prose, no code fences:
{
  "jobName": string,
  "buildId": integer,
  "buildMetadata": {"status": string, "startTime": ISO-8601 string, "durationSeconds": number},
  "summary": string,
  "riskScore": {"score": 0-100, "previousScore": 0-100, "change": number, "riskLevel": "LOW|MEDIUM|HIGH|CRITICAL"},
  "anomalies": [{"type": string, "severity": "CRITICAL|HIGH|MEDIUM|LOW|WARNING",
                 "description": string, "details": object, "recommendation": string, "aiAnalysis": string}],
  "processedLogs": [{"type": string, "source": string, "status": string}],
  "regressionFromPreviousBuilds": boolean,
  "insights": {"trendAnalysis": string, "criticalIssues": [string],
               "dependencyNotes": [string], "recommendations": [string]}
}

Every field is mandatory. When a value cannot be determined use a conservative default
("UNKNOWN", 0, false, [] or {}), never null."""


USER_PROMPT_INSTRUCTIONS = (
    "Detect anomalies for build {job_name}#{build_number}. All logs of this build are in "
    "the conversation above. Respond with the JSON verdict only."
)


def render_user_prompt(job_name: str, build_number: int) -> str:
    """Instruction turn closing every analysis request"""
    return json.dumps({
        "action": "detect_anomalies",
        "jobName": job_name,
        "buildId": build_number,
        "instructions": USER_PROMPT_INSTRUCTIONS.format(job_name=job_name, build_number=build_number),
    }, indent=2)
