"""Diagnosis — turns a health snapshot into a structured Analysis.

The reasoning service (the "oracle") is an external dependency. Two
backends ship here:

  - ClaudeOracle: text-only Claude Agent SDK query, no tools
  - HttpOracle: OpenAI-compatible /chat/completions over httpx

Both return raw model text which ``parse_analysis`` normalizes. Callers
never see an oracle exception: the orchestrator swaps in
``fallback_analysis`` so an outage of the diagnosis service is itself
something the remediation loop can react to.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Protocol

import config
from monitoring._base import SEVERITIES, HealthMetric, Issue
from utils import track_latency, utc_now

log = logging.getLogger(__name__)

_RETRY_DELAY_TIMEOUT = 2
_RETRY_DELAY_STATUS = 3


class OracleFailure(Exception):
    """The diagnosis service failed (transport error or unusable response)."""


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class Category(str, enum.Enum):
    PERFORMANCE = "performance"
    BUG = "bug"
    SECURITY = "security"
    MAINTENANCE = "maintenance"
    ENHANCEMENT = "enhancement"
    CONTENT_PIPELINE = "content-pipeline"
    PUBLISHING = "publishing"
    PAYMENTS = "payments"
    WORKFLOW = "workflow"

    @classmethod
    def parse(cls, value: Any) -> "Category | None":
        raw = str(value or "").strip().lower().replace("_", "-")
        try:
            return cls(raw)
        except ValueError:
            return None


@dataclass(frozen=True)
class ProposedChange:
    """One artifact change proposed by the oracle."""
    target: str
    change_spec: Any
    rationale: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "changeSpec": self.change_spec,
            "rationale": self.rationale,
        }


@dataclass
class Analysis:
    severity: str
    category: str  # a Category value, or an unrecognized string kept verbatim
    summary: str
    detailed_analysis: str
    recommended_actions: list[str] = field(default_factory=list)
    urgency: int = 5  # 1-10
    auto_fixable: bool = False
    proposed_changes: list[ProposedChange] = field(default_factory=list)
    estimated_impact: str = ""
    source: str = "oracle"  # "oracle" | "fallback"
    created_at: datetime = field(default_factory=utc_now)

    @property
    def category_enum(self) -> Category | None:
        return Category.parse(self.category)

    def as_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "category": self.category,
            "summary": self.summary,
            "detailedAnalysis": self.detailed_analysis,
            "recommendedActions": list(self.recommended_actions),
            "urgency": self.urgency,
            "autoFixable": self.auto_fixable,
            "proposedChanges": [c.as_dict() for c in self.proposed_changes],
            "estimatedImpact": self.estimated_impact,
            "source": self.source,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class DiagnosisContext:
    """Read-only snapshot handed to the oracle."""
    metrics: tuple[HealthMetric, ...] = ()
    issues: tuple[Issue, ...] = ()
    issue: Issue | None = None

    @property
    def targeted(self) -> bool:
        return self.issue is not None

    def performance(self) -> dict[str, Any]:
        latest = self.metrics[-1] if self.metrics else None
        return {
            "response_time_ms": latest.response_time_ms if latest else 0,
            "memory_usage_mb": round(latest.memory_usage_mb, 2) if latest else 0,
            "error_rate": sum(1 for i in self.issues if i.kind == "error"),
        }

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "healthMetrics": self.metrics[-1].as_dict() if self.metrics else None,
            "recentMetrics": [m.as_dict() for m in self.metrics],
            "recentIssues": [i.as_dict() for i in self.issues],
            "performance": self.performance(),
        }
        if self.issue is not None:
            payload["issue"] = self.issue.as_dict()
        return payload


def build_context(
    monitor,
    *,
    issue: Issue | None = None,
    issue_window_hours: float = 6,
    metrics_limit: int = 10,
) -> DiagnosisContext:
    """Snapshot the monitor's recent state (last 6h of issues by default)."""
    metrics = monitor.all_metrics()[-metrics_limit:]
    return DiagnosisContext(
        metrics=tuple(metrics),
        issues=tuple(monitor.recent_issues(hours=issue_window_hours)),
        issue=issue,
    )


class Oracle(Protocol):
    async def analyze(self, context: DiagnosisContext) -> Analysis:
        ...


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ANALYSIS_SYSTEM_PROMPT = """\
You are the site-reliability analyst for a multi-tenant AI content platform \
(content generation, social publishing, subscriptions). Analyze the health \
snapshot you are given and answer with specific, actionable recommendations.

Respond ONLY with a JSON object (no markdown, no explanation). Schema:

{
  "severity": "low" | "medium" | "high" | "critical",
  "category": "performance" | "bug" | "security" | "maintenance" | "enhancement" \
| "content-pipeline" | "publishing" | "payments" | "workflow",
  "summary": "<one line>",
  "detailedAnalysis": "<technical analysis>",
  "recommendedActions": ["<action>", "..."],
  "estimatedImpact": "<impact>",
  "urgency": 1 to 10,
  "autoFixable": true | false,
  "proposedChanges": [
    {"target": "<relative path>", "changeSpec": "<full new content or an op object>", \
"rationale": "<why>"}
  ]
}

Only mark autoFixable when every proposed change is safe to apply unattended.
"""


def _user_prompt(context: DiagnosisContext) -> str:
    snapshot = json.dumps(context.as_payload(), indent=2, default=str)
    if context.targeted:
        return (
            "Analyze this specific system issue and propose a remediation.\n\n"
            f"SYSTEM SNAPSHOT (includes the issue under 'issue'):\n{snapshot}"
        )
    return f"CURRENT SYSTEM CONTEXT:\n{snapshot}"


# ---------------------------------------------------------------------------
# JSON extraction from response text
# ---------------------------------------------------------------------------

_FENCE = re.compile(r"```(?:json)?")
_DECODER = json.JSONDecoder()


def _extract_json(text: str) -> dict | None:
    """First JSON object in an oracle reply, ignoring code fences and prose around it."""
    cleaned = _FENCE.sub("", text or "")
    for match in re.finditer(r"\{", cleaned):
        try:
            data, _ = _DECODER.raw_decode(cleaned, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _coerce_changes(raw_changes: Any) -> list[ProposedChange]:
    if not isinstance(raw_changes, list):
        return []
    changes: list[ProposedChange] = []
    for item in raw_changes:
        if not isinstance(item, dict):
            continue
        # "file/changes/reason" is the older codeChanges shape
        target = str(item.get("target", item.get("file", "")) or "").strip()
        if not target:
            continue
        spec = item.get("changeSpec", item.get("change_spec", item.get("changes")))
        rationale = str(item.get("rationale", item.get("reason", "")) or "")
        changes.append(ProposedChange(target=target, change_spec=spec, rationale=rationale))
    return changes


def _coerce_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _coerce_urgency(value: Any) -> int:
    try:
        urgency = int(round(float(value)))
    except (TypeError, ValueError):
        urgency = 5
    return max(1, min(10, urgency))


def parse_analysis(
    response: str | dict,
    *,
    auto_fix_on_uncertainty: bool = config.DEFAULT_AUTO_FIX_ON_UNCERTAINTY,
) -> Analysis:
    """Normalize an oracle response into an Analysis.

    Missing fields get conservative defaults; a missing ``autoFixable`` falls
    back to the ``auto_fix_on_uncertainty`` policy. Raises OracleFailure when
    no JSON object can be found.
    """
    data = response if isinstance(response, dict) else _extract_json(response)
    if not data:
        preview = str(response or "")[:200]
        raise OracleFailure(f"unparseable analysis response: {preview!r}")

    severity = str(data.get("severity", "medium") or "medium").strip().lower()
    if severity not in SEVERITIES:
        severity = "medium"

    raw_category = str(data.get("category", "") or "").strip()
    parsed_category = Category.parse(raw_category)
    if parsed_category is not None:
        category = parsed_category.value
    else:
        category = raw_category or Category.MAINTENANCE.value

    actions = data.get("recommendedActions", data.get("recommended_actions", []))
    if isinstance(actions, str):
        actions = [actions]
    elif not isinstance(actions, list):
        actions = []

    changes = _coerce_changes(
        data.get("proposedChanges", data.get("proposed_changes", data.get("codeChanges")))
    )

    return Analysis(
        severity=severity,
        category=category,
        summary=str(data.get("summary", "") or "System analysis completed"),
        detailed_analysis=str(
            data.get("detailedAnalysis", data.get("detailed_analysis", ""))
            or "No detailed analysis available"
        ),
        recommended_actions=[str(a) for a in actions],
        urgency=_coerce_urgency(data.get("urgency", 5)),
        auto_fixable=_coerce_bool(
            data.get("autoFixable", data.get("auto_fixable")),
            auto_fix_on_uncertainty,
        ),
        proposed_changes=changes,
        estimated_impact=str(data.get("estimatedImpact", "") or "Unknown impact"),
        source="oracle",
    )


def fallback_analysis(
    exc: BaseException | str,
    *,
    auto_fix_on_uncertainty: bool = config.DEFAULT_AUTO_FIX_ON_UNCERTAINTY,
    issue: Issue | None = None,
) -> Analysis:
    """Synthetic self-diagnosis used whenever the oracle fails."""
    reason = exc if isinstance(exc, str) else (str(exc) or type(exc).__name__)
    detail = f"Diagnosis service failed: {reason}"
    if issue is not None:
        detail += f" (while analyzing {issue.component}: {issue.description})"
    return Analysis(
        severity="high",
        category=Category.BUG.value,
        summary="Diagnosis service error",
        detailed_analysis=detail,
        recommended_actions=[
            "Check diagnosis service credentials",
            "Review system logs",
            "Restart the diagnosis client",
        ],
        urgency=7,
        auto_fixable=auto_fix_on_uncertainty,
        proposed_changes=[],
        estimated_impact="Medium - autonomous diagnosis degraded",
        source="fallback",
    )


# ---------------------------------------------------------------------------
# Oracle backends
# ---------------------------------------------------------------------------

class ClaudeOracle:
    """Text-only Claude query — no tools, no permissions."""

    def __init__(self, model: str | None = None, *, auto_fix_on_uncertainty: bool | None = None):
        self.model = model or config.CLAUDE_MODEL
        self.auto_fix_on_uncertainty = (
            config.DEFAULT_AUTO_FIX_ON_UNCERTAINTY
            if auto_fix_on_uncertainty is None else auto_fix_on_uncertainty
        )

    @track_latency("oracle", "claude_analyze")
    async def analyze(self, context: DiagnosisContext) -> Analysis:
        from claude_agent_sdk import (
            AssistantMessage,
            ClaudeAgentOptions,
            ResultMessage,
            TextBlock,
            query,
        )

        prompt_text = _user_prompt(context)
        options = ClaudeAgentOptions(
            system_prompt=ANALYSIS_SYSTEM_PROMPT,
            model=self.model,
            allowed_tools=[],
        )

        async def _prompt():
            yield {
                "type": "user",
                "session_id": "",
                "message": {"role": "user", "content": prompt_text},
                "parent_tool_use_id": None,
            }

        response_text = ""
        try:
            async for message in query(prompt=_prompt(), options=options):
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock):
                            response_text += block.text
                elif isinstance(message, ResultMessage) and message.is_error:
                    raise OracleFailure(f"Claude analysis error: {message.result}")
        except OracleFailure:
            raise
        except Exception as exc:
            raise OracleFailure(f"Claude query failed: {exc}") from exc

        return parse_analysis(response_text, auto_fix_on_uncertainty=self.auto_fix_on_uncertainty)


class HttpOracle:
    """OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float = 30.0,
        auto_fix_on_uncertainty: bool | None = None,
        transport=None,
    ):
        self.api_key = api_key if api_key is not None else config.ORACLE_API_KEY
        self.base_url = (base_url or config.ORACLE_BASE_URL).rstrip("/")
        self.model = model or config.ORACLE_MODEL
        self.timeout = timeout
        self.auto_fix_on_uncertainty = (
            config.DEFAULT_AUTO_FIX_ON_UNCERTAINTY
            if auto_fix_on_uncertainty is None else auto_fix_on_uncertainty
        )
        self._transport = transport

    @track_latency("oracle", "http_analyze")
    async def analyze(self, context: DiagnosisContext) -> Analysis:
        text = await self._complete(_user_prompt(context), temperature=0.2 if context.targeted else 0.3)
        return parse_analysis(text, auto_fix_on_uncertainty=self.auto_fix_on_uncertainty)

    async def _complete(self, user_prompt: str, *, temperature: float) -> str:
        import httpx

        if not self.api_key:
            raise OracleFailure("oracle API key not configured")

        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": temperature,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        last_exc: Exception | None = None
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.post(
                        f"{self.base_url}/chat/completions",
                        headers=headers,
                        json=body,
                    )
                    resp.raise_for_status()
                    data = resp.json()

                content = data.get("choices", [{}])[0].get("message", {}).get("content", "")
                if isinstance(content, list):
                    content = "\n".join(str(chunk) for chunk in content)
                return str(content).strip()

            except httpx.TimeoutException as exc:
                last_exc = exc
                if attempt == 0:
                    await asyncio.sleep(_RETRY_DELAY_TIMEOUT)
                    continue
            except httpx.HTTPStatusError as exc:
                last_exc = exc
                if exc.response.status_code in (429, 502, 503) and attempt == 0:
                    await asyncio.sleep(_RETRY_DELAY_STATUS)
                    continue
                break
            except (httpx.HTTPError, ValueError, IndexError, AttributeError) as exc:
                last_exc = exc
                break

        raise OracleFailure(f"oracle request failed: {last_exc}") from last_exc


def build_oracle(backend: str | None = None, **kwargs) -> Oracle:
    """Construct the oracle named by config (``claude`` or ``http``)."""
    name = (backend or config.ORACLE_BACKEND).strip().lower()
    if name == "http":
        return HttpOracle(**kwargs)
    if name == "claude":
        return ClaudeOracle(**kwargs)
    raise ValueError(f"unsupported oracle backend: {name!r}")


def summarize(analyses: Iterable[Analysis]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for analysis in analyses:
        counts[analysis.category] = counts.get(analysis.category, 0) + 1
    return counts
