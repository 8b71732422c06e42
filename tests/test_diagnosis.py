from __future__ import annotations

import asyncio
import json
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

import httpx

PROJECT_ROOT = Path(__file__).resolve().parents[1]
for _path in (PROJECT_ROOT, PROJECT_ROOT / "tests"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from diagnosis import (
    Category,
    DiagnosisContext,
    HttpOracle,
    OracleFailure,
    _extract_json,
    build_context,
    build_oracle,
    fallback_analysis,
    parse_analysis,
)
from fakes import FakeProbe
from monitoring._base import Issue
from monitoring.health import HealthMonitor


class TestExtractJson(unittest.TestCase):
    def test_markdown_fenced(self):
        data = _extract_json('```json\n{"severity": "low"}\n```')
        self.assertEqual(data, {"severity": "low"})

    def test_leading_prose(self):
        data = _extract_json('Here is my analysis:\n{"severity": "high", "urgency": 9}')
        self.assertEqual(data["urgency"], 9)

    def test_stray_closing_brace(self):
        data = _extract_json('oops } {"category": "bug"}')
        self.assertEqual(data["category"], "bug")

    def test_no_json(self):
        self.assertIsNone(_extract_json("the system looks fine"))
        self.assertIsNone(_extract_json(""))


class TestParseAnalysis(unittest.TestCase):
    def test_full_response(self):
        raw = json.dumps({
            "severity": "HIGH",
            "category": "content-pipeline",
            "summary": "Caption generation times out",
            "detailedAnalysis": "Upstream model latency",
            "recommendedActions": ["Raise timeout"],
            "estimatedImpact": "Users cannot generate captions",
            "urgency": 8,
            "autoFixable": False,
            "proposedChanges": [
                {"target": "server/ai.ts", "changeSpec": "const TIMEOUT = 30000;", "rationale": "slower model"},
            ],
        })
        analysis = parse_analysis(raw)
        self.assertEqual(analysis.severity, "high")
        self.assertEqual(analysis.category, "content-pipeline")
        self.assertEqual(analysis.category_enum, Category.CONTENT_PIPELINE)
        self.assertFalse(analysis.auto_fixable)
        self.assertEqual(analysis.proposed_changes[0].target, "server/ai.ts")
        self.assertEqual(analysis.source, "oracle")

    def test_defaults_and_clamping(self):
        analysis = parse_analysis('{"urgency": 42, "severity": "apocalyptic"}')
        self.assertEqual(analysis.urgency, 10)
        self.assertEqual(analysis.severity, "medium")
        self.assertEqual(analysis.category, "maintenance")
        self.assertEqual(analysis.recommended_actions, [])
        self.assertEqual(parse_analysis('{"urgency": -3}').urgency, 1)
        self.assertEqual(parse_analysis('{"urgency": "soon"}').urgency, 5)

    def test_missing_auto_fixable_follows_policy(self):
        self.assertTrue(parse_analysis('{"summary": "x"}', auto_fix_on_uncertainty=True).auto_fixable)
        self.assertFalse(parse_analysis('{"summary": "x"}', auto_fix_on_uncertainty=False).auto_fixable)

    def test_code_changes_shape(self):
        raw = {"codeChanges": [{"file": "client/App.tsx", "changes": "fixed", "reason": "crash"}, {"reason": "no file"}]}
        analysis = parse_analysis(raw)
        self.assertEqual(len(analysis.proposed_changes), 1)
        change = analysis.proposed_changes[0]
        self.assertEqual((change.target, change.change_spec, change.rationale), ("client/App.tsx", "fixed", "crash"))

    def test_unknown_category_is_kept(self):
        analysis = parse_analysis('{"category": "unknown-category"}')
        self.assertEqual(analysis.category, "unknown-category")
        self.assertIsNone(analysis.category_enum)

    def test_underscore_category_normalized(self):
        self.assertEqual(parse_analysis('{"category": "content_pipeline"}').category, "content-pipeline")

    def test_unparseable_raises(self):
        with self.assertRaises(OracleFailure):
            parse_analysis("I could not analyze this")


class TestFallbackAnalysis(unittest.TestCase):
    def test_fallback_is_auto_fixable_by_default(self):
        analysis = fallback_analysis(OracleFailure("401 Unauthorized"))
        self.assertEqual(analysis.severity, "high")
        self.assertEqual(analysis.category, "bug")
        self.assertEqual(analysis.urgency, 7)
        self.assertTrue(analysis.auto_fixable)
        self.assertEqual(analysis.source, "fallback")
        self.assertIn("401 Unauthorized", analysis.detailed_analysis)

    def test_fallback_respects_policy(self):
        self.assertFalse(fallback_analysis("down", auto_fix_on_uncertainty=False).auto_fixable)

    def test_fallback_names_timeout(self):
        analysis = fallback_analysis(asyncio.TimeoutError())
        self.assertIn("TimeoutError", analysis.detailed_analysis)


class TestContext(unittest.TestCase):
    def test_build_context_snapshot(self):
        monitor = HealthMonitor(FakeProbe(storage_ms=30))
        asyncio.run(monitor.sample_metrics())
        issue = monitor.add_issue(kind="error", severity="critical", component="api", description="down")
        context = build_context(monitor, issue=issue)
        self.assertTrue(context.targeted)
        payload = context.as_payload()
        self.assertEqual(payload["issue"]["id"], issue.issue_id)
        self.assertEqual(payload["performance"]["response_time_ms"], 30)
        self.assertEqual(payload["performance"]["error_rate"], 1)

    def test_empty_context(self):
        payload = DiagnosisContext().as_payload()
        self.assertIsNone(payload["healthMetrics"])
        self.assertEqual(payload["recentIssues"], [])


def _chat_response(content: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={"choices": [{"message": {"content": content}}]})


class TestHttpOracle(unittest.TestCase):
    def test_parses_chat_completion(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return _chat_response('{"severity": "critical", "category": "payments", "urgency": 9, "autoFixable": true}')

        oracle = HttpOracle(api_key="k", base_url="http://oracle.test/v1", transport=httpx.MockTransport(handler))
        analysis = asyncio.run(oracle.analyze(DiagnosisContext()))
        self.assertEqual(analysis.category, "payments")
        self.assertEqual(analysis.urgency, 9)
        self.assertEqual(seen[0]["messages"][0]["role"], "system")

    def test_retries_once_on_503(self):
        responses = [httpx.Response(503), _chat_response('{"summary": "ok"}')]

        def handler(request):
            return responses.pop(0)

        oracle = HttpOracle(api_key="k", base_url="http://oracle.test/v1", transport=httpx.MockTransport(handler))
        with patch("diagnosis._RETRY_DELAY_STATUS", 0):
            analysis = asyncio.run(oracle.analyze(DiagnosisContext()))
        self.assertEqual(analysis.summary, "ok")
        self.assertEqual(responses, [])

    def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        oracle = HttpOracle(api_key="k", base_url="http://oracle.test/v1", transport=httpx.MockTransport(handler))
        with self.assertRaises(OracleFailure):
            asyncio.run(oracle.analyze(DiagnosisContext()))
        self.assertEqual(len(calls), 1)

    def test_missing_api_key(self):
        oracle = HttpOracle(api_key="", base_url="http://oracle.test/v1")
        with self.assertRaises(OracleFailure):
            asyncio.run(oracle.analyze(DiagnosisContext()))

    def test_build_oracle(self):
        self.assertIsInstance(build_oracle("http", api_key="k"), HttpOracle)
        with self.assertRaises(ValueError):
            build_oracle("carrier-pigeon")


class TestIssueTargeting(unittest.TestCase):
    def test_targeted_prompt_includes_issue(self):
        captured = []

        def handler(request):
            captured.append(json.loads(request.content)["messages"][1]["content"])
            return _chat_response('{"summary": "ok"}')

        issue = Issue(kind="error", severity="critical", component="database", description="Database health check failed")
        oracle = HttpOracle(api_key="k", base_url="http://oracle.test/v1", transport=httpx.MockTransport(handler))
        asyncio.run(oracle.analyze(DiagnosisContext(issue=issue)))
        self.assertIn("Database health check failed", captured[0])


if __name__ == "__main__":
    unittest.main()
