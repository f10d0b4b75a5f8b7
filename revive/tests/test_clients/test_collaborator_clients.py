"""Tests for the HTTP collaborator clients and LLM output handling."""

import json
import time
from unittest.mock import MagicMock

import httpx
import pytest

from revive.core.clients import (
    BehavioralAnalysisClient,
    CodeAnalysisClient,
    CodeGenerator,
    parse_json_output,
)
from revive.core.errors import CollaboratorError, CollaboratorUnavailableError


@pytest.fixture(autouse=True)
def no_backoff_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


def _client(cls, handler):
    http = httpx.Client(base_url="http://collab.test", transport=httpx.MockTransport(handler))
    return cls("http://collab.test", client=http)


# ── Tests: HTTP error translation ────────────────────────────────────────


class TestHttpErrors:

    def test_server_error_retried_then_unavailable(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(503, text="overloaded")

        client = _client(CodeAnalysisClient, handler)

        with pytest.raises(CollaboratorUnavailableError):
            client.get_stats_overview()
        assert len(calls) == 3

    def test_transient_error_recovers(self):
        responses = iter([httpx.Response(502), httpx.Response(200, json={"files": 3})])
        client = _client(CodeAnalysisClient, lambda request: next(responses))

        assert client.get_stats_overview() == {"files": 3}

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(404, text="no such knowledge base")

        client = _client(BehavioralAnalysisClient, handler)

        with pytest.raises(CollaboratorError):
            client.query_knowledge("kb-1")
        assert len(calls) == 1

    def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(CodeAnalysisClient, handler)

        with pytest.raises(CollaboratorUnavailableError):
            client.get_stats_overview()

    def test_non_json_body(self):
        client = _client(CodeAnalysisClient, lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(CollaboratorError):
            client.get_stats_overview()


# ── Tests: Code analysis ─────────────────────────────────────────────────


class TestCodeAnalysisClient:

    def test_feature_map_groups_by_context(self):
        graph = {
            "nodes": [
                {"id": "1", "label": "login", "kind": "function", "filePath": "auth.js",
                 "featureContext": "auth"},
                {"id": "2", "label": "checkout", "kind": "function", "filePath": "cart.js",
                 "featureContext": "cart, payments"},
                {"id": "3", "label": "addItem", "kind": "function", "filePath": "cart.js",
                 "featureContext": "cart"},
                {"id": "4", "label": "util", "kind": "function", "filePath": "util.js"},
            ]
        }

        def handler(request):
            assert request.url.path == "/api/graph"
            return httpx.Response(200, json=graph)

        result = _client(CodeAnalysisClient, handler).derive_feature_map()

        assert [f["name"] for f in result["features"]][0] == "cart"
        cart = result["features"][0]
        assert cart["entityCount"] == 2
        assert cart["fileCount"] == 1
        assert result["totalFeatures"] == 3
        assert result["totalEntities"] == 4

    def test_list_functions_unwraps_envelope(self):
        def handler(request):
            assert request.url.params["limit"] == "100"
            return httpx.Response(200, json={"functions": [{"name": "f"}]})

        assert _client(CodeAnalysisClient, handler).list_functions() == [{"name": "f"}]

    def test_slice_dependencies_joins_features(self):
        def handler(request):
            assert request.url.path == "/api/migration/slice-dependencies"
            assert request.url.params["features"] == "auth,cart"
            return httpx.Response(200, json={"edges": [["cart", "auth"]]})

        result = _client(CodeAnalysisClient, handler).get_slice_dependencies(["auth", "cart"])

        assert result == {"edges": [["cart", "auth"]]}


# ── Tests: Behavioral analysis ───────────────────────────────────────────


class TestBehavioralAnalysisClient:

    def test_start_ingestion_omits_empty_fields(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"job_id": "wf-1"})

        client = _client(BehavioralAnalysisClient, handler)

        assert client.start_ingestion("kb-1") == {"job_id": "wf-1"}
        assert seen["body"] == {"knowledge_id": "kb-1"}

    def test_wait_for_workflow_polls_until_done(self):
        statuses = iter(["running", "running", "complete"])

        def handler(request):
            return httpx.Response(200, json={"status": next(statuses)})

        sleeps = []
        client = _client(BehavioralAnalysisClient, handler)

        result = client.wait_for_workflow("wf-1", max_attempts=5, interval=2.0, sleep=sleeps.append)

        assert result["status"] == "complete"
        assert sleeps == [2.0, 2.0]

    def test_wait_for_workflow_gives_up(self):
        client = _client(BehavioralAnalysisClient, lambda request: httpx.Response(200, json={"status": "running"}))

        with pytest.raises(CollaboratorUnavailableError):
            client.wait_for_workflow("wf-1", max_attempts=2, interval=0, sleep=lambda s: None)

    def test_contract_left_brain_view(self):
        def handler(request):
            assert request.url.path == "/api/knowledge/contracts/c-9/left-brain"
            return httpx.Response(200, json={"functions": ["login"]})

        assert _client(BehavioralAnalysisClient, handler).get_contract_left_brain("c-9") == {"functions": ["login"]}


# ── Tests: LLM output ────────────────────────────────────────────────────


class TestParseJsonOutput:

    def test_fenced(self):
        assert parse_json_output('```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_in_prose(self):
        assert parse_json_output('Here is the plan:\n[{"name": "auth"}]\nGood luck') == [{"name": "auth"}]

    def test_garbage(self):
        with pytest.raises(CollaboratorError):
            parse_json_output("no json here")


class TestCodeGenerator:

    def _llm(self, text):
        llm = MagicMock()
        llm.complete.return_value = MagicMock(text=text)
        return llm

    def test_plan_slices_accepts_wrapped_object(self):
        gen = CodeGenerator(self._llm('{"slices": [{"name": "auth", "priority": 1}, {"priority": 2}]}'))

        planned = gen.plan_slices({"target_framework": "nextjs", "metadata": {}}, {})

        assert planned == [{"name": "auth", "priority": 1}]

    def test_generate_files(self):
        gen = CodeGenerator(self._llm(json.dumps({
            "files": [{"path": "src/a.ts", "content": "x"}, {"path": "src/b.ts"}],
            "test_command": "npm test -- a",
        })))

        generated = gen.generate_files({"name": "a"}, ["package.json"])

        assert [f.path for f in generated.files] == ["src/a.ts"]
        assert generated.test_command == "npm test -- a"

    def test_diagnose_falls_back_to_raw_text(self):
        gen = CodeGenerator(self._llm("The import path is wrong."))

        diagnosis = gen.diagnose({"name": "a"}, "FAIL", attempt=1)

        assert diagnosis.summary == "The import path is wrong."
        assert diagnosis.edits == []

    def test_llm_failure_is_unavailable(self):
        llm = MagicMock()
        llm.complete.side_effect = RuntimeError("rate limited")

        with pytest.raises(CollaboratorUnavailableError):
            CodeGenerator(llm).diagnose({"name": "a"}, "FAIL", attempt=1)
