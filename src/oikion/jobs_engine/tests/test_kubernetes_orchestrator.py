from __future__ import annotations

import json

import httpx
import pytest

from oikion.config.settings import Settings
from oikion.jobs_engine.job_types import DEFAULT_JOB_TYPE_CONFIGS, load_job_type_payload
from oikion.jobs_engine.models.job import JobType
from oikion.jobs_engine.orchestrator.kubernetes import KubernetesOrchestrator, parse_job_status
from oikion.jobs_engine.services.job_errors import OrchestratorError

JOB_ID = "0b6f1a2c-3d4e-5f60-7182-93a4b5c6d7e8"


def _settings(**overrides):
    values = {
        "K8S_API_URL": "https://k8s.test",
        "K8S_SERVICE_ACCOUNT_TOKEN": "sa-token",
        "JOB_REDIS_URL": "redis://cache:6379/0",
    }
    values.update(overrides)
    return Settings(**values)


def _client(handler, registry=DEFAULT_JOB_TYPE_CONFIGS, **overrides):
    return KubernetesOrchestrator(
        registry, _settings(**overrides), transport=httpx.MockTransport(handler)
    )


def test_create_job_posts_manifest_with_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json=seen["body"])

    created = _client(handler).create_job(
        job_id=JOB_ID,
        job_type=JobType.BULK_EXPORT,
        tenant_id="org-1",
        payload={"type": "bulk-export"},
        callback_url="https://api/cb",
        callback_token="tok",
    )

    assert seen["method"] == "POST"
    assert seen["path"] == "/apis/batch/v1/namespaces/oikion-jobs/jobs"
    assert seen["auth"] == "Bearer sa-token"
    assert seen["body"]["metadata"]["name"] == created.job_name
    env = {e["name"]: e.get("value") for e in seen["body"]["spec"]["template"]["spec"]["containers"][0]["env"]}
    assert env["REDIS_URL"] == "redis://cache:6379/0"
    assert env["CALLBACK_TOKEN"] == "tok"


def test_create_job_maps_rejection_to_orchestrator_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="forbidden: quota exceeded")

    with pytest.raises(OrchestratorError) as excinfo:
        _client(handler).create_job(
            job_id=JOB_ID, job_type=JobType.BULK_EXPORT, tenant_id="org-1", payload={}
        )

    assert excinfo.value.status_code == 403
    assert "quota exceeded" in excinfo.value.body


def test_transport_errors_become_orchestrator_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(OrchestratorError):
        _client(handler).delete_job("bulkexport-abc")


def test_missing_token_is_reported(tmp_path):
    client = KubernetesOrchestrator(
        DEFAULT_JOB_TYPE_CONFIGS,
        _settings(K8S_SERVICE_ACCOUNT_TOKEN="", K8S_TOKEN_PATH=str(tmp_path / "missing")),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
    )

    with pytest.raises(OrchestratorError):
        client.get_job_status("bulkexport-abc")


def test_get_job_status_parses_counts_and_conditions():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/apis/batch/v1/namespaces/oikion-jobs/jobs/bulkexport-abc"
        return httpx.Response(
            200,
            json={
                "status": {
                    "failed": 1,
                    "startTime": "2026-10-17T10:00:00Z",
                    "conditions": [
                        {"type": "Failed", "status": "True", "reason": "BackoffLimitExceeded"}
                    ],
                }
            },
        )

    client = _client(handler)
    status = client.get_job_status("bulkexport-abc")

    assert status.summary() == {"active": 0, "succeeded": 0, "failed": 1}
    assert status.has_condition("Failed")
    assert status.start_time.year == 2026
    state = client.is_job_complete("bulkexport-abc")
    assert (state.complete, state.succeeded) == (True, False)


def test_get_job_status_returns_none_when_missing():
    client = _client(lambda request: httpx.Response(404, json={"reason": "NotFound"}))

    assert client.get_job_status("bulkexport-abc") is None
    state = client.is_job_complete("bulkexport-abc")
    assert (state.complete, state.succeeded) == (False, False)


def test_requests_use_namespace_of_job_type():
    registry = load_job_type_payload(
        {"job_types": [{"type": "newsletter-send", "namespace": "oikion-mail"}]}, source="inline"
    )
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={})

    client = _client(handler, registry=registry)
    client.delete_job("newslettersend-abc")
    client.delete_job("bulkexport-abc")

    assert paths == [
        "/apis/batch/v1/namespaces/oikion-mail/jobs/newslettersend-abc",
        "/apis/batch/v1/namespaces/oikion-jobs/jobs/bulkexport-abc",
    ]


def test_delete_uses_background_propagation():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={})

    _client(handler).delete_job("bulkexport-abc")

    assert seen["params"] == {"propagationPolicy": "Background"}


def test_logs_resolve_pod_then_tail():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/pods"):
            assert request.url.params["labelSelector"] == "job-name=bulkexport-abc"
            return httpx.Response(200, json={"items": [{"metadata": {"name": "bulkexport-abc-x7k2"}}]})
        assert request.url.path == "/api/v1/namespaces/oikion-jobs/pods/bulkexport-abc-x7k2/log"
        assert request.url.params["tailLines"] == "50"
        return httpx.Response(200, text="line 1\nline 2")

    client = _client(handler)

    assert client.get_job_pod_name("bulkexport-abc") == "bulkexport-abc-x7k2"
    assert client.get_job_logs("bulkexport-abc", tail_lines=50) == "line 1\nline 2"


def test_logs_are_none_when_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/pods"):
            return httpx.Response(200, json={"items": []})
        return httpx.Response(500)

    assert _client(handler).get_job_logs("bulkexport-abc") is None
    assert _client(lambda request: httpx.Response(500)).get_job_logs("bulkexport-abc") is None


def test_list_jobs_by_tenant_uses_label_selector():
    selectors = []

    def handler(request: httpx.Request) -> httpx.Response:
        selectors.append(request.url.params["labelSelector"])
        return httpx.Response(200, json={"items": [{"metadata": {"name": "bulkexport-abc"}}]})

    items = _client(handler).list_jobs_by_tenant("org-7")

    assert selectors == ["oikion.com/organization-id=org-7"]
    assert items == [{"metadata": {"name": "bulkexport-abc"}}]


def test_parse_job_status_tolerates_empty_status():
    status = parse_job_status({})
    assert status.summary() == {"active": 0, "succeeded": 0, "failed": 0}
    assert status.conditions == []
