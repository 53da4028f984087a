from __future__ import annotations

import json

import httpx
import pytest

from src.staging.providers import JobBackendError, MockJobBackend, ReplicateJobBackend, get_job_backend
from src.staging.providers.base import JOB_FAILED, JOB_PROCESSING, JOB_SUCCEEDED, normalize_job_status
from src.staging.styles import build_prompt


def _backend(handler, **kwargs) -> ReplicateJobBackend:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ReplicateJobBackend(
        api_token="r8_test",
        model="black-forest-labs/flux-kontext-pro",
        base_url="https://replicate.test/v1",
        client=client,
        **kwargs,
    )


def test_submit_posts_prompt_image_and_tier_quality() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "pred-1", "status": "starting"})

    backend = _backend(handler, preview_quality=65, hd_quality=95)
    handle = backend.submit(image_url="https://images.example.com/room.jpg", style="modern", tier="hd")

    assert handle.job_id == "pred-1"
    assert handle.status == "starting"
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://replicate.test/v1/models/black-forest-labs/flux-kontext-pro/predictions"
    assert request.headers["authorization"] == "Bearer r8_test"
    body = json.loads(request.content)
    assert body["input"]["input_image"] == "https://images.example.com/room.jpg"
    assert body["input"]["prompt"] == build_prompt("modern")
    assert body["input"]["output_quality"] == 95


def test_poll_maps_success_with_list_output() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/v1/predictions/pred-1"
        return httpx.Response(
            200,
            json={"id": "pred-1", "status": "succeeded", "output": ["https://cdn.example.com/out.png"]},
        )

    snapshot = _backend(handler).poll("pred-1")

    assert snapshot.status == JOB_SUCCEEDED
    assert snapshot.output_url == "https://cdn.example.com/out.png"
    assert snapshot.is_finished is True


def test_poll_maps_canceled_to_failed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        del request
        return httpx.Response(200, json={"id": "pred-2", "status": "canceled", "error": "user canceled"})

    snapshot = _backend(handler).poll("pred-2")

    assert snapshot.status == JOB_FAILED
    assert snapshot.error == "user canceled"
    assert snapshot.output_url is None


def test_non_2xx_raises_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        del request
        return httpx.Response(422, json={"detail": "invalid input"})

    with pytest.raises(JobBackendError, match="status=422"):
        _backend(handler).submit(image_url="https://images.example.com/a.jpg", style="modern", tier="preview")


def test_transport_error_raises_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(JobBackendError, match="replicate_transport_error"):
        _backend(handler).poll("pred-3")


def test_missing_token_fails_before_any_request() -> None:
    backend = ReplicateJobBackend(api_token="", model="owner/model")

    with pytest.raises(JobBackendError, match="replicate_api_token_missing"):
        backend.poll("pred-4")


def test_unknown_status_is_rejected() -> None:
    with pytest.raises(JobBackendError):
        normalize_job_status("exploded")


def test_mock_backend_echoes_input_after_configured_polls() -> None:
    backend = MockJobBackend(polls_until_ready=2)
    handle = backend.submit(image_url="https://images.example.com/room.jpg", style="modern", tier="preview")

    assert backend.poll(handle.job_id).status == JOB_PROCESSING
    finished = backend.poll(handle.job_id)
    assert finished.status == JOB_SUCCEEDED
    assert finished.output_url == "https://images.example.com/room.jpg"

    with pytest.raises(JobBackendError):
        backend.poll("mock-unknown")


def test_factory_selects_configured_backend(monkeypatch) -> None:
    from src.core.config import get_settings
    from src.staging.providers import reset_job_backend_cache

    assert isinstance(get_job_backend(), MockJobBackend)

    monkeypatch.setenv("JOB_BACKEND", "replicate")
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8_live")
    get_settings.cache_clear()
    reset_job_backend_cache()

    assert isinstance(get_job_backend(), ReplicateJobBackend)
