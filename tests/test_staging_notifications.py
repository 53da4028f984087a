from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx

from src.integrations.email.resend_client import ResendClient
from src.staging.notifications import (
    STAGING_READY_SUBJECT,
    EmailStagingNotifier,
    NullStagingNotifier,
    get_notifier,
)


def _client(handler) -> ResendClient:
    return ResendClient(
        api_key="re_test_key",
        from_address="SnapStage <noreply@snapstage.app>",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_completion_email_links_to_the_project() -> None:
    captured: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/emails"
        assert request.headers["Authorization"] == "Bearer re_test_key"
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email-123"})

    notifier = EmailStagingNotifier(client=_client(handler), base_url="https://snapstage.app/")

    sent = notifier.staging_completed(
        email="owner@example.com",
        name="Dana",
        project_id="project-1",
        project_name="Living room",
    )

    assert sent is True
    payload = captured[0]
    assert payload["to"] == ["owner@example.com"]
    assert payload["subject"] == STAGING_READY_SUBJECT
    assert "Hi Dana," in payload["text"]
    assert '"Living room"' in payload["text"]
    assert "https://snapstage.app/dashboard/projects/project-1" in payload["text"]
    assert payload["tags"] == [{"name": "category", "value": "staging_completed"}]


def test_missing_name_falls_back_to_mailbox() -> None:
    captured: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email-124"})

    notifier = EmailStagingNotifier(client=_client(handler), base_url="https://snapstage.app")
    notifier.staging_completed(email="sam@example.com", name=None, project_id="p", project_name="Den")

    assert captured[0]["text"].startswith("Hi sam,")


def test_provider_failure_is_reported_not_raised() -> None:
    notifier = EmailStagingNotifier(
        client=_client(lambda request: httpx.Response(500, text="upstream down")),
        base_url="https://snapstage.app",
    )

    sent = notifier.staging_completed(
        email="owner@example.com",
        name="Dana",
        project_id="project-1",
        project_name="Living room",
    )

    assert sent is False


def test_disabled_notifier_sends_nothing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    notifier = EmailStagingNotifier(client=_client(handler), base_url="https://snapstage.app", enabled=False)

    assert notifier.staging_completed(email="a@example.com", name="A", project_id="p", project_name="P") is False


def test_factory_returns_null_notifier_without_email_config(monkeypatch) -> None:
    assert isinstance(get_notifier(), NullStagingNotifier)

    from src.core.config import get_settings
    from src.integrations.email.resend_client import get_resend_client

    monkeypatch.setenv("EMAIL_ENABLED", "true")
    monkeypatch.setenv("EMAIL_API_KEY", "re_test_key")
    get_settings.cache_clear()
    get_resend_client.cache_clear()
    get_notifier.cache_clear()

    assert isinstance(get_notifier(), EmailStagingNotifier)
    get_resend_client.cache_clear()
