"""Resend API client for transactional email."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx

from src.core.config import get_settings


class EmailClientError(RuntimeError):
    """Raised when email provider operations fail."""


@dataclass(frozen=True)
class EmailMessage:
    to: List[str]
    subject: str
    text: str
    html: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if not [recipient for recipient in self.to if recipient.strip()]:
            raise EmailClientError("email_recipients_missing")
        if not self.subject.strip():
            raise EmailClientError("email_subject_missing")
        if not self.text.strip():
            raise EmailClientError("email_body_missing")


class ResendClient:
    def __init__(
        self,
        *,
        api_key: str,
        from_address: str,
        base_url: str = "https://api.resend.com",
        timeout_seconds: int = 20,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._from_address = from_address.strip()
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise EmailClientError("email_api_key_missing")
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, message: EmailMessage) -> Dict[str, Any]:
        if not self._from_address:
            raise EmailClientError("email_from_address_missing")
        message.validate()

        payload: Dict[str, Any] = {
            "from": self._from_address,
            "to": [recipient.strip() for recipient in message.to if recipient.strip()],
            "subject": message.subject.strip(),
            "text": message.text.strip(),
        }
        if message.html:
            payload["html"] = message.html
        if message.tags:
            payload["tags"] = [
                {"name": str(key).strip(), "value": str(value).strip()}
                for key, value in message.tags.items()
                if str(key).strip()
            ]
        return payload

    def send(self, message: EmailMessage) -> str:
        """Send one message and return the provider's message id."""

        payload = self._payload(message)
        url = f"{self._base_url}/emails"
        try:
            if self._client is not None:
                response = self._client.post(url, headers=self._headers(), json=payload)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise EmailClientError(f"email_provider_transport_error detail={exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise EmailClientError(
                f"email_provider_request_failed status={response.status_code} detail={detail}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise EmailClientError("email_provider_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise EmailClientError("email_provider_invalid_payload")
        return str(body.get("id") or "")


@lru_cache(maxsize=1)
def get_resend_client() -> ResendClient:
    settings = get_settings()
    return ResendClient(
        api_key=settings.email_api_key,
        from_address=settings.email_from_address,
        base_url=settings.email_api_base_url,
        timeout_seconds=settings.email_api_timeout_seconds,
    )
