"""Replicate predictions API job backend."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from src.staging.providers.base import JobBackend, JobBackendError, JobHandle, JobSnapshot, normalize_job_status
from src.staging.states import TIER_HD, TIER_PREVIEW
from src.staging.styles import build_prompt


class ReplicateJobBackend(JobBackend):
    backend_name = "replicate"

    def __init__(
        self,
        *,
        api_token: str,
        model: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout_seconds: int = 30,
        preview_quality: int = 65,
        hd_quality: int = 95,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_token = api_token.strip()
        self._model = model.strip().strip("/")
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._quality = {TIER_PREVIEW: preview_quality, TIER_HD: hd_quality}
        self._client = client

    def _headers(self) -> Dict[str, str]:
        if not self._api_token:
            raise JobBackendError("replicate_api_token_missing")
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, *, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = self._headers()
        try:
            if self._client is not None:
                response = self._client.request(method, url, headers=headers, json=json_body)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.request(method, url, headers=headers, json=json_body)
        except httpx.HTTPError as exc:
            raise JobBackendError(f"replicate_transport_error detail={exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 240:
                detail = detail[:240] + "..."
            raise JobBackendError(f"replicate_request_failed status={response.status_code} detail={detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise JobBackendError("replicate_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise JobBackendError("replicate_invalid_json_response")
        return body

    @staticmethod
    def _extract_output_url(output: Any) -> Optional[str]:
        if isinstance(output, str) and output.strip():
            return output.strip()
        if isinstance(output, list):
            for item in output:
                if isinstance(item, str) and item.strip():
                    return item.strip()
        return None

    def submit(self, *, image_url: str, style: str, tier: str) -> JobHandle:
        if tier not in self._quality:
            raise ValueError(f"Unsupported tier: {tier}")
        if not self._model:
            raise JobBackendError("replicate_model_missing")

        body = self._request(
            "POST",
            f"{self._base_url}/models/{self._model}/predictions",
            json_body={
                "input": {
                    "input_image": image_url,
                    "prompt": build_prompt(style),
                    "output_quality": self._quality[tier],
                }
            },
        )
        job_id = str(body.get("id") or "").strip()
        if not job_id:
            raise JobBackendError("replicate_prediction_id_missing")
        return JobHandle(job_id=job_id, status=normalize_job_status(str(body.get("status") or "starting")))

    def poll(self, job_id: str) -> JobSnapshot:
        body = self._request("GET", f"{self._base_url}/predictions/{job_id}")
        status = normalize_job_status(str(body.get("status") or ""))
        output_url = self._extract_output_url(body.get("output")) if status == "succeeded" else None
        error = body.get("error")
        return JobSnapshot(
            job_id=str(body.get("id") or job_id),
            status=status,
            output_url=output_url,
            error=str(error) if error else None,
        )
