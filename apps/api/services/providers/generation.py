"""Generation provider client."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx

from services.providers.types import (
    GenerationJobSpec,
    ProviderTaskStatus,
    ProviderTerminalFailure,
    ProviderTransientError,
    SubmittedJob,
)

logger = logging.getLogger(__name__)

_SUCCESS_STATES = {"success", "completed", "succeeded"}
_FAIL_STATES = {"fail", "failed", "error"}
_PENDING_STATES = {"pending", "queued", "waiting"}


class BaseGenerationProvider(ABC):
    @abstractmethod
    async def submit(self, job_spec: GenerationJobSpec) -> SubmittedJob:
        raise NotImplementedError

    @abstractmethod
    async def poll_status(self, external_task_id: str) -> ProviderTaskStatus:
        raise NotImplementedError

    @abstractmethod
    async def download(self, url: str) -> Tuple[bytes, str]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _normalize_state(raw: Optional[str]) -> str:
    value = str(raw or "").strip().lower()
    if value in _SUCCESS_STATES:
        return "success"
    if value in _FAIL_STATES:
        return "fail"
    if value in _PENDING_STATES:
        return "pending"
    return "processing"


def _first_result_url(data: Dict[str, Any]) -> Optional[str]:
    urls = data.get("resultUrls")
    if isinstance(urls, list) and urls:
        return str(urls[0])
    result = data.get("result")
    if isinstance(result, dict):
        for key in ("videoUrl", "imageUrl"):
            if result.get(key):
                return str(result[key])
        nested = result.get("resultUrls")
        if isinstance(nested, list) and nested:
            return str(nested[0])
    return None


class HttpGenerationProvider(BaseGenerationProvider):
    """Task-based HTTP generation API (createTask / recordInfo)."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout_seconds,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"Generation provider unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderTransientError(f"Generation provider returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransientError("Generation provider returned a non-JSON body") from exc
        if response.status_code >= 400:
            message = payload.get("msg") if isinstance(payload, dict) else None
            raise ProviderTerminalFailure(message or f"Generation provider rejected request ({response.status_code})")
        if not isinstance(payload, dict):
            raise ProviderTransientError("Generation provider returned an unexpected payload")
        return payload

    async def submit(self, job_spec: GenerationJobSpec) -> SubmittedJob:
        payload = await self._request(
            "POST",
            "/jobs/createTask",
            json={
                "model": job_spec.model,
                "input": {"prompt": job_spec.prompt, **job_spec.options},
            },
        )
        code = payload.get("code")
        if code not in (None, 200):
            raise ProviderTerminalFailure(payload.get("msg") or f"Generation task rejected (code {code})")
        task_id = (payload.get("data") or {}).get("taskId")
        if not task_id:
            raise ProviderTerminalFailure("Generation provider response is missing taskId")
        return SubmittedJob(external_task_id=str(task_id))

    async def poll_status(self, external_task_id: str) -> ProviderTaskStatus:
        payload = await self._request("GET", "/jobs/recordInfo", params={"taskId": external_task_id})
        data = payload.get("data") or {}
        state = _normalize_state(data.get("state") or data.get("status"))
        if state == "fail":
            return ProviderTaskStatus(
                state="fail",
                error=str(data.get("failMsg") or data.get("error") or "Generation failed"),
            )
        if state == "success":
            return ProviderTaskStatus(state="success", result_url=_first_result_url(data))
        return ProviderTaskStatus(state=state)

    async def download(self, url: str) -> Tuple[bytes, str]:
        try:
            response = await self._client.get(url)
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"Asset download failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderTransientError(f"Asset download returned HTTP {response.status_code}")
        content_type = response.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
        return response.content, content_type

    async def aclose(self) -> None:
        await self._client.aclose()
