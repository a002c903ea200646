"""AnythingLLM-compatible workspace chat provider."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from docsmith.ai.providers.base import CompletionMode, CompletionModel, CompletionResponse
from docsmith.core.errors import CompletionServiceError

logger = logging.getLogger(__name__)


class AnythingLLMModel(CompletionModel):
  """Chat completions against one AnythingLLM workspace."""

  def __init__(self, *, workspace: str, base_url: str, api_key: str | None, client: httpx.AsyncClient) -> None:
    self.name = f"anythingllm:{workspace}"
    self._workspace = workspace
    self._base_url = base_url.rstrip("/")
    self._api_key = api_key
    self._client = client

  def _urls(self) -> tuple[str, str]:
    path = f"/workspace/{self._workspace}/chat"
    return f"{self._base_url}/api/v1{path}", f"{self._base_url}/api{path}"

  async def complete(self, prompt: str, *, mode: CompletionMode = "chat", session_id: str | None = None) -> CompletionResponse:
    if not self._api_key:
      raise CompletionServiceError("Completion service API key is not configured.")

    body: dict[str, Any] = {"message": prompt, "mode": mode}
    if session_id:
      body["sessionId"] = session_id
    headers = {"Authorization": f"Bearer {self._api_key}"}

    url_v1, url_legacy = self._urls()
    try:
      response = await self._client.post(url_v1, json=body, headers=headers)
      # Older servers expose the workspace API without the version prefix.
      if response.status_code == 404:
        logger.debug("Workspace chat not found at %s; retrying legacy path", url_v1)
        response = await self._client.post(url_legacy, json=body, headers=headers)
      response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      detail = exc.response.text[:500]
      raise CompletionServiceError(f"Completion request failed for workspace {self._workspace}: {exc.response.status_code} {detail}") from exc
    except httpx.RequestError as exc:
      raise CompletionServiceError(f"Completion service unreachable at {self._base_url}: {exc}") from exc

    try:
      payload = response.json()
    except ValueError as exc:
      raise CompletionServiceError("Completion service returned a non-JSON response.") from exc

    if not isinstance(payload, dict):
      raise CompletionServiceError("Completion service returned an unexpected payload.")
    if payload.get("error"):
      raise CompletionServiceError(f"Completion service error: {payload['error']}")
    text = payload.get("textResponse") or payload.get("message") or ""
    usage = payload.get("metrics") if isinstance(payload.get("metrics"), dict) else None
    return CompletionResponse(text=str(text), usage=_coerce_usage(usage))


def _coerce_usage(metrics: dict[str, Any] | None) -> dict[str, int] | None:
  if not metrics:
    return None
  usage = {key: int(value) for key, value in metrics.items() if isinstance(value, int | float) and not isinstance(value, bool)}
  return usage or None


class AnythingLLMProvider:
  """Owns the shared HTTP client and hands out per-workspace models."""

  name = "anythingllm"

  def __init__(self, *, base_url: str, api_key: str | None, timeout_seconds: float, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._base_url = base_url
    self._api_key = api_key
    self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=transport, trust_env=False)

  def get_model(self, workspace: str) -> CompletionModel:
    return AnythingLLMModel(workspace=workspace, base_url=self._base_url, api_key=self._api_key, client=self._client)

  async def aclose(self) -> None:
    await self._client.aclose()
