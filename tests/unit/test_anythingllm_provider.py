from __future__ import annotations

import json

import httpx
import pytest

from docsmith.ai.providers.anythingllm import AnythingLLMProvider
from docsmith.core.errors import CompletionServiceError


def _provider(handler, *, api_key: str | None = "secret") -> AnythingLLMProvider:
  return AnythingLLMProvider(base_url="http://llm.local/", api_key=api_key, timeout_seconds=5, transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_chat_request_shape_and_response() -> None:
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(200, json={"textResponse": "Hello", "metrics": {"prompt_tokens": 12, "completion_tokens": 3, "model": "x"}})

  provider = _provider(handler)
  response = await provider.get_model("acme").complete("Say hi", mode="query", session_id="docsmith-job-1")
  await provider.aclose()

  assert response.text == "Hello"
  assert response.usage == {"prompt_tokens": 12, "completion_tokens": 3}
  (request,) = seen
  assert str(request.url) == "http://llm.local/api/v1/workspace/acme/chat"
  assert request.headers["Authorization"] == "Bearer secret"
  assert json.loads(request.content) == {"message": "Say hi", "mode": "query", "sessionId": "docsmith-job-1"}


@pytest.mark.anyio
async def test_legacy_path_is_tried_after_404() -> None:
  paths: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    paths.append(request.url.path)
    if request.url.path.startswith("/api/v1/"):
      return httpx.Response(404, text="not found")
    return httpx.Response(200, json={"textResponse": "legacy"})

  provider = _provider(handler)
  response = await provider.get_model("acme").complete("hi")
  await provider.aclose()

  assert response.text == "legacy"
  assert paths == ["/api/v1/workspace/acme/chat", "/api/workspace/acme/chat"]


@pytest.mark.anyio
async def test_missing_api_key_fails_without_a_request() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise AssertionError("no request expected")

  provider = _provider(handler, api_key=None)
  with pytest.raises(CompletionServiceError, match="API key"):
    await provider.get_model("acme").complete("hi")
  await provider.aclose()


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("response", "message"),
  [
    (httpx.Response(500, text="boom"), "500 boom"),
    (httpx.Response(200, json={"error": "workspace missing"}), "workspace missing"),
    (httpx.Response(200, text="<html>"), "non-JSON"),
    (httpx.Response(200, json=["unexpected"]), "unexpected payload"),
  ],
)
async def test_service_failures_are_completion_errors(response: httpx.Response, message: str) -> None:
  provider = _provider(lambda request: response)
  with pytest.raises(CompletionServiceError, match=message):
    await provider.get_model("acme").complete("hi")
  await provider.aclose()


@pytest.mark.anyio
async def test_unreachable_service_is_a_completion_error() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  provider = _provider(handler)
  with pytest.raises(CompletionServiceError, match="unreachable"):
    await provider.get_model("acme").complete("hi")
  await provider.aclose()
