"""Base interfaces for completion providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal

CompletionMode = Literal["chat", "query"]


@dataclass
class CompletionResponse:
  """Minimal completion response structure."""

  text: str
  usage: dict[str, int] | None = None


class CompletionModel(ABC):
  """Text-in/text-out completion service scoped to one workspace.

  Each call is an independent round trip; the session id only groups calls for observability.
  """

  name: str

  @abstractmethod
  async def complete(self, prompt: str, *, mode: CompletionMode = "chat", session_id: str | None = None) -> CompletionResponse:
    """Return the completion for a prompt."""

  async def aclose(self) -> None:
    """Release transport resources."""
