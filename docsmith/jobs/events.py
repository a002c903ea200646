"""Progress events and a per-job fan-out broker."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field

import msgspec

logger = logging.getLogger(__name__)

MAX_EVENT_HISTORY = 200
MAX_CLOSED_CHANNELS = 200


class InfoEvent(msgspec.Struct, tag_field="type", tag="info"):
  job_id: str
  template: str
  workspace: str | None = None


class LogEvent(msgspec.Struct, tag_field="type", tag="log"):
  message: str


class StepEvent(msgspec.Struct, tag_field="type", tag="step"):
  name: str
  status: str
  progress: int


class DoneEvent(msgspec.Struct, tag_field="type", tag="done"):
  file: str
  job_id: str


class ErrorEvent(msgspec.Struct, tag_field="type", tag="error"):
  message: str
  job_id: str


ProgressEvent = InfoEvent | LogEvent | StepEvent | DoneEvent | ErrorEvent

_encoder = msgspec.json.Encoder()


def event_name(event: ProgressEvent) -> str:
  return event.__struct_config__.tag


def encode_sse(event: ProgressEvent) -> str:
  """Render one event in text/event-stream framing."""
  payload = _encoder.encode(event).decode("utf-8")
  return f"event: {event_name(event)}\ndata: {payload}\n\n"


@dataclass(eq=False)
class Subscription:
  job_id: str
  queue: asyncio.Queue[ProgressEvent | None]
  loop: asyncio.AbstractEventLoop
  backlog: list[ProgressEvent] = field(default_factory=list)

  async def events(self):
    """Yield backlog then live events until the job's stream closes."""
    for event in self.backlog:
      yield event
    while True:
      event = await self.queue.get()
      if event is None:
        return
      yield event


@dataclass
class _Channel:
  history: deque[ProgressEvent] = field(default_factory=lambda: deque(maxlen=MAX_EVENT_HISTORY))
  subscribers: list[Subscription] = field(default_factory=list)
  closed: bool = False


class ProgressBroker:
  """Fan events out to any number of subscribers; publishing never blocks and is thread-safe.

  Closed channels keep their history for late subscribers, but only the most recent
  `max_closed_channels` of them are retained.
  """

  def __init__(self, *, max_closed_channels: int = MAX_CLOSED_CHANNELS) -> None:
    self._lock = threading.Lock()
    self._max_closed_channels = max(max_closed_channels, 0)
    self._channels: dict[str, _Channel] = {}
    # Closed job ids, oldest first.
    self._closed: OrderedDict[str, None] = OrderedDict()

  def subscribe(self, job_id: str) -> Subscription:
    """Must be called from the event loop that will consume the subscription."""

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
    with self._lock:
      channel = self._channels.setdefault(job_id, _Channel())
      subscription = Subscription(job_id=job_id, queue=queue, loop=loop, backlog=list(channel.history))
      if channel.closed:
        queue.put_nowait(None)
      else:
        channel.subscribers.append(subscription)
    return subscription

  def unsubscribe(self, subscription: Subscription) -> None:
    """Detach one observer; a channel nobody published to is dropped with its last observer."""

    with self._lock:
      channel = self._channels.get(subscription.job_id)
      if channel is None:
        return
      if subscription in channel.subscribers:
        channel.subscribers.remove(subscription)
      if not channel.closed and not channel.subscribers and not channel.history:
        del self._channels[subscription.job_id]

  def publish(self, job_id: str, event: ProgressEvent) -> None:
    with self._lock:
      channel = self._channels.setdefault(job_id, _Channel())
      channel.history.append(event)
      subscribers = list(channel.subscribers)
    for subscription in subscribers:
      _deliver(subscription, event)

  def close(self, job_id: str) -> None:
    """End every open stream for the job; later subscribers get the history only."""

    with self._lock:
      channel = self._channels.setdefault(job_id, _Channel())
      channel.closed = True
      subscribers = list(channel.subscribers)
      channel.subscribers.clear()
      self._closed[job_id] = None
      self._closed.move_to_end(job_id)
      # Evict the oldest finished channels beyond the retention cap.
      while len(self._closed) > self._max_closed_channels:
        expired, _ = self._closed.popitem(last=False)
        self._channels.pop(expired, None)
    for subscription in subscribers:
      _deliver(subscription, None)

  def forget(self, *job_ids: str) -> None:
    """Drop channels of deleted jobs, ending any stream still attached to them."""

    for job_id in job_ids:
      with self._lock:
        channel = self._channels.pop(job_id, None)
        self._closed.pop(job_id, None)
        subscribers = list(channel.subscribers) if channel is not None else []
      for subscription in subscribers:
        _deliver(subscription, None)

  def clear(self) -> None:
    """Drop every channel, ending all open streams."""

    with self._lock:
      job_ids = list(self._channels)
    self.forget(*job_ids)

  def __len__(self) -> int:
    with self._lock:
      return len(self._channels)


def _deliver(subscription: Subscription, event: ProgressEvent | None) -> None:
  try:
    running = asyncio.get_running_loop()
  except RuntimeError:
    running = None
  if running is subscription.loop:
    subscription.queue.put_nowait(event)
    return
  try:
    subscription.loop.call_soon_threadsafe(subscription.queue.put_nowait, event)
  except RuntimeError:
    # Loop already closed; the observer is gone.
    logger.debug("Dropped progress event for closed loop job_id=%s", subscription.job_id)
