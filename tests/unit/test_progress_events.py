from __future__ import annotations

import asyncio

import pytest

from docsmith.core.errors import JobCancelledError
from docsmith.jobs.events import DoneEvent, InfoEvent, LogEvent, ProgressBroker, StepEvent, encode_sse
from docsmith.jobs.manager import JobManager
from docsmith.jobs.models import JobSpec
from docsmith.jobs.progress import JobProgressTracker
from docsmith.storage.jobs_repo import InMemoryJobsRepository


async def _collect(subscription) -> list:
  return [event async for event in subscription.events()]


def test_encode_sse_frames_tagged_json() -> None:
  assert encode_sse(LogEvent(message="hello")) == 'event: log\ndata: {"type":"log","message":"hello"}\n\n'
  assert encode_sse(StepEvent(name="merge", status="ok", progress=50)) == 'event: step\ndata: {"type":"step","name":"merge","status":"ok","progress":50}\n\n'


@pytest.mark.anyio
async def test_broker_delivers_events_published_from_worker_threads() -> None:
  broker = ProgressBroker()
  subscription = broker.subscribe("job-1")

  await asyncio.to_thread(broker.publish, "job-1", LogEvent(message="from worker"))
  broker.publish("job-1", DoneEvent(file="/tmp/out.docx", job_id="job-1"))
  broker.close("job-1")

  events = await asyncio.wait_for(_collect(subscription), timeout=2)
  assert events == [LogEvent(message="from worker"), DoneEvent(file="/tmp/out.docx", job_id="job-1")]


@pytest.mark.anyio
async def test_late_subscriber_replays_history_of_closed_job() -> None:
  broker = ProgressBroker()
  broker.publish("job-1", InfoEvent(job_id="job-1", template="report"))
  broker.publish("job-1", LogEvent(message="done soon"))
  broker.close("job-1")

  subscription = broker.subscribe("job-1")
  events = await asyncio.wait_for(_collect(subscription), timeout=2)
  assert [type(event) for event in events] == [InfoEvent, LogEvent]


@pytest.mark.anyio
async def test_unsubscribe_leaves_other_observers_running() -> None:
  broker = ProgressBroker()
  leaving = broker.subscribe("job-1")
  staying = broker.subscribe("job-1")
  broker.unsubscribe(leaving)

  broker.publish("job-1", LogEvent(message="still here"))
  broker.close("job-1")

  assert await asyncio.wait_for(_collect(staying), timeout=2) == [LogEvent(message="still here")]
  assert leaving.queue.empty()


@pytest.mark.anyio
async def test_tracker_mirrors_steps_into_job_and_events() -> None:
  manager = JobManager(InMemoryJobsRepository())
  manager.create_with_id("job-1", JobSpec(customer_id="c-1", template="report"))
  broker = ProgressBroker()
  subscription = broker.subscribe("job-1")
  tracker = JobProgressTracker(job_id="job-1", manager=manager, broker=broker)

  tracker.step_start("resolve")
  tracker.step_ok("resolve")
  tracker.log("template resolved")
  tracker.error("merge exploded")

  events = await asyncio.wait_for(_collect(subscription), timeout=2)
  assert [encode_sse(event).split("\n", 1)[0] for event in events] == ["event: step", "event: step", "event: log", "event: error"]
  assert events[1] == StepEvent(name="resolve", status="ok", progress=16)

  job = manager.get("job-1")
  assert job is not None
  assert job.status == "error"
  assert job.error == "merge exploded"
  assert job.logs == ["template resolved"]


def test_checkpoint_raises_once_cancelled() -> None:
  manager = JobManager(InMemoryJobsRepository())
  manager.create_with_id("job-1", JobSpec(customer_id="c-1", template="report"))
  tracker = JobProgressTracker(job_id="job-1", manager=manager)

  tracker.checkpoint("enhance")
  manager.cancel("job-1")

  with pytest.raises(JobCancelledError) as excinfo:
    tracker.checkpoint("compile")
  assert excinfo.value.checkpoint == "compile"


def test_closed_channels_beyond_the_cap_are_evicted() -> None:
  broker = ProgressBroker(max_closed_channels=2)
  for index in range(5):
    job_id = f"job-{index}"
    broker.publish(job_id, LogEvent(message=job_id))
    broker.close(job_id)

  assert len(broker) == 2


@pytest.mark.anyio
async def test_evicted_channel_has_no_history_for_late_subscribers() -> None:
  broker = ProgressBroker(max_closed_channels=1)
  broker.publish("job-1", LogEvent(message="old"))
  broker.close("job-1")
  broker.publish("job-2", LogEvent(message="new"))
  broker.close("job-2")

  assert await asyncio.wait_for(_collect(broker.subscribe("job-2")), timeout=2) == [LogEvent(message="new")]
  late = broker.subscribe("job-1")
  assert late.backlog == []
  broker.unsubscribe(late)
  assert len(broker) == 1


@pytest.mark.anyio
async def test_forget_ends_streams_and_drops_channels() -> None:
  broker = ProgressBroker()
  subscription = broker.subscribe("job-1")
  broker.publish("job-1", LogEvent(message="running"))
  broker.publish("job-2", LogEvent(message="other"))

  broker.forget("job-1")

  assert await asyncio.wait_for(_collect(subscription), timeout=2) == []
  assert len(broker) == 1
  broker.clear()
  assert len(broker) == 0


def test_manager_reports_evicted_jobs() -> None:
  evicted: list[list[str]] = []
  manager = JobManager(InMemoryJobsRepository(), max_jobs=2, on_evict=evicted.append)
  for index in range(3):
    manager.create_with_id(f"job-{index}", JobSpec(customer_id="c-1", template="report"))

  assert evicted == [["job-0"]]
  assert manager.get("job-0") is None
