"""Time helpers shared by jobs and the enhancement cache."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
  return datetime.now(UTC)


def iso_timestamp(moment: datetime | None = None) -> str:
  """ISO-8601 UTC timestamp with millisecond precision, e.g. `2024-01-01T00:00:00.000Z`."""
  moment = moment or utc_now()
  return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_timestamp(raw: str) -> datetime:
  return datetime.fromisoformat(raw.replace("Z", "+00:00"))
