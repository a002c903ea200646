"""Filesystem helpers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write_bytes(path: Path, payload: bytes, *, prefix: str = ".tmp-") -> None:
  """Replace `path` with `payload` so readers see either the old or the new content."""
  path.parent.mkdir(parents=True, exist_ok=True)
  # Write beside the target so os.replace stays on one filesystem.
  fd, tmp_name = tempfile.mkstemp(prefix=prefix, suffix=".tmp", dir=path.parent)
  try:
    with os.fdopen(fd, "wb") as handle:
      handle.write(payload)
      handle.flush()
      os.fsync(handle.fileno())
    os.replace(tmp_name, path)
  except BaseException:
    Path(tmp_name).unlink(missing_ok=True)
    raise
