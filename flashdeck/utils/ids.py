"""Identifier helpers for jobs, cards and vector points."""

from __future__ import annotations

import hashlib
import re
import uuid

_UNSAFE_PATH_CHARS = re.compile(r'[<>:"/\\|?*\s]')


def generate_job_id() -> str:
  """Return a new opaque job identifier."""
  return str(uuid.uuid4())


def point_id_for_chunk(chunk_id: str) -> str:
  """Map a chunk id onto a stable UUID usable as a vector point id."""
  return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk_id))


def module_storage_key(module_id: str) -> str:
  """Readable directory name for a module; the digest suffix keeps distinct ids apart."""
  slug = _UNSAFE_PATH_CHARS.sub("_", module_id.strip()).strip(".")[:64] or "_"
  digest = hashlib.sha256(module_id.encode("utf-8")).hexdigest()[:16]
  return f"{slug}-{digest}"
