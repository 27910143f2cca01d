"""Module content sources and the read-only store they are loaded from."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, model_validator
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


def detect_provider(url: str | None) -> str:
  """Tag the hosting system a file reference came from."""
  if not url:
    return "local"
  lowered = url.lower()
  if "drive.google.com" in lowered or "docs.google.com" in lowered:
    return "google_drive"
  if "onedrive" in lowered or "sharepoint.com" in lowered or "1drv.ms" in lowered:
    return "onedrive"
  if "cloudinary.com" in lowered:
    return "cloudinary"
  return "other"


class TranscriptSegment(BaseModel):
  """A timed span of spoken text."""

  start_sec: float = Field(ge=0)
  end_sec: float = Field(ge=0)
  text: StrictStr
  model_config = ConfigDict(extra="ignore")

  @model_validator(mode="after")
  def validate_range(self) -> TranscriptSegment:
    if self.end_sec < self.start_sec:
      raise ValueError("end_sec must not be earlier than start_sec.")
    return self


class _SourceBase(BaseModel):
  source_id: StrictStr = Field(min_length=1)
  file: StrictStr | None = None
  title: StrictStr | None = None
  url: StrictStr | None = None
  provider: StrictStr | None = None
  model_config = ConfigDict(extra="ignore")

  @property
  def display_name(self) -> str:
    return self.file or self.title or self.source_id

  @property
  def resolved_provider(self) -> str:
    return self.provider or detect_provider(self.url)


class DocumentSource(_SourceBase):
  """Slides, PDFs or notes; ``text`` holds already extracted content when available."""

  kind: Literal["document"] = "document"
  path: StrictStr | None = None
  text: StrictStr | None = None
  file_type: StrictStr | None = None


class MediaSource(_SourceBase):
  """Recorded audio or video; ``transcript`` is filled in once transcribed."""

  kind: Literal["media"] = "media"
  path: StrictStr | None = None
  media_type: Literal["audio", "video"] = "video"
  duration_sec: float | None = Field(default=None, ge=0)
  transcript: list[TranscriptSegment] | None = None


class TranscriptSource(_SourceBase):
  kind: Literal["transcript"] = "transcript"
  segments: list[TranscriptSegment] = Field(default_factory=list)


class PrechunkedText(BaseModel):
  text: StrictStr
  heading: StrictStr | None = None
  slide_or_page: StrictStr | None = None
  model_config = ConfigDict(extra="ignore")


class PrechunkedSource(_SourceBase):
  kind: Literal["chunks"] = "chunks"
  chunks: list[PrechunkedText] = Field(default_factory=list)


ContentSource = Annotated[DocumentSource | MediaSource | TranscriptSource | PrechunkedSource, Field(discriminator="kind")]


class ModuleContent(BaseModel):
  """Everything known about one course module's learning material."""

  module_id: StrictStr = Field(min_length=1)
  course_id: StrictStr | None = None
  title: StrictStr = ""
  course_title: StrictStr | None = None
  sources: list[ContentSource] = Field(default_factory=list)
  model_config = ConfigDict(extra="ignore")

  @property
  def display_title(self) -> str:
    return self.title or self.module_id


class ContentStore(Protocol):
  """Read-only view of the course/module catalog."""

  async def get_module(self, module_id: str, course_id: str | None = None) -> ModuleContent | None:
    """Return a module's content, or None when it does not exist."""

  async def list_course_modules(self, course_id: str) -> list[str]:
    """Return module ids belonging to a course."""

  async def list_courses(self) -> list[str]:
    """Return every known course id."""


class FileContentStore:
  """Reads ``<root>/<course_id>/<module_id>.json`` manifests."""

  def __init__(self, root: str | Path) -> None:
    self._root = Path(root)

  def _module_path(self, module_id: str, course_id: str | None) -> Path | None:
    if course_id:
      candidate = self._root / course_id / f"{module_id}.json"
      return candidate if candidate.is_file() else None
    if not self._root.is_dir():
      return None
    # Single-module requests may omit the course; search every course directory.
    matches = sorted(self._root.glob(f"*/{module_id}.json"))
    return matches[0] if matches else None

  def _read_module(self, module_id: str, course_id: str | None) -> ModuleContent | None:
    path = self._module_path(module_id, course_id)
    if path is None:
      return None
    raw = json.loads(path.read_text(encoding="utf-8"))
    raw.setdefault("module_id", module_id)
    raw.setdefault("course_id", course_id or path.parent.name)
    try:
      return ModuleContent.model_validate(raw)
    except ValidationError as exc:
      raise ValueError(f"Invalid module manifest at {path}: {exc}") from exc

  async def get_module(self, module_id: str, course_id: str | None = None) -> ModuleContent | None:
    return await run_in_threadpool(self._read_module, module_id, course_id)

  async def list_course_modules(self, course_id: str) -> list[str]:
    course_dir = self._root / course_id
    if not course_dir.is_dir():
      return []
    return sorted(path.stem for path in course_dir.glob("*.json"))

  async def list_courses(self) -> list[str]:
    if not self._root.is_dir():
      return []
    return sorted(path.name for path in self._root.iterdir() if path.is_dir())
