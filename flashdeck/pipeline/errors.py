"""Exceptions raised by pipeline stages."""

from __future__ import annotations


class PipelineError(RuntimeError):
  """Base class for flashcard pipeline failures."""


class ContentNotFound(PipelineError):
  """The module has no processable material; the run cannot continue."""


class ProviderError(PipelineError):
  """An embedding, LLM, transcription or vector store call failed or timed out."""


class UpsertFailed(ProviderError):
  """A vector store batch write failed. Earlier batches remain written."""

  def __init__(self, message: str, *, batch_index: int) -> None:
    super().__init__(message)
    self.batch_index = batch_index