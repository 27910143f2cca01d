"""Gemini provider built on the google-genai SDK."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Final, cast

from google import genai
from google.genai import types
from starlette.concurrency import run_in_threadpool

from flashdeck.ai.backoff import retry_with_backoff
from flashdeck.ai.json_parser import parse_json_with_fallback, strip_json_fences
from flashdeck.ai.providers.base import AIModel, ModelResponse, Provider, SimpleModelResponse, StructuredModelResponse

logger = logging.getLogger(__name__)


def _usage(response: Any) -> dict[str, int] | None:
  metadata = getattr(response, "usage_metadata", None)
  if not metadata:
    return None
  return {"prompt_tokens": metadata.prompt_token_count, "completion_tokens": metadata.candidates_token_count, "total_tokens": metadata.total_token_count}


class GeminiModel(AIModel):
  """Gemini model client with JSON-mode structured output and file inputs."""

  def __init__(self, name: str, api_key: str | None = None, client: genai.Client | None = None) -> None:
    self.name: str = name
    self.supports_structured_output = True
    if client is None:
      api_key = api_key or os.getenv("GEMINI_API_KEY")
      if not api_key:
        raise ValueError("GEMINI_API_KEY environment variable is required")
      client = genai.Client(api_key=api_key)
    self._client = client

  async def generate(self, prompt: str) -> ModelResponse:
    response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=prompt)
    logger.debug("Gemini response:\n%s", response.text)
    return SimpleModelResponse(content=response.text or "", usage=_usage(response))

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> StructuredModelResponse:
    """Generate JSON output constrained by ``schema``."""
    try:
      response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=prompt, config={"response_mime_type": "application/json", "response_json_schema": schema})
    except Exception as e:
      raise RuntimeError(f"Gemini structured generation failed: {e}") from e

    logger.debug("Gemini structured response (raw):\n%s", response.text)
    try:
      parsed = cast(dict[str, Any], parse_json_with_fallback(strip_json_fences(response.text or "")))
    except json.JSONDecodeError as e:
      raise RuntimeError(f"Gemini returned invalid JSON: {e}") from e
    return StructuredModelResponse(content=parsed, usage=_usage(response))

  async def upload_file(self, file_content: bytes, mime_type: str, display_name: str | None = None) -> Any:
    """Upload a file to the Gemini File API."""
    try:
      # The SDK upload call is synchronous.
      return await run_in_threadpool(self._client.files.upload, file=file_content, config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name))
    except Exception as e:
      raise RuntimeError(f"Gemini file upload failed: {e}") from e

  async def generate_with_files(self, prompt: str, files: list[Any]) -> ModelResponse:
    """Generate a text response from a prompt plus previously uploaded files."""
    contents = [*files, prompt]
    try:
      response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=contents)
    except Exception as e:
      raise RuntimeError(f"Gemini generation with files failed: {e}") from e
    return SimpleModelResponse(content=response.text or "", usage=_usage(response))


class GeminiProvider(Provider):
  """Gemini provider."""

  _DEFAULT_MODEL: Final[str] = "gemini-2.0-flash"
  _AVAILABLE_MODELS: Final[set[str]] = {"gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.0-flash", "gemini-2.0-flash-lite"}

  def __init__(self, api_key: str | None = None) -> None:
    self.name: str = "gemini"
    self._api_key = api_key

  def get_model(self, model: str | None = None) -> GeminiModel:
    model_name = model or self._DEFAULT_MODEL
    if model_name not in self._AVAILABLE_MODELS:
      raise ValueError(f"Unsupported Gemini model '{model_name}'.")
    return GeminiModel(model_name, api_key=self._api_key)
