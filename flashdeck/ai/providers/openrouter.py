"""OpenRouter provider using the OpenAI-compatible SDK."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Final, cast

from openai import AsyncOpenAI, OpenAIError

from flashdeck.ai.backoff import retry_with_backoff
from flashdeck.ai.json_parser import parse_json_with_fallback, strip_json_fences
from flashdeck.ai.providers.base import AIModel, ModelResponse, Provider, SimpleModelResponse, StructuredModelResponse

logger = logging.getLogger(__name__)
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def _usage(response: Any) -> dict[str, int] | None:
  if not response.usage:
    return None
  return {"prompt_tokens": response.usage.prompt_tokens, "completion_tokens": response.usage.completion_tokens, "total_tokens": response.usage.total_tokens}


class OpenRouterModel(AIModel):
  """OpenRouter chat-completions client with json_schema structured output."""

  def __init__(self, name: str, api_key: str | None = None, base_url: str | None = None) -> None:
    self.name: str = name
    self.supports_structured_output = True

    api_key = api_key or os.getenv("OPENROUTER_API_KEY")
    if not api_key:
      raise ValueError("OPENROUTER_API_KEY environment variable is required")

    # Optional attribution headers recognised by OpenRouter.
    default_headers = {}
    referer = os.getenv("OPENROUTER_HTTP_REFERER")
    if referer:
      default_headers["HTTP-Referer"] = referer
    title = os.getenv("OPENROUTER_TITLE")
    if title:
      default_headers["X-Title"] = title

    self._client = AsyncOpenAI(api_key=api_key, base_url=base_url or OPENROUTER_BASE_URL, default_headers=default_headers or None)

  async def generate(self, prompt: str) -> ModelResponse:
    try:
      response = await retry_with_backoff(self._client.chat.completions.create, model=self.name, messages=[{"role": "user", "content": prompt}])
    except OpenAIError as e:
      raise RuntimeError(f"OpenRouter generation failed: {e}") from e
    content = response.choices[0].message.content or ""
    logger.debug("OpenRouter response:\n%s", content)
    return SimpleModelResponse(content=content, usage=_usage(response))

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> StructuredModelResponse:
    schema_str = json.dumps(schema, indent=2)
    system_msg = f"You output valid JSON only, with no markdown formatting, adhering to this schema:\n{schema_str}"

    try:
      response = await retry_with_backoff(
        self._client.chat.completions.create,
        model=self.name,
        messages=[{"role": "system", "content": system_msg}, {"role": "user", "content": prompt}],
        response_format={"type": "json_schema", "json_schema": {"name": "flashdeck_response", "schema": schema, "strict": True}},
      )
    except OpenAIError as e:
      # Connection, status and timeout errors all surface as RuntimeError.
      raise RuntimeError(f"OpenRouter structured generation failed: {e}") from e

    content = response.choices[0].message.content or "{}"
    logger.debug("OpenRouter structured response (raw):\n%s", content)
    try:
      parsed = cast(dict[str, Any], parse_json_with_fallback(strip_json_fences(content)))
    except json.JSONDecodeError as e:
      raise RuntimeError(f"OpenRouter returned invalid JSON: {e}") from e
    return StructuredModelResponse(content=parsed, usage=_usage(response))


class OpenRouterProvider(Provider):
  """OpenRouter provider."""

  _DEFAULT_MODEL: Final[str] = "openai/gpt-oss-120b:free"

  def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
    self.name: str = "openrouter"
    self._api_key = api_key
    self._base_url = base_url

  def get_model(self, model: str | None = None) -> AIModel:
    return OpenRouterModel(model or self._DEFAULT_MODEL, api_key=self._api_key, base_url=self._base_url)
