import json
import logging
from typing import Any, Dict, Optional, Protocol

import anthropic
import openai

from estimator.errors import ConfigurationError, ModelOutputError
from estimator.settings import Settings

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    def complete_json(
        self,
        *,
        stage: str,
        system: str,
        prompt: str,
        schema: Dict[str, Any],
        timeout: float,
    ) -> str:
        """Return the model's raw JSON text for one request."""


# ---------------- Claude ----------------
class ClaudeClient:
    def __init__(self, api_key: str, model: str, max_tokens: int = 8192, client: Optional[Any] = None):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or anthropic.Anthropic(api_key=api_key, max_retries=0)

    def complete_json(self, *, stage: str, system: str, prompt: str, schema: Dict[str, Any], timeout: float) -> str:
        system_prompt = (
            f"{system}\n\nReturn JSON ONLY, matching this JSON Schema exactly:\n"
            f"{json.dumps(schema, ensure_ascii=False)}"
        )
        try:
            resp = self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0,
                system=system_prompt,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
            )
        except anthropic.APITimeoutError as e:
            raise ModelOutputError(f"Claude call timed out after {timeout}s", stage=stage) from e
        except anthropic.APIError as e:
            raise ModelOutputError(f"Claude call failed: {e}", stage=stage) from e

        raw = "".join(getattr(block, "text", "") for block in (resp.content or []))
        if resp.stop_reason == "max_tokens":
            raise ModelOutputError("Claude output was cut off at max_tokens", stage=stage)
        logger.debug("llm[%s]: raw Claude output (first 700 chars): %s", stage, raw[:700])
        return raw


# ---------------- OpenAI ----------------
class OpenAIClient:
    def __init__(self, api_key: str, model: str, client: Optional[Any] = None):
        self.model = model
        self._client = client or openai.OpenAI(api_key=api_key, max_retries=0)

    def complete_json(self, *, stage: str, system: str, prompt: str, schema: Dict[str, Any], timeout: float) -> str:
        try:
            resp = self._client.responses.create(
                model=self.model,
                instructions=system,
                input=prompt,
                text={"format": {"type": "json_schema", "name": stage, "schema": schema, "strict": True}},
                timeout=timeout,
            )
        except openai.APITimeoutError as e:
            raise ModelOutputError(f"OpenAI call timed out after {timeout}s", stage=stage) from e
        except openai.APIError as e:
            raise ModelOutputError(f"OpenAI call failed: {e}", stage=stage) from e

        raw = getattr(resp, "output_text", None) or ""
        logger.debug("llm[%s]: raw OpenAI output (first 700 chars): %s", stage, raw[:700])
        return raw


def build_model_client(settings: Settings) -> ModelClient:
    if settings.model_provider == "openai":
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set")
        return OpenAIClient(api_key=settings.openai_api_key, model=settings.openai_model)

    if not settings.anthropic_api_key:
        raise ConfigurationError("ANTHROPIC_API_KEY is not set")
    return ClaudeClient(
        api_key=settings.anthropic_api_key,
        model=settings.claude_model,
        max_tokens=settings.model_response_max_tokens,
    )
