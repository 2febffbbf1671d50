"""Async chat-completion client and the helpers around it.

The provider is a black box: we send a system and a user message and get text
back. Turning that text into data (code-fence stripping, locating the JSON
object) happens here too so the fact extractor and the deep analyzer share
one parser.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from coinradar.config import Settings
from coinradar.schemas import RunSettings

log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


class LLMCallError(Exception):
    """LLM call failed at the API level (network, auth, quota, empty reply)."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class LLMConfigError(RuntimeError):
    """No usable API key is configured for the selected provider."""


class JSONPayloadError(ValueError):
    """The model reply does not contain a decodable JSON object."""


# ---------------------------------------------------------------------------
# Model selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelChoice:
    provider: str
    model: str
    api_key: str
    base_url: str | None = None


def select_model(run_settings: RunSettings, config: Settings) -> ModelChoice:
    """Pick provider, model and key for a run.

    A user-supplied key unlocks the premium OpenAI model; otherwise the
    cheaper default model runs on the deployment's own key.
    """
    if run_settings.user_api_key:
        return ModelChoice(
            provider="openai",
            model=config.premium_model,
            api_key=run_settings.user_api_key,
            base_url=config.openai_base_url or None,
        )
    provider = config.llm_provider
    if provider == "anthropic":
        key = config.anthropic_api_key
        model = config.default_model or "claude-haiku-4-5-20251001"
        base_url = None
    else:
        key = config.openai_api_key
        model = config.default_model or "gpt-4o-mini"
        base_url = config.openai_base_url or None
    if not key:
        raise LLMConfigError(f"no API key configured for provider {provider!r}")
    return ModelChoice(provider=provider, model=model, api_key=key, base_url=base_url)


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str,
        base_url: str | None = None,
    ):
        self.provider = provider
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    @classmethod
    def from_choice(cls, choice: ModelChoice) -> LLMClient:
        return cls(choice.provider, choice.model, choice.api_key, choice.base_url)

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            kwargs: dict[str, Any] = {"api_key": self._api_key}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise LLMConfigError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 2000,
        temperature: float = 0.2,
    ) -> str:
        """Send system+user message to the LLM, return the reply text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = "".join(
                    getattr(block, "text", "") for block in response.content
                )
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or ""
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        if not text.strip():
            raise LLMCallError("LLM returned an empty response")
        return text


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------


def parse_json_object(text: str) -> dict[str, Any]:
    """Decode the JSON object embedded in a model reply.

    Markdown fences are stripped first, then the outermost ``{...}`` span is
    decoded. Raises :class:`JSONPayloadError` if nothing decodes to an object.
    """
    candidate = text.strip()
    m = _FENCE_RE.search(candidate)
    if m:
        candidate = m.group(1)
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end <= start:
        raise JSONPayloadError(f"no JSON object in reply: {text[:200]!r}")
    try:
        data = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError as exc:
        raise JSONPayloadError(f"invalid JSON in reply: {text[:200]!r}") from exc
    if not isinstance(data, dict):
        raise JSONPayloadError("reply JSON is not an object")
    return data
