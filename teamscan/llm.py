"""Model invoker: one bounded, non-retrying chat-completion call.

The client speaks to Azure OpenAI (default) or any OpenAI-compatible endpoint
through the ``openai`` SDK. Outcomes are classified by the model's reported
``finish_reason`` and by transport error type; see ``teamscan.errors``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import openai

from teamscan.config import LLMConfig, Settings
from teamscan.errors import (
    UpstreamConfigError,
    UpstreamContentFiltered,
    UpstreamEmptyOutput,
    UpstreamError,
    UpstreamRateOrAuth,
    UpstreamTimeout,
    UpstreamTruncated,
)
from teamscan.utils import preview

log = logging.getLogger(__name__)

_DEPLOYMENTS_MARKER = "/openai/deployments/"


class LLMClient:
    """Async chat-completion client with explicit failure classification."""

    def __init__(self, config: LLMConfig, client: Any = None):
        self.config = config
        self.model = config.model
        self._client = client if client is not None else self._build_client()

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMClient:
        return cls(settings.llm_config())

    def _build_client(self) -> Any:
        cfg = self.config
        common: dict[str, Any] = {
            "api_key": cfg.credential.get_secret_value(),
            "timeout": cfg.timeout_seconds,
            "max_retries": 0,
        }
        if cfg.provider == "azure":
            endpoint = cfg.endpoint.removesuffix("/chat/completions")
            if _DEPLOYMENTS_MARKER in endpoint:
                # Full deployment URL supplied; the SDK appends /chat/completions itself.
                return openai.AsyncAzureOpenAI(base_url=endpoint, api_version=cfg.api_version, **common)
            return openai.AsyncAzureOpenAI(
                azure_endpoint=endpoint,
                azure_deployment=cfg.model,
                api_version=cfg.api_version,
                **common,
            )
        if cfg.endpoint:
            common["base_url"] = cfg.endpoint
        return openai.AsyncOpenAI(**common)

    async def complete(
        self,
        system: str,
        user: str,
        *,
        json_mode: bool = True,
        history: list[dict[str, str]] | None = None,
    ) -> str:
        """Send system + (history) + user messages and return the assistant text.

        Raises an ``UpstreamError`` subclass on any failure; never returns blank text.
        """
        messages = [{"role": "system", "content": system}, *(history or []),
                    {"role": "user", "content": user}]
        request: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": self.config.max_output_tokens,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        log.info(
            "LLM request: provider=%s model=%s system_chars=%d user_chars=%d messages=%d json=%s",
            self.config.provider, self.model, len(system), len(user), len(messages), json_mode,
        )
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**request),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            elapsed = time.monotonic() - started
            log.error("LLM request timed out after %.1fs", elapsed)
            raise UpstreamTimeout(
                f"Model request timed out after {elapsed:.0f}s. Check the endpoint and network connectivity."
            ) from exc
        except openai.APIError as exc:
            raise _classify_api_error(exc, self.model) from exc

        elapsed = time.monotonic() - started
        content = extract_content(response)
        usage = getattr(response, "usage", None)
        log.info(
            "LLM response in %.1fs: chars=%d tokens=%s preview=%r",
            elapsed, len(content), getattr(usage, "total_tokens", "?"), preview(content, 300),
        )
        return content


def extract_content(response: Any) -> str:
    """Pull the assistant text out of a completion, classifying empty outcomes."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise UpstreamEmptyOutput(
            "Model returned no choices. Check the model deployment and configuration."
        )
    choice = choices[0]
    finish_reason = getattr(choice, "finish_reason", None)
    message = getattr(choice, "message", None)
    content = (getattr(message, "content", None) or "").strip()

    if finish_reason == "length":
        if not content:
            raise UpstreamTruncated(
                "Response was truncated at the token limit and returned no content. "
                "The prompt may be too large or the output ceiling too small."
            )
        log.warning("Response truncated at token limit but has content (%d chars)", len(content))
    elif finish_reason == "content_filter":
        raise UpstreamContentFiltered("Response was blocked by the provider's content filter.")

    if not content:
        raise UpstreamEmptyOutput(
            f"Model finished ({finish_reason or 'unknown'}) without content. "
            "This usually indicates a deployment or configuration problem."
        )
    return content


def _classify_api_error(exc: openai.APIError, model: str) -> UpstreamError:
    if isinstance(exc, openai.APITimeoutError):
        return UpstreamTimeout("Model request timed out before a response arrived.")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return UpstreamRateOrAuth("Model endpoint rejected the credentials. Check the configured API key.")
    if isinstance(exc, openai.RateLimitError):
        return UpstreamRateOrAuth("Model endpoint rate limit or quota exceeded.", retryable=True)
    if isinstance(exc, openai.NotFoundError):
        return UpstreamConfigError(
            f"Model or deployment {model!r} was not found at the configured endpoint."
        )
    if isinstance(exc, openai.APIConnectionError):
        return UpstreamError("Unable to reach the model endpoint.", retryable=True)
    status = getattr(exc, "status_code", None)
    log.error("LLM API error (status=%s): %s", status, exc.message)
    return UpstreamError(f"Model API error ({status or 'n/a'}): {exc.message}")
