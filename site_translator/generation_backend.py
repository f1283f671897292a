"""
Language-model access for the translation pipeline.

The pipeline only needs one capability: send a prompt, get text back together
with token usage and whether the output hit the length limit. Providers are
implemented behind ``GenerationBackend`` so they can be swapped or faked in
tests without touching pipeline logic.
"""
import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import anthropic
import openai
from aiolimiter import AsyncLimiter
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionUserMessageParam

from site_translator.run_log import TranslationRunLog

logger = logging.getLogger("site_translator")

TRUNCATED_ERROR = 'Response truncated'

PROVIDER_OPENAI = 'openai'
PROVIDER_ANTHROPIC = 'anthropic'
SUPPORTED_PROVIDERS = (PROVIDER_OPENAI, PROVIDER_ANTHROPIC)


class GenerationError(Exception):
    """Raised when a backend cannot produce a response (after its own retries)."""


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class GenerationResult:
    """Text returned by a backend, its token usage and the truncation flag."""
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    truncated: bool = False


class GenerationBackend(ABC):
    """A provider-neutral text generation capability."""

    @abstractmethod
    async def generate(self, model: str, prompt: str, max_output_tokens: int) -> GenerationResult:
        """
        Generate a completion for ``prompt``.

        Raises:
            GenerationError: If no response could be obtained.
        """


def _retry_after_seconds(api_exc: Optional[Exception]) -> Optional[float]:
    """Read a Retry-After hint (seconds or milliseconds) from an API error, if any."""
    response = getattr(api_exc, 'response', None)
    headers = getattr(response, 'headers', None) or {}
    retry_after_header = headers.get('Retry-After') or headers.get('retry-after')
    if not retry_after_header:
        return None
    if retry_after_header.isdigit():
        return float(retry_after_header)
    if retry_after_header.endswith('ms'):
        return float(retry_after_header[:-2]) / 1000
    return None


async def _handle_retry(attempt: int, max_retries: int, base_delay: float, label: str,
                        api_exc: Optional[Exception] = None) -> bool:
    """
    Sleep before the next attempt using Retry-After or exponential backoff with jitter.

    Returns:
        True if the caller should retry, False once the attempts are exhausted.
    """
    if attempt >= max_retries:
        logger.error(f"Generation request '{label}' failed after {max_retries} attempts.")
        return False
    try:
        delay = _retry_after_seconds(api_exc)
    except ValueError as exc:
        logger.warning(f"Failed to parse Retry-After header: {exc}. Falling back to exponential backoff.")
        delay = None
    if delay is None:
        delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, 1)
    logger.info(f"Retrying generation request in {delay:.2f} seconds (Attempt {attempt}/{max_retries})")
    await asyncio.sleep(delay)
    return True


def _is_transient(api_exc: Exception) -> bool:
    status_code = getattr(api_exc, 'status_code', None)
    return status_code is None or status_code == 429 or status_code >= 500


class OpenAIBackend(GenerationBackend):
    """Chat Completions backend. ``finish_reason == "length"`` marks truncation."""

    def __init__(self, client: AsyncOpenAI, rate_limiter: Optional[AsyncLimiter] = None,
                 max_retries: int = 5, base_delay: float = 1.0, temperature: float = 0.3,
                 timeout: float = 120.0):
        self.client = client
        self.rate_limiter = rate_limiter or AsyncLimiter(max_rate=60, time_period=60)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.temperature = temperature
        self.timeout = timeout

    async def generate(self, model: str, prompt: str, max_output_tokens: int) -> GenerationResult:
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.rate_limiter:
                    response = await self.client.chat.completions.create(
                        model=model,
                        messages=[ChatCompletionUserMessageParam(role="user", content=prompt)],
                        temperature=self.temperature,
                        max_tokens=max_output_tokens,
                        timeout=self.timeout,
                    )
            except (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError,
                    openai.APIStatusError) as api_exc:
                logger.error(f"API error occurred: {api_exc.__class__.__name__} - {api_exc}")
                if _is_transient(api_exc) and await _handle_retry(
                        attempt, self.max_retries, self.base_delay, model, api_exc):
                    continue
                raise GenerationError(f"{api_exc.__class__.__name__}: {api_exc}") from api_exc
            except openai.OpenAIError as api_exc:
                raise GenerationError(f"{api_exc.__class__.__name__}: {api_exc}") from api_exc

            choice = response.choices[0]
            usage = TokenUsage()
            if response.usage is not None:
                usage = TokenUsage(response.usage.prompt_tokens or 0, response.usage.completion_tokens or 0)
            return GenerationResult(
                text=(choice.message.content or '').strip(),
                usage=usage,
                truncated=choice.finish_reason == 'length',
            )

        raise GenerationError(f"No response from '{model}' after {self.max_retries} attempts.")


class AnthropicBackend(GenerationBackend):
    """Messages API backend. ``stop_reason == "max_tokens"`` marks truncation."""

    def __init__(self, client: anthropic.AsyncAnthropic, rate_limiter: Optional[AsyncLimiter] = None,
                 max_retries: int = 5, base_delay: float = 1.0, timeout: float = 300.0):
        self.client = client
        self.rate_limiter = rate_limiter or AsyncLimiter(max_rate=60, time_period=60)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout

    async def generate(self, model: str, prompt: str, max_output_tokens: int) -> GenerationResult:
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.rate_limiter:
                    message = await self.client.messages.create(
                        model=model,
                        max_tokens=max_output_tokens,
                        messages=[{"role": "user", "content": prompt}],
                        timeout=self.timeout,
                    )
            except (anthropic.RateLimitError, anthropic.APITimeoutError, anthropic.APIConnectionError,
                    anthropic.APIStatusError) as api_exc:
                logger.error(f"API error occurred: {api_exc.__class__.__name__} - {api_exc}")
                if _is_transient(api_exc) and await _handle_retry(
                        attempt, self.max_retries, self.base_delay, model, api_exc):
                    continue
                raise GenerationError(f"{api_exc.__class__.__name__}: {api_exc}") from api_exc
            except anthropic.AnthropicError as api_exc:
                raise GenerationError(f"{api_exc.__class__.__name__}: {api_exc}") from api_exc

            text = ''.join(block.text for block in message.content if getattr(block, 'type', None) == 'text')
            return GenerationResult(
                text=text.strip(),
                usage=TokenUsage(message.usage.input_tokens, message.usage.output_tokens),
                truncated=message.stop_reason == 'max_tokens',
            )

        raise GenerationError(f"No response from '{model}' after {self.max_retries} attempts.")


def create_backend(provider: str, api_key: str, requests_per_minute: int = 60) -> GenerationBackend:
    """Instantiate the backend for ``provider`` with a shared rate limiter."""
    rate_limiter = AsyncLimiter(max_rate=requests_per_minute, time_period=60)
    if provider == PROVIDER_OPENAI:
        return OpenAIBackend(AsyncOpenAI(api_key=api_key), rate_limiter)
    if provider == PROVIDER_ANTHROPIC:
        return AnthropicBackend(anthropic.AsyncAnthropic(api_key=api_key), rate_limiter)
    raise ValueError(f"Unsupported provider '{provider}'. Expected one of: {', '.join(SUPPORTED_PROVIDERS)}")


@dataclass
class GenerationOutcome:
    """Result of one pipeline request: text on success, an error message otherwise."""
    text: Optional[str]
    usage: TokenUsage
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GenerationSession:
    """
    Binds a backend to a model and a run log.

    Every request's token usage is added to the run log whether or not the
    request succeeded. Truncation and backend failures become an error on the
    outcome instead of an exception, so one bad call never aborts a run.
    """

    def __init__(self, backend: GenerationBackend, model: str, run_log: TranslationRunLog):
        self.backend = backend
        self.model = model
        self.run_log = run_log

    async def request(self, prompt: str, max_output_tokens: int) -> GenerationOutcome:
        try:
            result = await self.backend.generate(self.model, prompt, max_output_tokens)
        except GenerationError as e:
            logger.error(f"Generation failed: {e}")
            return GenerationOutcome(text=None, usage=TokenUsage(), error=str(e))

        self.run_log.add_usage(result.usage.input_tokens, result.usage.output_tokens)
        if result.truncated:
            return GenerationOutcome(text=None, usage=result.usage,
                                     error=f"{TRUNCATED_ERROR} (max_tokens={max_output_tokens})")
        return GenerationOutcome(text=result.text, usage=result.usage)
