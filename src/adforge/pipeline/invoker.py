from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from adforge.config import Settings, settings as default_settings
from adforge.errors import (
    GenerationError,
    MalformedResponseError,
    ProviderValidationError,
    TransientProviderError,
    ValidationError,
)
from adforge.models import AssembledPrompt, OpaqueTurn, RawResult
from adforge.providers.base import ImageProvider

log = logging.getLogger(__name__)


class GenerationInvoker:
    """Calls the image provider, retrying the *call* (never the content) on transient failures.

    Rate limits pass straight through as RateLimitedError; the caller decides
    when to try again.
    """

    def __init__(self, provider: ImageProvider, settings: Settings | None = None) -> None:
        self.provider = provider
        self.settings = settings or default_settings

    async def invoke(
        self,
        assembled: AssembledPrompt,
        prior_conversation: Sequence[OpaqueTurn] | None = None,
        *,
        resolution: str = "2K",
        aspect_ratio: str = "1:1",
    ) -> RawResult:
        s = self.settings
        prior = tuple(prior_conversation or ())
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, s.invoke_max_attempts)),
            wait=wait_exponential(multiplier=s.invoke_backoff_base_s, min=s.invoke_backoff_base_s, max=s.invoke_backoff_max_s),
            retry=retry_if_exception_type((TransientProviderError, asyncio.TimeoutError)),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    raw = await asyncio.wait_for(
                        self.provider.invoke(
                            assembled.prompt,
                            assembled.image_parts,
                            prior or None,
                            resolution=resolution,
                            aspect_ratio=aspect_ratio,
                        ),
                        timeout=s.invoke_timeout_s,
                    )
        except asyncio.TimeoutError as e:
            raise GenerationError(f"provider timed out after {s.invoke_max_attempts} attempt(s)") from e
        except TransientProviderError as e:
            raise GenerationError(f"provider failed after {s.invoke_max_attempts} attempt(s): {e}") from e
        except ProviderValidationError as e:
            raise ValidationError(str(e)) from e
        except MalformedResponseError as e:
            raise GenerationError(str(e)) from e

        try:
            validate_raw_result(raw, prior)
        except MalformedResponseError as e:
            raise GenerationError(str(e)) from e
        return raw


def validate_raw_result(raw: RawResult, prior: tuple[OpaqueTurn, ...]) -> None:
    if not raw.image_bytes:
        raise MalformedResponseError("provider returned an empty image")
    if not raw.mime_type.startswith("image/"):
        raise MalformedResponseError(f"provider returned non-image content ({raw.mime_type})")
    history = tuple(raw.conversation_history)
    # Append-only: prior turns replayed verbatim, plus request and response.
    if history[: len(prior)] != prior:
        raise MalformedResponseError("provider rewrote earlier conversation turns")
    if len(history) != len(prior) + 2:
        raise MalformedResponseError(
            f"expected {len(prior) + 2} conversation turns, provider returned {len(history)}"
        )
