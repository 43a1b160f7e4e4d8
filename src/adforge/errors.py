"""Error taxonomy for the generation pipeline.

Infrastructure failures are raised as PipelineError subclasses and reach the
caller unchanged in kind. Quality shortfalls are never errors; they travel in
GenerationResult.issues.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for everything the pipeline surfaces to its caller."""


class ValidationError(PipelineError):
    """The request itself is unusable (empty prompt, bad mime, ...)."""


class QualityGateError(ValidationError):
    def __init__(self, score: int, suggestions: list[str]) -> None:
        self.score = score
        self.suggestions = list(suggestions)
        msg = f"pre-generation quality gate failed (score: {score}/100)"
        if suggestions:
            msg += ": " + "; ".join(suggestions)
        super().__init__(msg)


class NotFoundError(PipelineError):
    pass


class RateLimitedError(PipelineError):
    """Provider quota hit. Not retried here; the caller owns queueing/backoff."""

    def __init__(self, message: str = "provider rate limit reached", retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class GenerationError(PipelineError):
    """The provider call failed after the invoker's own retries."""


class PersistenceError(PipelineError):
    """Storage failed. On writes the image was generated but could not be saved."""

    def __init__(
        self,
        message: str,
        *,
        prompt: str | None = None,
        mime_type: str | None = None,
        creative_succeeded: bool = True,
    ) -> None:
        super().__init__(message)
        self.creative_succeeded = creative_succeeded
        self.prompt = prompt
        self.mime_type = mime_type


class PipelineCancelled(PipelineError):
    pass


# Provider-side errors. Adapters raise these; the invoker maps them onto the
# pipeline taxonomy.


class ProviderError(Exception):
    pass


class TransientProviderError(ProviderError):
    """Timeout or 5xx-class failure; safe to retry with the same payload."""


class ProviderValidationError(ProviderError):
    """Payload rejected by the provider (malformed request, unsupported mime)."""


class MalformedResponseError(ProviderError):
    """Provider answered, but not with a usable image."""
