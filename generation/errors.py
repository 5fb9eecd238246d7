"""
Error types raised by the generation pipeline.

The orchestrator decides per class whether a failure consumes one attempt,
aborts the current question, or is surfaced to the caller.
"""

from typing import List, Optional


class GenerationError(RuntimeError):
    """Base class for all pipeline failures."""


class ConfigurationError(GenerationError, ValueError):
    """Caller-side misconfiguration (empty prompt, unusable key list, ...)."""


class NoApiKeysError(ConfigurationError):
    """The key pool has never been configured with a usable key."""


class ContentBlockedError(GenerationError):
    """The provider refused the prompt on content-safety grounds."""

    def __init__(self, reason: str):
        super().__init__(f"Content blocked by provider: {reason}")
        self.reason = reason


class CompletionExhaustedError(GenerationError):
    def __init__(self, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            f"Failed to generate content after {attempts} attempts across all API keys"
        )
        self.attempts = attempts
        self.last_error = last_error


class JsonExtractionError(GenerationError, ValueError):
    """
    Every parsing strategy failed.

    Only the strategy count and terse reasons are kept; the raw model output
    is never embedded in the message.
    """

    def __init__(self, reasons: List[str]):
        super().__init__(
            f"Failed to parse AI response after {len(reasons)} strategies: "
            + "; ".join(reasons)
        )
        self.reasons = reasons


class GenerationTimeoutError(GenerationError, TimeoutError):
    def __init__(self, seconds: float):
        super().__init__(f"API call timeout after {seconds:g} seconds")
        self.seconds = seconds


class RunConflictError(GenerationError):
    """A background run is already active."""
