from typing import Optional


class AgentError(Exception):
    """Base class for failures raised by the matching pipeline."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(message)


class AgentValidationError(AgentError):
    """Malformed or oversized input. Surfaced immediately, never retried."""

    def __init__(self, message: str, code: str = "invalid", stage: Optional[str] = "validate"):
        self.code = code
        super().__init__(message, stage)


class QuotaExceeded(AgentError):
    def __init__(self, limit: int, resets_at: str):
        self.limit = limit
        self.resets_at = resets_at
        super().__init__(
            f"Daily agent search limit reached ({limit}). Resets at {resets_at}.",
            stage="quota",
        )


class UpstreamUnavailable(AgentError):
    """An external provider or store failed after its bounded retries."""


class IntentProviderError(UpstreamUnavailable):
    def __init__(self, message: str):
        super().__init__(message, stage="parse_intent")


class EmbeddingUnavailable(UpstreamUnavailable):
    def __init__(self, message: str):
        super().__init__(message, stage="embed_intent")


class RetrievalUnavailable(UpstreamUnavailable):
    def __init__(self, message: str):
        super().__init__(message, stage="agent_search")


class PersistenceError(AgentError):
    def __init__(self, message: str):
        super().__init__(message, stage="persist")


class PipelineStageError(AgentError):
    """Wraps an unexpected failure with the name of the stage it happened in."""

    def __init__(self, stage: str, cause: BaseException):
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}", stage)
