from typing import Literal

ProviderErrorKind = Literal["rate_limit", "auth", "validation", "outage"]


class DomainError(Exception):
    code: str = "domain_error"
    status: int = 400

    def __init__(self, message: str = "", *, code: str | None = None, status: int | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code
        if status:
            self.status = status

    @property
    def message(self) -> str:
        return str(self)


class InsufficientDataError(DomainError):
    """No signal to build a taste vector from: watch more to get recommendations."""

    code = "insufficient_data"
    status = 422


class InvalidConfigError(DomainError):
    code = "invalid_config"
    status = 500


class EmbeddingModelMismatch(InvalidConfigError):
    code = "embedding_model_mismatch"


class StaleProfileError(DomainError):
    code = "stale_profile"
    status = 409


class RunInProgressError(DomainError):
    code = "run_in_progress"
    status = 409


class InvalidRunTransition(DomainError):
    code = "invalid_run_transition"
    status = 409


class NotFound(DomainError):
    code = "not_found"
    status = 404


class ProviderError(DomainError):
    """Failure reported by the embedding provider, classified by kind."""

    code = "provider_error"
    status = 502

    def __init__(self, kind: ProviderErrorKind, message: str = ""):
        super().__init__(message or f"embedding provider error ({kind})")
        self.kind: ProviderErrorKind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in ("rate_limit", "outage")
