from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

import openai
from openai import OpenAI
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from aperture_core.errors import ProviderError
from aperture_core.types import EmbeddingModelSpec, EmbeddingVector

log = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    model: EmbeddingModelSpec

    def embed(self, text: str) -> EmbeddingVector: ...

    def embed_batch(self, texts: Sequence[str]) -> list[EmbeddingVector]: ...


def classify_openai_error(e: Exception) -> ProviderError:
    """Map SDK exceptions onto our four provider error kinds."""
    if isinstance(e, openai.RateLimitError):
        kind = "rate_limit"
    elif isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = "auth"
    elif isinstance(e, (openai.BadRequestError, openai.UnprocessableEntityError, openai.NotFoundError)):
        kind = "validation"
    elif isinstance(e, (openai.APIConnectionError, openai.InternalServerError)):
        # APITimeoutError is an APIConnectionError
        kind = "outage"
    elif isinstance(e, openai.APIStatusError):
        kind = "outage" if e.status_code >= 500 else "validation"
    else:
        kind = "outage"
    return ProviderError(kind, f"{type(e).__name__}: {e}")


def _is_retryable(e: BaseException) -> bool:
    return isinstance(e, ProviderError) and e.retryable


class OpenAIEmbeddingProvider:
    """
    Sync OpenAI embeddings client; callers run it in a worker thread.

    Rate limits and outages are retried with jittered exponential backoff;
    auth/validation errors surface on the first attempt.
    """

    def __init__(
        self,
        model: EmbeddingModelSpec,
        *,
        api_key: str | None = None,
        timeout: float | None = 20.0,
        max_attempts: int = 4,
        wait: wait_base | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.max_attempts = max_attempts
        self._wait = wait or wait_random_exponential(multiplier=0.5, max=8)
        if client is None:
            # Reads OPENAI_API_KEY from env by default; retries are ours
            client_kwargs: dict = {"timeout": timeout, "max_retries": 0}
            if api_key is not None:
                client_kwargs["api_key"] = api_key
            client = OpenAI(**client_kwargs)
        self._client = client

    def embed(self, text: str) -> EmbeddingVector:
        [vec] = self.embed_batch([text])
        return vec

    def embed_batch(self, texts: Sequence[str]) -> list[EmbeddingVector]:
        if not texts:
            return []
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception(_is_retryable),
            wait=self._wait,
            before_sleep=self._log_retry,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._embed_once(list(texts))
        raise ProviderError("outage", "embedding retries exhausted")  # pragma: no cover

    def _embed_once(self, texts: list[str]) -> list[EmbeddingVector]:
        try:
            resp = self._client.embeddings.create(model=self.model.model_id, input=texts)
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        rows = sorted(resp.data, key=lambda d: d.index)
        if len(rows) != len(texts):
            raise ProviderError("validation", f"asked for {len(texts)} embeddings, got {len(rows)}")
        return [self.model.vector(r.embedding) for r in rows]

    @staticmethod
    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "embedding call failed (attempt %d): %s; retrying",
            retry_state.attempt_number,
            exc,
        )
