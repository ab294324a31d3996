from typing import Sequence

import anyio
from anyio import to_thread

from aperture_core.errors import ProviderError
from aperture_core.types import EmbeddingVector

from .provider import EmbeddingProvider


async def embed_texts(
    provider: EmbeddingProvider,
    texts: Sequence[str],
    *,
    timeout_s: float,
) -> list[EmbeddingVector]:
    """Run the (blocking) provider in a worker thread under a hard deadline."""
    try:
        with anyio.fail_after(timeout_s):
            return await to_thread.run_sync(
                provider.embed_batch, list(texts), abandon_on_cancel=True
            )
    except TimeoutError as e:
        raise ProviderError("outage", f"embedding provider timed out after {timeout_s:.1f}s") from e
