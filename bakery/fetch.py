"""Library for fetching bake input artifacts from the artifact fetch service.

The fetch service resolves an artifact reference (http file, git repo, bucket
object, ...) using the credentials of the artifact account and returns its
raw content. A `git/repo` artifact is returned as a gzip tarball.

Every fetch is retried a bounded number of times with a fixed delay between
attempts, and raises a FetchException once all attempts are exhausted.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from pathlib import Path

import httpx

from .config import FetchConfig
from .exceptions import FetchException, InvalidRequestException
from .model import Artifact
from .staging import StagingEnvironment

__all__ = [
    "ArtifactFetcher",
    "HttpArtifactFetcher",
]

_LOGGER = logging.getLogger(__name__)

FETCH_PATH = "/artifacts/fetch/"


class ArtifactFetcher(ABC):
    """Fetches the content of artifacts."""

    @abstractmethod
    async def fetch(self, artifact: Artifact) -> bytes:
        """Return the content of the artifact."""

    async def fetch_to_file(
        self, artifact: Artifact, env: StagingEnvironment, relative: str | Path
    ) -> Path:
        """Fetch the artifact into a file inside the staging environment."""
        if not artifact.reference:
            raise InvalidRequestException(
                "Input artifact has an empty 'reference' field."
            )
        # Check the destination before paying for the download
        env.resolve_path(relative)
        content = await self.fetch(artifact)
        return await env.write_bytes(relative, content)

    async def fetch_and_extract_tarball(
        self, artifact: Artifact, env: StagingEnvironment
    ) -> None:
        """Fetch a gzip tarball and extract it into the staging root."""
        content = await self.fetch(artifact)
        await asyncio.to_thread(env.extract_tarball, content)


class HttpArtifactFetcher(ArtifactFetcher):
    """Fetches artifacts over http with a fixed retry policy."""

    def __init__(
        self, config: FetchConfig, client: httpx.AsyncClient | None = None
    ) -> None:
        """Initialize HttpArtifactFetcher."""
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url, timeout=config.timeout_seconds
        )

    async def _fetch_once(self, artifact: Artifact) -> bytes:
        response = await self._client.put(FETCH_PATH, json=artifact.to_dict())
        response.raise_for_status()
        return response.content

    async def fetch(self, artifact: Artifact) -> bytes:
        """Return the content of the artifact, retrying on failure."""
        last_error: Exception | None = None
        for attempt in range(1, self._config.max_attempts + 1):
            try:
                return await self._fetch_once(artifact)
            except httpx.HTTPError as err:
                last_error = err
                _LOGGER.warning(
                    "Failed to fetch artifact %s (attempt %d/%d): %s",
                    artifact.reference,
                    attempt,
                    self._config.max_attempts,
                    err,
                )
            if attempt < self._config.max_attempts:
                await asyncio.sleep(self._config.backoff_seconds)
        raise FetchException(
            f"Failed to download artifact {artifact.reference}: {last_error}"
        ) from last_error

    async def close(self) -> None:
        """Release the underlying http connections."""
        await self._client.aclose()
