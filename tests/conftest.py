"""Fixtures shared by the bakery tests."""

from collections.abc import AsyncGenerator
import io
import tarfile

import pytest

from bakery.exceptions import FetchException
from bakery.fetch import ArtifactFetcher
from bakery.model import Artifact
from bakery.staging import StagingEnvironment


class FakeFetcher(ArtifactFetcher):
    """Serves artifact content from memory keyed by reference."""

    def __init__(self, contents: dict[str, bytes | str] | None = None) -> None:
        self.contents: dict[str, bytes | str] = dict(contents or {})
        self.fetched: list[Artifact] = []

    async def fetch(self, artifact: Artifact) -> bytes:
        self.fetched.append(artifact)
        if (content := self.contents.get(artifact.reference or "")) is None:
            raise FetchException(f"404 Not Found: {artifact.reference}")
        if isinstance(content, str):
            return content.encode("utf-8")
        return content

    async def close(self) -> None:
        """Nothing to release."""


def make_tarball(files: dict[str, str]) -> bytes:
    """Return a gzip tarball holding the files."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture(name="fetcher")
def mock_fetcher() -> FakeFetcher:
    """Fixture for an empty in-memory fetcher."""
    return FakeFetcher()


@pytest.fixture(name="env")
async def mock_env(tmp_path_factory: pytest.TempPathFactory) -> AsyncGenerator[
    StagingEnvironment, None
]:
    """Fixture for a staging environment removed after the test."""
    async with StagingEnvironment.create(tmp_path_factory.mktemp("staging")) as env:
        yield env
