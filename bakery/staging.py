"""A scoped temporary workspace holding the files of a single bake.

Every bake gets its own directory, and every path written into it is checked
to resolve inside that directory. The directory is removed when the scope
exits, regardless of the outcome of the bake:
```python
from bakery.staging import StagingEnvironment

async with StagingEnvironment.create() as env:
    await env.write_text("values.yaml", "foo: bar\n")
    print(env.resolve_path("values.yaml"))
```
"""

from collections.abc import Iterator
import io
import logging
from pathlib import Path
import shutil
import tarfile
import tempfile
from typing import IO, Any

import aiofiles
import aiofiles.os

from .exceptions import InvalidRequestException, PathEscapeException

__all__ = [
    "StagingEnvironment",
]

_LOGGER = logging.getLogger(__name__)

_PREFIX = "bake-"


class StagingEnvironment:
    """Owns a unique staging directory for the lifetime of one bake."""

    def __init__(self, root: Path) -> None:
        """Initialize StagingEnvironment, use `create` to make a new directory."""
        self._root = root.resolve()
        self._closed = False

    @classmethod
    def create(cls, parent: Path | None = None) -> "StagingEnvironment":
        """Create a new uniquely named staging directory."""
        root = Path(tempfile.mkdtemp(prefix=_PREFIX, dir=parent))
        _LOGGER.debug("Created staging environment %s", root)
        return cls(root)

    @property
    def root(self) -> Path:
        """Absolute path of the staging directory."""
        return self._root

    @property
    def closed(self) -> bool:
        """Return True once the staging directory was removed."""
        return self._closed

    def resolve_path(self, relative: str | Path) -> Path:
        """Return the absolute path of `relative` inside the staging root.

        Raises PathEscapeException if the path would land outside of the root,
        e.g. an absolute path or one with too many `..` segments.
        """
        candidate = (self._root / relative).resolve()
        if candidate != self._root and not candidate.is_relative_to(self._root):
            raise PathEscapeException(
                f"Path '{relative}' resolves outside of the staging directory"
            )
        return candidate

    async def write_bytes(self, relative: str | Path, data: bytes) -> Path:
        """Write a file inside the staging root, creating parent directories."""
        path = self.resolve_path(relative)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, mode="wb") as out:
            await out.write(data)
        return path

    async def write_text(self, relative: str | Path, content: str) -> Path:
        """Write a utf-8 text file inside the staging root."""
        return await self.write_bytes(relative, content.encode("utf-8"))

    def _checked_members(self, tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
        for member in tar:
            self.resolve_path(member.name)
            if member.issym():
                self.resolve_path(Path(member.name).parent / member.linkname)
            elif member.islnk():
                self.resolve_path(member.linkname)
            elif not (member.isfile() or member.isdir()):
                raise PathEscapeException(
                    f"Unsupported tarball entry '{member.name}' of type {member.type!r}"
                )
            yield member

    def extract_tarball(self, content: bytes | IO[bytes]) -> None:
        """Extract a gzip tarball into the staging root preserving relative paths.

        The whole archive is rejected when any entry would be written outside
        of the staging root.
        """
        fileobj = io.BytesIO(content) if isinstance(content, bytes) else content
        try:
            with tarfile.open(fileobj=fileobj, mode="r:gz") as tar:
                members = list(self._checked_members(tar))
                tar.extractall(self._root, members=members, filter="data")
        except (tarfile.TarError, EOFError, OSError) as err:
            raise InvalidRequestException(f"Unable to extract tarball: {err}") from err

    def close(self) -> None:
        """Remove the staging directory, only the first call has any effect.

        Failures are logged and do not propagate so they never mask the
        outcome of the bake.
        """
        if self._closed:
            return
        self._closed = True
        _LOGGER.debug("Removing staging environment %s", self._root)
        try:
            shutil.rmtree(self._root)
        except OSError as err:
            _LOGGER.warning(
                "Failed to clean up staging environment %s: %s", self._root, err
            )

    def __enter__(self) -> "StagingEnvironment":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    async def __aenter__(self) -> "StagingEnvironment":
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.close()

    def __str__(self) -> str:
        return str(self._root)
