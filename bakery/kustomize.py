"""Library for building kustomizations fetched file by file.

A kustomization may reference sibling files (resources, patches, generator
inputs) and other kustomizations in parent or child directories. When the
root kustomization is a single file artifact, the whole tree of descriptors is
walked to find every file `kustomize build` needs, and each file is fetched
into the staging environment at the same relative location it has in the repo.

The root artifact `name` is the path of the kustomization within the repo and
its `reference` ends with that path, for example:
```python
from bakery.model import Artifact

root = Artifact(
    type="github/file",
    name="overlays/prod/kustomization.yaml",
    reference="https://api.github.com/repos/org/repo/contents/overlays/prod/kustomization.yaml",
)
files = await DependencyResolver(fetcher).resolve(root)
# frozenset({'deployment.yaml', '../base/kustomization.yaml', '../base/service.yaml'})
```

A `git/repo` artifact skips the walk entirely: the tarball is extracted and
`kustomizeFilePath` selects the directory to build.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
import logging
from pathlib import Path
import posixpath
from typing import Any

import yaml

from .config import KustomizeConfig
from .exceptions import (
    DescriptorException,
    FetchException,
    InvalidRequestException,
)
from .fetch import ArtifactFetcher
from .model import GIT_REPO, Artifact, BakeRecipe, KustomizeBakeRequest, TemplateRenderer
from .staging import StagingEnvironment
from .template import TemplateBuilder

__all__ = [
    "Kustomization",
    "KustomizationFileReader",
    "DependencyResolver",
    "KustomizeTemplateBuilder",
    "looks_like_directory",
]

_LOGGER = logging.getLogger(__name__)

KUSTOMIZATION_FILENAMES = ("kustomization.yaml", "kustomization.yml", "kustomization")

# Fields that may point to other kustomizations
EVALUATE_FIELDS = ("resources", "bases", "components")

# Fields that only ever point to plain files
DOWNLOAD_FIELDS = ("patchesStrategicMerge", "crds")
PATH_LIST_FIELDS = ("patches", "patchesJson6902")
GENERATOR_FIELDS = ("configMapGenerator", "secretGenerator")


def looks_like_directory(entry: str) -> bool:
    """Return True if a reference looks like a directory rather than a file.

    This is best-effort: an entry without a `.` is a directory, as is one
    where the text after the last `.` contains a `/` (e.g. `../base`). A
    file without an extension is therefore treated as a directory.
    """
    if "." not in entry:
        return True
    return "/" in entry.rsplit(".", 1)[1]


def _is_remote(entry: str) -> bool:
    return "://" in entry or entry.startswith("git@")


def _list(doc: dict[str, Any], key: str) -> list[Any]:
    value = doc.get(key) or []
    if not isinstance(value, list):
        raise DescriptorException(f"Invalid kustomization field '{key}': {value!r}")
    return value


def _str_list(doc: dict[str, Any], key: str) -> list[str]:
    return [item for item in _list(doc, key) if isinstance(item, str)]


def _path_list(doc: dict[str, Any], key: str) -> list[str]:
    """Return a list of paths, rejecting any entry that is not a path."""
    paths = _list(doc, key)
    for path in paths:
        if not isinstance(path, str):
            raise DescriptorException(f"Invalid path in field '{key}': {path!r}")
    return paths


def _path(doc: dict[str, Any], key: str) -> str | None:
    value = doc.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise DescriptorException(f"Invalid path in field '{key}': {value!r}")
    return value


@dataclass(frozen=True)
class Kustomization:
    """A parsed kustomization descriptor, a node in the dependency graph."""

    filename: str
    """Name of the descriptor file within its directory."""

    evaluate: tuple[str, ...] = ()
    """Entries that may be files or directories holding another kustomization."""

    download: tuple[str, ...] = ()
    """Entries that are always plain files."""

    @classmethod
    def parse_doc(cls, doc: Any, filename: str) -> "Kustomization":
        """Parse a Kustomization from a yaml document."""
        if doc is None:
            doc = {}
        if not isinstance(doc, dict):
            raise DescriptorException(f"Invalid kustomization {filename}: {doc!r}")
        evaluate: list[str] = []
        for key in EVALUATE_FIELDS:
            evaluate.extend(_str_list(doc, key))

        download: list[str] = []
        for key in DOWNLOAD_FIELDS:
            # Inline patches are documents rather than paths
            download.extend(
                entry for entry in _str_list(doc, key) if "\n" not in entry
            )
        for key in PATH_LIST_FIELDS:
            for patch in _list(doc, key):
                if isinstance(patch, dict) and (path := _path(patch, "path")):
                    download.append(path)
        for key in GENERATOR_FIELDS:
            for generator in _list(doc, key):
                if not isinstance(generator, dict):
                    continue
                for source in ("files", "envs"):
                    for entry in _path_list(generator, source):
                        # Entries may be written as `key=path`
                        download.append(entry.rsplit("=", 1)[-1])
                if env := _path(generator, "env"):
                    download.append(env)

        return cls(
            filename=filename,
            evaluate=tuple(entry for entry in evaluate if not _is_remote(entry)),
            download=tuple(download),
        )

    def files_to_download(self, base: str) -> set[str]:
        """Plain files of this kustomization, including itself, relative to `base`."""
        return {
            posixpath.normpath(posixpath.join(base, entry))
            for entry in (self.filename, *self.download)
        }

    @property
    def files_to_evaluate(self) -> tuple[str, ...]:
        """Entries that need to be classified as file or directory."""
        return self.evaluate


class KustomizationFileReader:
    """Finds and parses the kustomization in a directory of a remote repo."""

    def __init__(self, fetcher: ArtifactFetcher) -> None:
        """Initialize KustomizationFileReader."""
        self._fetcher = fetcher

    @staticmethod
    def candidate_names(preferred: str | None) -> list[str]:
        """Descriptor filenames to try in order, the preferred name first."""
        names = list(KUSTOMIZATION_FILENAMES)
        if preferred in names:
            names.remove(preferred)
            names.insert(0, preferred)
        return names

    async def read(self, directory: Artifact, preferred: str | None) -> Kustomization:
        """Return the first kustomization found in the directory.

        The `reference` of `directory` is the location of the directory, each
        candidate filename is appended to it. Raises DescriptorException when
        no candidate could be fetched and parsed.
        """
        base = (directory.reference or "").rstrip("/")
        for name in self.candidate_names(preferred):
            candidate = directory.with_reference(f"{base}/{name}", name=name)
            try:
                content = await self._fetcher.fetch(candidate)
            except FetchException as err:
                _LOGGER.debug("No kustomization at %s: %s", candidate.reference, err)
                continue
            try:
                doc = yaml.safe_load(content)
            except yaml.YAMLError as err:
                raise DescriptorException(
                    f"Unable to parse kustomization {candidate.reference}: {err}"
                ) from err
            return Kustomization.parse_doc(doc, name)
        raise DescriptorException(f"Unable to find a kustomization in {base}")


@dataclass
class _Walk:
    """State threaded through one resolution."""

    reference_root: str
    """Reference of the repo root, every repo path is appended to it."""

    root_dir: str
    """Directory of the root kustomization within the repo."""

    filename: str
    """Preferred descriptor filename."""

    template: Artifact
    """Carries the type and account used for every fetch, never modified."""

    results: dict[str, frozenset[str]] = field(default_factory=dict)
    """Files already resolved for a directory, keyed by its relative path."""


class DependencyResolver:
    """Computes the set of files needed to build a kustomization.

    Every path in the result is relative to the directory of the root
    kustomization. The root descriptor itself is not part of the result, the
    descriptors of every other kustomization are.
    """

    def __init__(
        self,
        fetcher: ArtifactFetcher,
        max_depth: int = KustomizeConfig.max_depth,
    ) -> None:
        """Initialize DependencyResolver."""
        self._reader = KustomizationFileReader(fetcher)
        self._max_depth = max_depth

    async def resolve(self, artifact: Artifact) -> frozenset[str]:
        """Return the files the kustomization in `artifact` depends on."""
        walk = _walk_for(artifact)
        files = await self._resolve_dir(walk, ".", ())
        return files - {walk.filename}

    async def _resolve_dir(
        self, walk: _Walk, base: str, ancestors: tuple[str, ...]
    ) -> frozenset[str]:
        repo_dir = _repo_path(walk.root_dir, base)
        if repo_dir in ancestors:
            raise DescriptorException(
                f"Kustomization cycle detected: {' -> '.join((*ancestors, repo_dir))}"
            )
        if len(ancestors) >= self._max_depth:
            raise DescriptorException(
                f"Kustomization nesting exceeds maximum depth {self._max_depth} at {base}"
            )
        if (cached := walk.results.get(repo_dir)) is not None:
            return cached

        directory = walk.template.with_reference(
            walk.reference_root + repo_dir, name=repo_dir
        )
        kustomization = await self._reader.read(directory, walk.filename)
        _LOGGER.debug("Resolving kustomization %s/%s", base, kustomization.filename)

        files = kustomization.files_to_download(base)
        for entry in kustomization.files_to_evaluate:
            path = posixpath.normpath(posixpath.join(base, entry))
            if looks_like_directory(entry):
                files |= await self._resolve_dir(walk, path, (*ancestors, repo_dir))
            else:
                files.add(path)

        result = frozenset(files)
        walk.results[repo_dir] = result
        return result


def _repo_path(root_dir: str, relative: str) -> str:
    """Path within the repo of a path relative to the root kustomization."""
    path = posixpath.normpath(posixpath.join(root_dir, relative))
    return "" if path == "." else path


def _walk_for(artifact: Artifact) -> _Walk:
    if not artifact.reference:
        raise InvalidRequestException("Input artifact has an empty 'reference' field.")
    name = (artifact.name or posixpath.basename(artifact.reference)).lstrip("/")
    filename = posixpath.basename(name)
    if "kustomization" not in filename.lower():
        raise InvalidRequestException(
            "The inputArtifact should be a valid kustomization file."
        )
    if not artifact.reference.endswith(name):
        raise InvalidRequestException(
            f"The reference of the inputArtifact must end with its name '{name}'"
        )
    return _Walk(
        reference_root=artifact.reference[: -len(name)],
        root_dir=posixpath.dirname(name),
        filename=filename,
        template=artifact,
    )


class KustomizeTemplateBuilder(TemplateBuilder[KustomizeBakeRequest]):
    """Builds `kustomize build` recipes."""

    label = "kustomize"

    def __init__(self, fetcher: ArtifactFetcher, config: KustomizeConfig) -> None:
        """Initialize KustomizeTemplateBuilder."""
        super().__init__(fetcher)
        self._config = config
        self._resolver = DependencyResolver(fetcher, config.max_depth)

    def executable(self, request: KustomizeBakeRequest) -> str:
        """Return the kustomize binary for the version requested."""
        if request.template_renderer == TemplateRenderer.KUSTOMIZE4:
            return self._config.v4_executable_path
        return self._config.executable_path

    async def build_bake_recipe(
        self, env: StagingEnvironment, request: KustomizeBakeRequest
    ) -> BakeRecipe:
        """Stage the kustomization tree and return the `kustomize build` command."""
        if (artifact := request.root_artifact) is None:
            raise InvalidRequestException(
                "Exactly one input artifact must be provided to bake."
            )
        if artifact.type == GIT_REPO:
            path = await self.stage_template(env, artifact, request.kustomize_file_path)
        else:
            path = await self._stage_tree(env, artifact)
        _LOGGER.info("Path to kustomization: %s", path)
        return BakeRecipe(
            name=request.output_name,
            command=(self.executable(request), "build", str(path)),
        )

    async def _stage_tree(self, env: StagingEnvironment, artifact: Artifact) -> Path:
        walk = _walk_for(artifact)
        files = await self._resolver.resolve(artifact)
        # Check every destination before downloading anything
        repo_paths = sorted(
            _repo_path(walk.root_dir, relative) for relative in files | {walk.filename}
        )
        for repo_path in repo_paths:
            env.resolve_path(repo_path)
        await self._stage_files(env, walk, repo_paths)
        return env.resolve_path(walk.root_dir)

    async def _stage_files(
        self, env: StagingEnvironment, walk: _Walk, repo_paths: Iterable[str]
    ) -> None:
        for repo_path in repo_paths:
            file_artifact = walk.template.with_reference(
                walk.reference_root + repo_path, name=repo_path
            )
            try:
                await self.fetcher.fetch_to_file(file_artifact, env, repo_path)
            except FetchException as err:
                raise FetchException(
                    f"Failed to fetch kustomize files: {err}"
                ) from err
