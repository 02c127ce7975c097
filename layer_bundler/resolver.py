"""Dependency closure resolution.

Starting from an entry binary, walk ``DT_NEEDED`` (and the program
interpreter) breadth-first, locating each library with the loader's search
rules. The visited set is keyed by canonical path, so symlinked aliases of
one file are visited once and dependency cycles terminate.

The entry binary itself is part of its closure; the assembler treats
everything in a closure as something to copy.
"""

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import fnmatch
import logging
import os
import pathlib
import posixpath
from typing import Iterable, Iterator

from layer_bundler.elf import BinaryInfo, BinaryInspector
from layer_bundler.errors import InvalidFormatError, MissingDependencyError, NotFoundError
from layer_bundler.search import LibrarySearch

EXECUTABLE: str = "executable"
LIBRARY: str = "library"


@dataclass(frozen=True, slots=True)
class ArtifactPath:
    """A binary or shared library to bundle.

    Identity is the canonical path alone.

    :ivar path: Canonical (symlink-free) absolute path.
    :ivar name: File name the artifact is given in the layer.
    :ivar kind: ``executable`` or ``library``.
    """

    path: pathlib.Path
    name: str = field(compare=False)
    kind: str = field(compare=False)


@dataclass(slots=True)
class DependencyClosure:
    """A de-duplicated set of artifacts keyed by canonical path.

    :ivar entry_points: Canonical paths of the entry binaries, in input order.
    :ivar artifacts: Artifacts keyed by canonical path, in discovery order.
    :ivar requested_by: For each non-entry artifact, the first binary that needed it.
    """

    entry_points: tuple[pathlib.Path, ...] = ()
    artifacts: dict[pathlib.Path, ArtifactPath] = field(default_factory=dict)
    requested_by: dict[pathlib.Path, pathlib.Path] = field(default_factory=dict)

    def __contains__(self, path: object) -> bool:
        return path in self.artifacts

    def __iter__(self) -> Iterator[ArtifactPath]:
        return iter(self.artifacts.values())

    def __len__(self) -> int:
        return len(self.artifacts)

    def paths(self) -> frozenset[pathlib.Path]:
        """Canonical paths of all artifacts."""

        return frozenset(self.artifacts)

    def add(self, artifact: ArtifactPath, *, requester: pathlib.Path | None = None) -> bool:
        """Add an artifact unless one with the same canonical path exists.

        When the same file is already present as a library and is added as an
        executable, it is promoted to an executable.

        :param artifact: Artifact to add.
        :param requester: Binary that needed it, if any.
        :returns: ``True`` if the artifact was new.
        """

        existing: ArtifactPath | None = self.artifacts.get(artifact.path)
        if existing is None:
            self.artifacts[artifact.path] = artifact
            if requester is not None:
                self.requested_by[artifact.path] = requester
            return True

        if existing.kind == LIBRARY and artifact.kind == EXECUTABLE:
            self.artifacts[artifact.path] = artifact
            self.requested_by.pop(artifact.path, None)
        return False


class Resolver:
    """Compute dependency closures for entry binaries.

    :param search: Library search rules for the build environment.
    :param provided: ``fnmatch`` patterns of library names the deployment
        runtime already provides; these are neither bundled nor descended into.
    """

    def __init__(
        self,
        *,
        search: LibrarySearch,
        provided: Iterable[str] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        self.search: LibrarySearch = search
        self.inspector: BinaryInspector = search.inspector
        self.provided: tuple[str, ...] = tuple(provided)
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("layer_bundler")

    def is_provided(self, name: str) -> bool:
        """Check whether the runtime provides a library.

        :param name: ``DT_NEEDED`` entry or interpreter path.
        :returns: ``True`` if any provided pattern matches its base name.
        """

        base: str = posixpath.basename(name)
        for pattern in self.provided:
            if fnmatch.fnmatchcase(base, pattern) is True:
                return True
        return False

    def resolve(self, entry_path: pathlib.Path) -> DependencyClosure:
        """Resolve the closure of one entry binary.

        :param entry_path: Path to an executable or shared library.
        :returns: Closure including the entry binary itself.
        :raises NotFoundError: If the entry does not exist.
        :raises InvalidFormatError: If the entry is not a binary for the target.
        :raises MissingDependencyError: If a needed library cannot be located.
        """

        entry_abs: pathlib.Path = pathlib.Path(os.path.abspath(entry_path))
        canonical: pathlib.Path | None = self.inspector.canonicalize(entry_abs)
        if canonical is None:
            raise NotFoundError(entry_abs)

        entry_info: BinaryInfo = self.inspector.inspect(canonical)
        self._check_target(entry_info)

        closure: DependencyClosure = DependencyClosure(entry_points=(canonical,))
        closure.add(
            ArtifactPath(
                path=canonical,
                name=entry_abs.name,
                kind=EXECUTABLE if entry_info.is_executable is True else LIBRARY,
            )
        )
        executable: BinaryInfo | None = entry_info if entry_info.is_executable is True else None

        queue: deque[BinaryInfo] = deque([entry_info])
        while len(queue) > 0:
            current: BinaryInfo = queue.popleft()
            requests: list[str] = list(current.needed)
            if current.interpreter is not None:
                requests.append(current.interpreter)

            for name in requests:
                if self.is_provided(name) is True:
                    continue

                found: pathlib.Path | None = self.search.find(name, requester=current, executable=executable)
                if found is None:
                    raise MissingDependencyError(name, current.path)
                if found in closure:
                    _warn_alias(self._logger, closure.artifacts[found], posixpath.basename(name), current.path)
                    continue

                dep_info: BinaryInfo = self.inspector.inspect(found)
                closure.add(
                    ArtifactPath(path=found, name=posixpath.basename(name), kind=LIBRARY),
                    requester=current.path,
                )
                queue.append(dep_info)

        self._logger.info(f"layer-bundler: resolved {entry_abs} ({len(closure)} artifacts)")
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            for artifact in closure:
                self._logger.debug(f"layer-bundler:   {artifact.kind} {artifact.name} <- {artifact.path}")
        return closure

    def resolve_all(self, entry_paths: list[pathlib.Path], *, jobs: int = 1) -> list[DependencyClosure]:
        """Resolve several entry binaries, optionally in parallel.

        :param entry_paths: Entry binaries.
        :param jobs: Maximum number of concurrent resolutions.
        :returns: Closures in the same order as ``entry_paths``.
        :raises BuildError: The first failure, in input order.
        """

        if jobs <= 1 or len(entry_paths) <= 1:
            return [self.resolve(p) for p in entry_paths]

        with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="resolve") as pool:
            return list(pool.map(self.resolve, entry_paths))

    def _check_target(self, info: BinaryInfo) -> None:
        target = self.search.target
        if info.machine != target.machine or info.elf_class != target.elf_class:
            raise InvalidFormatError(
                info.path,
                f"built for ELF machine {info.machine} class {info.elf_class}, "
                f"target {target.arch} needs machine {target.machine} class {target.elf_class}",
            )


def _warn_alias(logger: logging.Logger, staged: ArtifactPath, name: str, requester: pathlib.Path | None) -> None:
    """Warn when a library is requested under a name it will not be staged as.

    Only one name per canonical file goes into the layer, so the loader will
    not find the file under any other ``DT_NEEDED`` name.
    """

    if staged.kind == LIBRARY and staged.name == name:
        return
    needed_by: str = f" by {requester}" if requester is not None else ""
    logger.warning(
        f"layer-bundler: {staged.path} is needed as library {name!r}{needed_by} but is staged only as "
        f"{staged.kind} {staged.name!r}; the loader will not find it as {name!r}"
    )


def union_closures(
    closures: Iterable[DependencyClosure],
    *,
    logger: logging.Logger | None = None,
) -> DependencyClosure:
    """Union closures by canonical path.

    An artifact needed by several entry points appears once, under the name
    it was first needed by. An artifact that is an entry point anywhere is
    kept as an executable.

    :param closures: Closures to merge.
    :param logger: Optional logger for name-mismatch warnings.
    :returns: Merged closure.
    """

    if logger is None:
        logger = logging.getLogger("layer_bundler")

    merged: DependencyClosure = DependencyClosure()
    entry_points: list[pathlib.Path] = []
    for closure in closures:
        for p in closure.entry_points:
            if p not in entry_points:
                entry_points.append(p)
        for artifact in closure:
            staged: ArtifactPath | None = merged.artifacts.get(artifact.path)
            if staged is not None and artifact.kind == LIBRARY:
                _warn_alias(logger, staged, artifact.name, closure.requested_by.get(artifact.path))
            elif staged is not None and staged.kind == LIBRARY and artifact.kind == EXECUTABLE:
                # Promotion drops the library name.
                _warn_alias(logger, artifact, staged.name, merged.requested_by.get(artifact.path))
            merged.add(artifact, requester=closure.requested_by.get(artifact.path))
    merged.entry_points = tuple(entry_points)
    return merged
