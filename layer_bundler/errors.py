"""Build errors.

Every failure during a layer build is fatal to that build. Each error carries
the artifact or path it is about so the message alone is enough to act on.
"""

import pathlib


class BuildError(RuntimeError):
    """Raised when building a layer fails."""


class ConfigError(BuildError):
    """Raised when the layer configuration is invalid."""


class NotFoundError(BuildError):
    """Raised when an entry point does not exist.

    :ivar path: The missing path.
    """

    def __init__(self, path: pathlib.Path) -> None:
        self.path: pathlib.Path = path
        super().__init__(f"No such file: {path}")


class InvalidFormatError(BuildError):
    """Raised when a file is not a binary the platform loader accepts.

    :ivar path: The offending file.
    :ivar reason: Short description of what is wrong with it.
    """

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"Not a loadable binary: {path} ({reason})")


class MissingDependencyError(BuildError):
    """Raised when a shared library cannot be found by the search rules.

    :ivar library: The requested library name (as written in ``DT_NEEDED``).
    :ivar requester: Canonical path of the binary that requested it.
    """

    def __init__(self, library: str, requester: pathlib.Path) -> None:
        self.library: str = library
        self.requester: pathlib.Path = requester
        super().__init__(f"Cannot locate {library!r} (needed by {requester})")


class CollisionError(BuildError):
    """Raised when distinct artifacts map to the same destination.

    :ivar destination: Destination path relative to the layer root.
    :ivar sources: The colliding canonical source paths.
    """

    def __init__(self, destination: str, sources: list[pathlib.Path]) -> None:
        self.destination: str = destination
        self.sources: list[pathlib.Path] = sources
        joined: str = ", ".join(str(s) for s in sources)
        super().__init__(f"Destination {destination!r} would be written by multiple files: {joined}")


class CopyError(BuildError):
    """Raised when staging a file into the layer tree fails.

    :ivar source: Source path.
    :ivar destination: Destination path.
    """

    def __init__(self, source: pathlib.Path, destination: pathlib.Path, detail: str) -> None:
        self.source: pathlib.Path = source
        self.destination: pathlib.Path = destination
        super().__init__(f"Failed to copy {source} -> {destination}: {detail}")


class ArchiveError(BuildError):
    """Raised when the final archive cannot be written.

    :ivar path: Archive output path.
    """

    def __init__(self, path: pathlib.Path, detail: str) -> None:
        self.path: pathlib.Path = path
        super().__init__(f"Failed to write archive {path}: {detail}")
