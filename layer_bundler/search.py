"""Shared library search rules.

Mirrors the order in which the glibc dynamic loader looks for a ``DT_NEEDED``
entry that contains no slash:

1. ``DT_RPATH`` of the requesting object, then of the executable, but only
   when the requesting object has no ``DT_RUNPATH``.
2. ``LD_LIBRARY_PATH``.
3. ``DT_RUNPATH`` of the requesting object.
4. Directories configured in ``/etc/ld.so.conf``.
5. The platform's default directories.

Candidates built for another class or machine are skipped, as the loader does.
"""

import glob
import logging
import os
import pathlib
import re

from layer_bundler.elf import BinaryInfo, BinaryInspector
from layer_bundler.errors import InvalidFormatError, NotFoundError
from layer_bundler.target import TargetConfig

DEFAULT_LD_SO_CONF: pathlib.Path = pathlib.Path("/etc/ld.so.conf")

_TOKEN_RE: re.Pattern[str] = re.compile(r"\$(?:\{(?P<braced>ORIGIN|LIB|PLATFORM)\}|(?P<bare>ORIGIN|LIB|PLATFORM))")
_CONF_SPLIT_RE: re.Pattern[str] = re.compile(r"[\s:,]+")


def split_library_path(value: str | None) -> tuple[str, ...]:
    """Split an ``LD_LIBRARY_PATH``-style value.

    :param value: Colon/semicolon separated directories, or ``None``.
    :returns: Non-empty entries in order.
    """

    if value is None:
        return ()
    return tuple(p for p in re.split(r"[:;]", value) if len(p) > 0)


def read_ld_so_conf(path: pathlib.Path) -> list[str]:
    """Read the directories listed in an ``ld.so.conf`` file.

    ``include`` directives are followed (glob patterns relative to the
    including file's directory), each file at most once. A missing file
    contributes nothing.

    :param path: Path to ``ld.so.conf``.
    :returns: Directories in configuration order, without duplicates.
    """

    dirs: list[str] = []
    seen_files: set[pathlib.Path] = set()
    _read_ld_so_conf_into(path=path, dirs=dirs, seen_files=seen_files)

    unique: list[str] = []
    for d in dirs:
        if d not in unique:
            unique.append(d)
    return unique


def _read_ld_so_conf_into(*, path: pathlib.Path, dirs: list[str], seen_files: set[pathlib.Path]) -> None:
    key: pathlib.Path = pathlib.Path(os.path.abspath(path))
    if key in seen_files:
        return
    seen_files.add(key)

    try:
        text: str = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return

    for raw_line in text.splitlines():
        line: str = raw_line.split("#", 1)[0].strip()
        if len(line) == 0:
            continue

        if line.startswith("include") is True and line[len("include") : len("include") + 1].isspace():
            for pattern in line[len("include") :].split():
                if os.path.isabs(pattern) is False:
                    pattern = str(key.parent / pattern)
                for included in sorted(glob.glob(pattern)):
                    _read_ld_so_conf_into(path=pathlib.Path(included), dirs=dirs, seen_files=seen_files)
            continue

        if line.startswith("hwcap") is True:
            continue

        for entry in _CONF_SPLIT_RE.split(line):
            # Legacy "dir=type" entries.
            entry = entry.split("=", 1)[0]
            if len(entry) > 0:
                dirs.append(entry.rstrip("/") or "/")


class LibrarySearch:
    """Locate shared libraries the way the target's dynamic loader would.

    :param target: Target configuration (default directories, ``$LIB``, ``$PLATFORM``).
    :param inspector: Used to look up and validate candidates.
    :param library_path: ``LD_LIBRARY_PATH`` entries of the build environment.
    :param conf_dirs: Directories from ``ld.so.conf``.
    """

    def __init__(
        self,
        *,
        target: TargetConfig,
        inspector: BinaryInspector,
        library_path: tuple[str, ...] = (),
        conf_dirs: tuple[str, ...] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        self.target: TargetConfig = target
        self.inspector: BinaryInspector = inspector
        self.library_path: tuple[str, ...] = library_path
        self.conf_dirs: tuple[str, ...] = conf_dirs
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("layer_bundler")

    def expand_tokens(self, entry: str, *, origin: pathlib.Path) -> str:
        """Expand ``$ORIGIN``, ``$LIB`` and ``$PLATFORM`` in a search entry.

        :param entry: A single rpath/runpath entry.
        :param origin: Directory containing the object that carries the entry.
        :returns: Expanded entry.
        """

        values: dict[str, str] = {
            "ORIGIN": str(origin),
            "LIB": self.target.lib_token,
            "PLATFORM": self.target.loader_platform,
        }

        def substitute(m: re.Match[str]) -> str:
            token: str = m.group("braced") or m.group("bare")
            return values[token]

        return _TOKEN_RE.sub(substitute, entry)

    def search_dirs(self, *, requester: BinaryInfo, executable: BinaryInfo | None) -> list[str]:
        """Compute the ordered directory list for a requester.

        :param requester: The object whose ``DT_NEEDED`` is being resolved.
        :param executable: The entry executable of this resolution, if any.
        :returns: Directories in search order, without duplicates.
        """

        dirs: list[str] = []
        if len(requester.dynamic.runpath) == 0:
            dirs.extend(self._expand_all(requester.dynamic.rpath, requester))
            if executable is not None and executable.path != requester.path:
                dirs.extend(self._expand_all(executable.dynamic.rpath, executable))
        dirs.extend(self.library_path)
        dirs.extend(self._expand_all(requester.dynamic.runpath, requester))
        dirs.extend(self.conf_dirs)
        dirs.extend(self.target.default_library_dirs())

        unique: list[str] = []
        for d in dirs:
            normalized: str = os.path.normpath(d)
            if normalized not in unique:
                unique.append(normalized)
        return unique

    def find(self, name: str, *, requester: BinaryInfo, executable: BinaryInfo | None) -> pathlib.Path | None:
        """Find the library the loader would load for ``name``.

        :param name: ``DT_NEEDED`` entry (or interpreter path).
        :param requester: Object requesting it.
        :param executable: Entry executable of this resolution, if any.
        :returns: Canonical path of the library, or ``None`` if not found.
        """

        if "/" in name:
            return self._accept(pathlib.Path(name), requester=requester)

        for d in self.search_dirs(requester=requester, executable=executable):
            found: pathlib.Path | None = self._accept(pathlib.Path(d) / name, requester=requester)
            if found is not None:
                return found
        return None

    def _expand_all(self, entries: tuple[str, ...], owner: BinaryInfo) -> list[str]:
        return [self.expand_tokens(e, origin=owner.path.parent) for e in entries]

    def _accept(self, candidate: pathlib.Path, *, requester: BinaryInfo) -> pathlib.Path | None:
        """Return the canonical path of ``candidate`` if the loader would use it.

        :param candidate: Path to check.
        :param requester: Object whose class/machine the candidate must match.
        :returns: Canonical path, or ``None``.
        """

        canonical: pathlib.Path | None = self.inspector.canonicalize(candidate)
        if canonical is None:
            return None

        try:
            info: BinaryInfo = self.inspector.inspect(canonical)
        except (NotFoundError, InvalidFormatError) as e:
            self._logger.debug(f"layer-bundler: skipping {candidate}: {e}")
            return None

        if info.machine != requester.machine or info.elf_class != requester.elf_class:
            self._logger.debug(
                f"layer-bundler: skipping {candidate}: built for machine={info.machine} class={info.elf_class}"
            )
            return None
        return canonical
