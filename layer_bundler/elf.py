"""ELF inspection.

The resolver only needs a handful of facts about each binary: its class and
machine (to reject binaries for another architecture), whether it is an
executable, and the contents of its dynamic section. The ELF header is read
directly; the dynamic section and the program interpreter are read through
binutils' ``readelf``, which is present in every build image we target.
"""

from dataclasses import dataclass, field
import logging
import os
import pathlib
import re
import struct
import subprocess
import threading
from typing import Protocol

from layer_bundler.errors import BuildError, InvalidFormatError, NotFoundError

ELF_MAGIC: bytes = b"\x7fELF"

ET_EXEC: int = 2
ET_DYN: int = 3

_ELFDATA_FORMATS: dict[int, str] = {1: "<", 2: ">"}
_HEADER_SIZE: int = 20

_DYNAMIC_RE: re.Pattern[str] = re.compile(r"\((?P<tag>[A-Z_]+)\)\s+.*?\[(?P<value>.*)\]\s*$")
_INTERP_RE: re.Pattern[str] = re.compile(r"\[Requesting program interpreter: (?P<path>[^\]]+)\]")


@dataclass(frozen=True, slots=True)
class ElfHeader:
    """The subset of the ELF file header we care about.

    :ivar elf_class: ``EI_CLASS`` (1 for 32-bit, 2 for 64-bit).
    :ivar byte_order: ``EI_DATA`` (1 for little endian, 2 for big endian).
    :ivar file_type: ``e_type``.
    :ivar machine: ``e_machine``.
    """

    elf_class: int
    byte_order: int
    file_type: int
    machine: int


@dataclass(frozen=True, slots=True)
class DynamicInfo:
    """Parsed dynamic section and interpreter.

    :ivar soname: ``DT_SONAME`` if present.
    :ivar needed: ``DT_NEEDED`` entries, in file order.
    :ivar rpath: ``DT_RPATH`` directories.
    :ivar runpath: ``DT_RUNPATH`` directories.
    :ivar interpreter: ``PT_INTERP`` path if present.
    """

    soname: str | None = None
    needed: tuple[str, ...] = ()
    rpath: tuple[str, ...] = ()
    runpath: tuple[str, ...] = ()
    interpreter: str | None = None


@dataclass(frozen=True, slots=True)
class BinaryInfo:
    """Everything the resolver needs to know about one binary.

    :ivar path: Canonical path of the binary.
    :ivar elf_class: ELF class.
    :ivar machine: ELF machine.
    :ivar is_executable: Whether the file is a program rather than a library.
    :ivar dynamic: Dynamic section contents.
    """

    path: pathlib.Path
    elf_class: int
    machine: int
    is_executable: bool
    dynamic: DynamicInfo = field(default_factory=DynamicInfo)

    @property
    def soname(self) -> str | None:
        return self.dynamic.soname

    @property
    def needed(self) -> tuple[str, ...]:
        return self.dynamic.needed

    @property
    def interpreter(self) -> str | None:
        return self.dynamic.interpreter


class BinaryInspector(Protocol):
    """Filesystem and binary-format queries used by the resolver."""

    def canonicalize(self, path: pathlib.Path) -> pathlib.Path | None:
        """Resolve ``path`` to a symlink-free path, or ``None`` if it is not a file."""
        ...

    def inspect(self, path: pathlib.Path) -> BinaryInfo:
        """Inspect a canonical path.

        :raises NotFoundError: If the file does not exist.
        :raises InvalidFormatError: If it is not a loadable binary.
        """
        ...


def parse_elf_header(path: pathlib.Path, data: bytes) -> ElfHeader:
    """Parse the start of an ELF file.

    :param path: File the bytes came from (for error messages).
    :param data: At least the first 20 bytes of the file.
    :returns: Parsed header.
    :raises InvalidFormatError: If the bytes are not a loadable ELF header.
    """

    if len(data) < len(ELF_MAGIC) or data[0:4] != ELF_MAGIC:
        raise InvalidFormatError(path, "missing ELF magic")
    if len(data) < _HEADER_SIZE:
        raise InvalidFormatError(path, "truncated ELF header")

    elf_class: int = data[4]
    byte_order: int = data[5]
    if elf_class not in (1, 2):
        raise InvalidFormatError(path, f"unknown ELF class {elf_class}")
    fmt_prefix: str | None = _ELFDATA_FORMATS.get(byte_order)
    if fmt_prefix is None:
        raise InvalidFormatError(path, f"unknown ELF byte order {byte_order}")

    file_type, machine = struct.unpack(f"{fmt_prefix}HH", data[16:20])
    if file_type not in (ET_EXEC, ET_DYN):
        raise InvalidFormatError(path, f"ELF type {file_type} is neither an executable nor a shared object")

    return ElfHeader(elf_class=elf_class, byte_order=byte_order, file_type=file_type, machine=machine)


def parse_readelf_output(text: str) -> DynamicInfo:
    """Parse ``readelf --wide --program-headers --dynamic`` output.

    :param text: readelf stdout.
    :returns: Parsed dynamic info. Static binaries yield an empty result.
    """

    soname: str | None = None
    needed: list[str] = []
    rpath: list[str] = []
    runpath: list[str] = []
    interpreter: str | None = None

    for line in text.splitlines():
        m_interp = _INTERP_RE.search(line)
        if m_interp is not None:
            interpreter = m_interp.group("path").strip()
            continue

        m = _DYNAMIC_RE.search(line)
        if m is None:
            continue
        tag: str = m.group("tag")
        value: str = m.group("value")
        if tag == "NEEDED":
            needed.append(value)
        elif tag == "SONAME":
            soname = value
        elif tag == "RPATH":
            rpath.extend(_split_search_list(value))
        elif tag == "RUNPATH":
            runpath.extend(_split_search_list(value))

    return DynamicInfo(
        soname=soname,
        needed=tuple(needed),
        rpath=tuple(rpath),
        runpath=tuple(runpath),
        interpreter=interpreter,
    )


def _split_search_list(value: str) -> list[str]:
    """Split a colon-separated search list, dropping empty entries.

    :param value: e.g. ``$ORIGIN/../lib:/opt/lib``.
    :returns: Directory entries.
    """

    return [p for p in value.split(":") if len(p) > 0]


class ElfInspector:
    """:class:`BinaryInspector` backed by the real filesystem and ``readelf``.

    Results are cached per canonical path; the instance is safe to share
    between resolver threads.
    """

    def __init__(self, *, readelf: str = "readelf", logger: logging.Logger | None = None) -> None:
        self._readelf: str = readelf
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("layer_bundler")
        self._cache: dict[pathlib.Path, BinaryInfo] = {}
        self._lock: threading.Lock = threading.Lock()

    def canonicalize(self, path: pathlib.Path) -> pathlib.Path | None:
        resolved: pathlib.Path = pathlib.Path(os.path.realpath(path))
        if resolved.is_file() is False:
            return None
        return resolved

    def inspect(self, path: pathlib.Path) -> BinaryInfo:
        with self._lock:
            cached: BinaryInfo | None = self._cache.get(path)
        if cached is not None:
            return cached

        header: ElfHeader = self._read_header(path)
        dynamic: DynamicInfo = parse_readelf_output(self._run_readelf(path))
        is_executable: bool = header.file_type == ET_EXEC or (
            header.file_type == ET_DYN and dynamic.interpreter is not None
        )
        info: BinaryInfo = BinaryInfo(
            path=path,
            elf_class=header.elf_class,
            machine=header.machine,
            is_executable=is_executable,
            dynamic=dynamic,
        )
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(
                f"layer-bundler: inspected {path} (needed={list(dynamic.needed)}, "
                f"interp={dynamic.interpreter}, runpath={list(dynamic.runpath)}, rpath={list(dynamic.rpath)})"
            )

        with self._lock:
            self._cache[path] = info
        return info

    def _read_header(self, path: pathlib.Path) -> ElfHeader:
        """Read and parse the ELF header of ``path``.

        :param path: File to read.
        :returns: Parsed header.
        :raises NotFoundError: If the file does not exist.
        :raises InvalidFormatError: If the file cannot be read as ELF.
        """

        try:
            with open(path, "rb") as f:
                data: bytes = f.read(_HEADER_SIZE)
        except FileNotFoundError as e:
            raise NotFoundError(path) from e
        except IsADirectoryError as e:
            raise InvalidFormatError(path, "is a directory") from e
        except OSError as e:
            raise InvalidFormatError(path, f"unreadable: {e.strerror}") from e
        return parse_elf_header(path, data)

    def _run_readelf(self, path: pathlib.Path) -> str:
        """Run readelf on ``path``.

        :param path: ELF file.
        :returns: readelf stdout.
        :raises BuildError: If readelf is not installed.
        :raises InvalidFormatError: If readelf rejects the file.
        """

        cmd: list[str] = [self._readelf, "--wide", "--program-headers", "--dynamic", str(path)]
        env: dict[str, str] = dict(os.environ)
        env["LC_ALL"] = "C"
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True, env=env)
        except FileNotFoundError as e:
            raise BuildError(f"readelf not found ({self._readelf!r}); install binutils in the build image.") from e

        if proc.returncode != 0:
            detail: str = proc.stderr.strip() or f"exit={proc.returncode}"
            raise InvalidFormatError(path, f"readelf failed: {detail}")
        return proc.stdout
