from __future__ import annotations

import os
import pathlib
import struct

import pytest

from layer_bundler.elf import ET_DYN, ET_EXEC, ElfInspector, parse_elf_header, parse_readelf_output
from layer_bundler.errors import InvalidFormatError, NotFoundError
from layer_bundler.target import EM_AARCH64, EM_X86_64

P = pathlib.Path

READELF_PDFINFO = """
Elf file type is DYN (Position-Independent Executable file)
Entry point 0x3a40
There are 13 program headers, starting at offset 64

Program Headers:
  Type           Offset   VirtAddr           PhysAddr           FileSiz  MemSiz   Flg Align
  PHDR           0x000040 0x0000000000000040 0x0000000000000040 0x0002d8 0x0002d8 R   0x8
  INTERP         0x000318 0x0000000000000318 0x0000000000000318 0x00001c 0x00001c R   0x1
      [Requesting program interpreter: /lib64/ld-linux-x86-64.so.2]
  LOAD           0x000000 0x0000000000000000 0x0000000000000000 0x002a58 0x002a58 R   0x1000
  DYNAMIC        0x00ad98 0x000000000000bd98 0x000000000000bd98 0x000230 0x000230 RW  0x8

Dynamic section at offset 0xad98 contains 31 entries:
  Tag        Type                         Name/Value
 0x0000000000000001 (NEEDED)             Shared library: [libpoppler.so.126]
 0x0000000000000001 (NEEDED)             Shared library: [libstdc++.so.6]
 0x0000000000000001 (NEEDED)             Shared library: [libc.so.6]
 0x000000000000001d (RUNPATH)            Library runpath: [$ORIGIN/../lib:/opt/poppler/lib]
 0x000000000000000c (INIT)               0x3000
 0x000000006ffffffb (FLAGS_1)            Flags: NOW PIE
 0x0000000000000000 (NULL)               0x0
"""

READELF_LIBRARY = """
Dynamic section at offset 0x2de0 contains 27 entries:
  Tag        Type                         Name/Value
 0x0000000000000001 (NEEDED)             Shared library: [libfreetype.so.6]
 0x000000000000000e (SONAME)             Library soname: [libpoppler.so.126]
 0x000000000000000f (RPATH)              Library rpath: [/usr/lib64/poppler]
"""


def _elf_bytes(*, elf_class: int = 2, byte_order: int = 1, file_type: int = ET_DYN, machine: int = EM_X86_64) -> bytes:
    ident: bytes = b"\x7fELF" + bytes([elf_class, byte_order, 1, 0]) + b"\x00" * 8
    fmt: str = "<HH" if byte_order == 1 else ">HH"
    return ident + struct.pack(fmt, file_type, machine) + b"\x00" * 44


def test_parse_elf_header_little_endian() -> None:
    header = parse_elf_header(P("/x"), _elf_bytes(file_type=ET_EXEC, machine=EM_AARCH64))

    assert header.elf_class == 2
    assert header.file_type == ET_EXEC
    assert header.machine == EM_AARCH64


def test_parse_elf_header_big_endian() -> None:
    header = parse_elf_header(P("/x"), _elf_bytes(byte_order=2, machine=EM_X86_64))

    assert header.byte_order == 2
    assert header.machine == EM_X86_64


@pytest.mark.parametrize(
    ("data", "reason"),
    [
        (b"#!/bin/sh\necho hi\n", "missing ELF magic"),
        (b"\x7fELF\x02\x01", "truncated"),
        (_elf_bytes(elf_class=7), "unknown ELF class"),
        (_elf_bytes(byte_order=9), "unknown ELF byte order"),
        (_elf_bytes(file_type=1), "neither an executable nor a shared object"),
    ],
)
def test_parse_elf_header_rejects(data: bytes, reason: str) -> None:
    with pytest.raises(InvalidFormatError) as excinfo:
        parse_elf_header(P("/x"), data)

    assert reason in str(excinfo.value)


def test_parse_readelf_output_executable() -> None:
    info = parse_readelf_output(READELF_PDFINFO)

    assert info.needed == ("libpoppler.so.126", "libstdc++.so.6", "libc.so.6")
    assert info.runpath == ("$ORIGIN/../lib", "/opt/poppler/lib")
    assert info.rpath == ()
    assert info.soname is None
    assert info.interpreter == "/lib64/ld-linux-x86-64.so.2"


def test_parse_readelf_output_library() -> None:
    info = parse_readelf_output(READELF_LIBRARY)

    assert info.needed == ("libfreetype.so.6",)
    assert info.soname == "libpoppler.so.126"
    assert info.rpath == ("/usr/lib64/poppler",)
    assert info.interpreter is None


def test_parse_readelf_output_static_binary() -> None:
    info = parse_readelf_output("\nThere is no dynamic section in this file.\n")

    assert info.needed == ()
    assert info.interpreter is None


def test_inspector_canonicalize_follows_symlinks(tmp_path: pathlib.Path) -> None:
    real = tmp_path / "libz.so.1.3"
    real.write_bytes(_elf_bytes())
    link = tmp_path / "libz.so.1"
    os.symlink(real.name, link)

    inspector = ElfInspector()

    assert inspector.canonicalize(link) == real.resolve()
    assert inspector.canonicalize(tmp_path / "absent.so") is None
    assert inspector.canonicalize(tmp_path) is None


def test_inspector_rejects_non_elf_before_running_readelf(tmp_path: pathlib.Path) -> None:
    script = tmp_path / "tool.sh"
    script.write_text("#!/bin/sh\n", encoding="utf-8")

    with pytest.raises(InvalidFormatError):
        ElfInspector(readelf="/nonexistent/readelf").inspect(script)


def test_inspector_missing_file(tmp_path: pathlib.Path) -> None:
    with pytest.raises(NotFoundError):
        ElfInspector(readelf="/nonexistent/readelf").inspect(tmp_path / "gone")


def test_inspector_classifies_and_caches(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    binary = tmp_path / "pdfinfo"
    binary.write_bytes(_elf_bytes(file_type=ET_DYN))
    calls: list[pathlib.Path] = []

    def fake_run_readelf(self: ElfInspector, path: pathlib.Path) -> str:
        calls.append(path)
        return READELF_PDFINFO

    monkeypatch.setattr(ElfInspector, "_run_readelf", fake_run_readelf)
    inspector = ElfInspector()

    first = inspector.inspect(binary)
    second = inspector.inspect(binary)

    assert first is second
    assert calls == [binary]
    assert first.is_executable is True
    assert first.machine == EM_X86_64
    assert first.needed[0] == "libpoppler.so.126"
