"""Artifact Patcher — rewrite ELF linkage metadata to resolve from image paths.

Upstream binaries are linked against a conventional system layout.  Inside
the image the program interpreter and shared libraries live elsewhere, so
``PT_INTERP`` and ``DT_RUNPATH``/``DT_RPATH`` are rewritten in place.

In-place means the replacement string must fit in the existing slot; the
remainder of the slot is NUL-padded.  Nothing is inserted or moved, so
offsets and the rest of the file stay byte-identical.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

from matrixforge.core.errors import UnrecognizedFormat

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# ELF64 constants
# ---------------------------------------------------------------------------

ELF_MAGIC = b"\x7fELF"
ELFCLASS64 = 2
ELFDATA2LSB = 1

PT_LOAD = 1
PT_DYNAMIC = 2
PT_INTERP = 3

DT_NULL = 0
DT_STRTAB = 5
DT_RPATH = 15
DT_RUNPATH = 29

_EHDR = struct.Struct("<HHIQQQIHHHHHH")  # follows the 16-byte e_ident
_PHDR = struct.Struct("<IIQQQQQQ")
_DYN = struct.Struct("<qQ")
_IDENT_SIZE = 16
_EHDR_SIZE = _IDENT_SIZE + _EHDR.size


@dataclass(frozen=True)
class ProgramHeader:
    p_type: int
    offset: int
    vaddr: int
    filesz: int


@dataclass(frozen=True)
class LinkageInfo:
    """Linkage metadata read from a binary (``None`` when absent)."""

    interpreter: str | None
    runpath: str | None
    rpath: str | None
    dynamic: bool


class ElfPatcher:
    """Rewrites the interpreter and library search path of ELF64 LE binaries.

    Parameters
    ----------
    interpreter:
        New ``PT_INTERP`` value, or ``None`` to leave it untouched.  Binaries
        without a ``PT_INTERP`` segment (shared libraries) keep none.
    runpath:
        New library search path written into ``DT_RUNPATH`` (or ``DT_RPATH``
        when only that tag is present), or ``None`` to leave it untouched.
    """

    def __init__(self, interpreter: str | None = None, runpath: str | None = None) -> None:
        self.interpreter = interpreter
        self.runpath = runpath

    def patch(self, binary: bytes) -> bytes:
        """Return *binary* with its linkage metadata rewritten.

        Idempotent: ``patch(patch(x)) == patch(x)``.  A binary without a
        dynamic segment is returned unchanged.
        """
        headers = _program_headers(binary)
        dynamic = [h for h in headers if h.p_type == PT_DYNAMIC]
        if not dynamic:
            logger.debug("No dynamic segment; leaving binary unchanged")
            return binary

        buf = bytearray(binary)

        if self.interpreter is not None:
            for header in headers:
                if header.p_type == PT_INTERP:
                    _write_slot(
                        buf, header.offset, header.filesz, self.interpreter, "interpreter"
                    )

        if self.runpath is not None:
            offset, capacity = _search_path_slot(binary, headers, dynamic[0])
            # The slot excludes the terminator; keep at least one NUL after the string.
            _write_slot(buf, offset, capacity + 1, self.runpath, "library search path")

        return bytes(buf)

    @staticmethod
    def inspect(binary: bytes) -> LinkageInfo:
        """Read the current interpreter and search path without modifying anything."""
        headers = _program_headers(binary)
        interpreter = None
        for header in headers:
            if header.p_type == PT_INTERP:
                raw = binary[header.offset : header.offset + header.filesz]
                interpreter = raw.split(b"\x00", 1)[0].decode("utf-8", "replace")
        dynamic = [h for h in headers if h.p_type == PT_DYNAMIC]
        if not dynamic:
            return LinkageInfo(interpreter=interpreter, runpath=None, rpath=None, dynamic=False)
        tags = _dynamic_entries(binary, dynamic[0])
        strtab = _strtab_offset(binary, headers, tags)
        runpath = rpath = None
        if DT_RUNPATH in tags and strtab is not None:
            runpath = _read_cstring(binary, strtab + tags[DT_RUNPATH])
        if DT_RPATH in tags and strtab is not None:
            rpath = _read_cstring(binary, strtab + tags[DT_RPATH])
        return LinkageInfo(interpreter=interpreter, runpath=runpath, rpath=rpath, dynamic=True)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _program_headers(binary: bytes) -> list[ProgramHeader]:
    if len(binary) < _EHDR_SIZE or binary[:4] != ELF_MAGIC:
        raise UnrecognizedFormat("Not an ELF binary")
    if binary[4] != ELFCLASS64:
        raise UnrecognizedFormat("Only 64-bit ELF binaries are supported")
    if binary[5] != ELFDATA2LSB:
        raise UnrecognizedFormat("Only little-endian ELF binaries are supported")

    fields = _EHDR.unpack_from(binary, _IDENT_SIZE)
    phoff, phentsize, phnum = fields[4], fields[8], fields[9]
    if phnum and phentsize < _PHDR.size:
        raise UnrecognizedFormat(f"Program header entry size {phentsize} is too small")
    if phoff + phnum * phentsize > len(binary):
        raise UnrecognizedFormat("Truncated program header table")

    headers = []
    for i in range(phnum):
        p_type, _flags, offset, vaddr, _paddr, filesz, _memsz, _align = _PHDR.unpack_from(
            binary, phoff + i * phentsize
        )
        if p_type in (PT_INTERP, PT_DYNAMIC) and offset + filesz > len(binary):
            raise UnrecognizedFormat(f"Segment type {p_type} extends past end of file")
        headers.append(ProgramHeader(p_type=p_type, offset=offset, vaddr=vaddr, filesz=filesz))
    return headers


def _dynamic_entries(binary: bytes, dynamic: ProgramHeader) -> dict[int, int]:
    tags: dict[int, int] = {}
    end = dynamic.offset + dynamic.filesz
    pos = dynamic.offset
    while pos + _DYN.size <= end:
        tag, value = _DYN.unpack_from(binary, pos)
        if tag == DT_NULL:
            break
        tags.setdefault(tag, value)
        pos += _DYN.size
    return tags


def _vaddr_to_offset(headers: list[ProgramHeader], vaddr: int) -> int | None:
    for header in headers:
        if header.p_type == PT_LOAD and header.vaddr <= vaddr < header.vaddr + header.filesz:
            return header.offset + (vaddr - header.vaddr)
    return None


def _strtab_offset(
    binary: bytes, headers: list[ProgramHeader], tags: dict[int, int]
) -> int | None:
    if DT_STRTAB not in tags:
        return None
    return _vaddr_to_offset(headers, tags[DT_STRTAB])


def _read_cstring(binary: bytes, offset: int) -> str:
    end = binary.find(b"\x00", offset)
    if end < 0:
        raise UnrecognizedFormat(f"Unterminated string at offset {offset}")
    return binary[offset:end].decode("utf-8", "replace")


def _search_path_slot(
    binary: bytes, headers: list[ProgramHeader], dynamic: ProgramHeader
) -> tuple[int, int]:
    """Return (file offset, current string length) of the search-path string."""
    tags = _dynamic_entries(binary, dynamic)
    tag = DT_RUNPATH if DT_RUNPATH in tags else DT_RPATH if DT_RPATH in tags else None
    if tag is None:
        raise UnrecognizedFormat("Binary has no DT_RUNPATH or DT_RPATH slot to rewrite")
    strtab = _strtab_offset(binary, headers, tags)
    if strtab is None:
        raise UnrecognizedFormat("Dynamic string table is not mapped by any PT_LOAD segment")
    offset = strtab + tags[tag]
    if offset >= len(binary):
        raise UnrecognizedFormat("Search path string lies past end of file")
    return offset, len(_read_cstring(binary, offset).encode("utf-8"))


def _write_slot(buf: bytearray, offset: int, size: int, value: str, what: str) -> None:
    encoded = value.encode("utf-8") + b"\x00"
    if len(encoded) > size:
        raise UnrecognizedFormat(
            f"New {what} {value!r} needs {len(encoded)} bytes; slot holds {size}"
        )
    buf[offset : offset + size] = encoded.ljust(size, b"\x00")
