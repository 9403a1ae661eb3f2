"""Shared test fixtures for Matrixforge."""

from __future__ import annotations

import logging
import struct
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from matrixforge.core.artifact_store import ContentAddressedStore
from matrixforge.core.blueprint import ImageBlueprint
from matrixforge.core.fetcher import ArtifactFetcher
from matrixforge.core.hasher import sha256_hex
from matrixforge.core.patcher import (
    DT_NULL,
    DT_RPATH,
    DT_RUNPATH,
    DT_STRTAB,
    ELF_MAGIC,
    PT_DYNAMIC,
    PT_INTERP,
    PT_LOAD,
)
from matrixforge.core.report_sink import ReportSink
from matrixforge.models.config import BuildConfig
from matrixforge.models.versioning import VersionDescriptor

# Upstream-style linkage strings: long enough that the image paths fit in place.
UPSTREAM_INTERP = "/nix/store/0000000000000000000000000000000-glibc-2.35/lib/ld-linux-x86-64.so.2"
UPSTREAM_RUNPATH = "/nix/store/0000000000000000000000000000000-fdb-deps/lib:/usr/local/lib64"

RELEASE_FILES = (
    "libfdb_c.x86_64.so",
    "fdbmonitor.x86_64",
    "fdbserver.x86_64",
    "fdbcli.x86_64",
)


@pytest.fixture(autouse=True)
def _reset_matrixforge_logger() -> Iterator[None]:
    """CLI runs install a Rich handler; restore propagation for caplog."""
    yield
    logger = logging.getLogger("matrixforge")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ContentAddressedStore:
    """Provide a fresh ContentAddressedStore in a temp directory."""
    return ContentAddressedStore(tmp_dir / "cache")


@pytest.fixture
def sink(tmp_dir: Path) -> ReportSink:
    """Provide an empty report sink."""
    return ReportSink(tmp_dir / "reports.jsonl")


# ---------------------------------------------------------------------------
# ELF factory
# ---------------------------------------------------------------------------


def build_elf(
    *,
    interpreter: str | None = UPSTREAM_INTERP,
    runpath: str | None = UPSTREAM_RUNPATH,
    rpath: str | None = None,
    dynamic: bool = True,
    payload: bytes = b"",
) -> bytes:
    """Build a minimal ELF64 LE image: PT_LOAD [, PT_INTERP] [, PT_DYNAMIC]."""
    types = [PT_LOAD]
    if interpreter is not None:
        types.append(PT_INTERP)
    if dynamic:
        types.append(PT_DYNAMIC)

    interp = interpreter.encode() + b"\x00" if interpreter is not None else b""
    strtab = b"\x00"
    tags: list[tuple[int, int]] = []
    if runpath is not None:
        tags.append((DT_RUNPATH, len(strtab)))
        strtab += runpath.encode() + b"\x00"
    if rpath is not None:
        tags.append((DT_RPATH, len(strtab)))
        strtab += rpath.encode() + b"\x00"

    interp_off = 64 + 56 * len(types)
    strtab_off = interp_off + len(interp)
    dyn_off = strtab_off + len(strtab)
    dyn = b""
    if dynamic:
        entries = [(DT_STRTAB, strtab_off), *tags, (DT_NULL, 0)]
        dyn = b"".join(struct.pack("<qQ", tag, value) for tag, value in entries)
    total = dyn_off + len(dyn) + len(payload)

    ident = ELF_MAGIC + bytes([2, 1, 1]) + bytes(9)
    ehdr = struct.pack("<HHIQQQIHHHHHH", 2, 62, 1, 0, 64, 0, 0, 64, 56, len(types), 0, 0, 0)
    phdrs = b""
    for p_type in types:
        if p_type == PT_LOAD:
            phdrs += struct.pack("<IIQQQQQQ", PT_LOAD, 5, 0, 0, 0, total, total, 0x1000)
        elif p_type == PT_INTERP:
            phdrs += struct.pack(
                "<IIQQQQQQ", PT_INTERP, 4, interp_off, interp_off, interp_off, len(interp), len(interp), 1
            )
        else:
            phdrs += struct.pack(
                "<IIQQQQQQ", PT_DYNAMIC, 6, dyn_off, dyn_off, dyn_off, len(dyn), len(dyn), 8
            )
    return ident + ehdr + phdrs + interp + strtab + dyn + payload


@pytest.fixture
def make_elf() -> Callable[..., bytes]:
    """Factory fixture: build a minimal patchable ELF64 binary."""
    return build_elf


# ---------------------------------------------------------------------------
# Fake upstream releases
# ---------------------------------------------------------------------------


@pytest.fixture
def release_root(tmp_dir: Path) -> Path:
    root = tmp_dir / "releases"
    root.mkdir()
    return root


def release_binaries(version: str) -> dict[str, bytes]:
    """Per-version fake upstream binaries (distinct bytes per version)."""
    return {
        "libfdb_c.x86_64.so": build_elf(
            interpreter=None, payload=f"libfdb_c {version}".encode()
        ),
        "fdbmonitor.x86_64": build_elf(runpath=None, payload=f"fdbmonitor {version}".encode()),
        "fdbserver.x86_64": build_elf(
            runpath=None, rpath=UPSTREAM_RUNPATH, payload=f"fdbserver {version}".encode()
        ),
        "fdbcli.x86_64": build_elf(payload=f"fdbcli {version}".encode()),
    }


@pytest.fixture
def fake_release(release_root: Path) -> Callable[..., VersionDescriptor]:
    """Factory fixture: publish fake binaries for a version and describe them.

    ``tamper`` names a release file whose published bytes are altered after
    hashing, so fetching it yields ``HashMismatch``.
    """

    def _factory(
        version: str = "7.1.12",
        *,
        tamper: str | None = None,
        template_params: dict[str, str] | None = None,
    ) -> VersionDescriptor:
        directory = release_root / version
        directory.mkdir(parents=True, exist_ok=True)
        binaries = release_binaries(version)
        for filename, data in binaries.items():
            (directory / filename).write_bytes(data)
        if tamper is not None:
            (directory / tamper).write_bytes(binaries[tamper] + b"tampered")
        return VersionDescriptor(
            version=version,
            client_artifact_hash=sha256_hex(binaries["libfdb_c.x86_64.so"]),
            monitor_artifact_hash=sha256_hex(binaries["fdbmonitor.x86_64"]),
            server_artifact_hash=sha256_hex(binaries["fdbserver.x86_64"]),
            cli_artifact_hash=sha256_hex(binaries["fdbcli.x86_64"]),
            template_params=template_params or {},
        )

    return _factory


@pytest.fixture
def build_config(tmp_dir: Path, release_root: Path) -> BuildConfig:
    """Build configuration rooted in the temp directory, releases served from disk."""
    return BuildConfig(
        cache_path=tmp_dir / "cache",
        scratch_path=tmp_dir / "scratch",
        images_path=tmp_dir / "images",
        release_url_base=release_root.as_uri(),
        fetch_attempts=1,
        max_parallel_builds=2,
    )


@pytest.fixture
def fetcher(build_config: BuildConfig) -> ArtifactFetcher:
    return ArtifactFetcher(
        ContentAddressedStore(build_config.cache_path), attempts=1, backoff_seconds=0
    )


@pytest.fixture
def blueprint(build_config: BuildConfig, fetcher: ArtifactFetcher) -> ImageBlueprint:
    """Provide an ImageBlueprint wired to the temp cache and fake releases."""
    return ImageBlueprint(build_config, fetcher)
