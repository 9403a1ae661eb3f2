"""Content-addressed artifact cache keyed by (name, version, sha256).

Storage layout: {base_path}/{name}/{version}/{sha256}.dat

The cache is the only state shared between parallel version builds.  Writes
go to a temporary file in the same directory and are moved into place with
``os.replace``, so a concurrent reader sees either nothing or the complete
object.  Every read re-hashes the bytes: the cache never returns data that
does not match its address.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from matrixforge.core.errors import ArtifactIntegrityError
from matrixforge.core.hasher import sha256_hex
from matrixforge.models.artifacts import ArtifactRef

logger = logging.getLogger(__name__)


class ContentAddressedStore:
    """Immutable artifact cache.

    Storing the same (name, version, sha256) twice is a no-op when the
    existing object is intact.  There is no update or delete; a corrupted
    object can only be replaced through ``put(..., repair=True)``.

    Parameters
    ----------
    base_path:
        Root directory for cached artifacts.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    @staticmethod
    def _extract_digest(digest: str) -> str:
        """Strip the ``sha256:`` prefix from a content address, if present."""
        return digest.removeprefix("sha256:").lower()

    def path_for(self, name: str, version: str, sha256: str) -> Path:
        """Compute the storage path for a cache key."""
        digest = self._extract_digest(sha256)
        return self._base / name / version / f"{digest}.dat"

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def put(
        self,
        name: str,
        version: str,
        data: bytes,
        *,
        repair: bool = False,
    ) -> ArtifactRef:
        """Store *data* under (name, version, sha256(data)).

        If an intact object already exists it is left untouched.  A corrupted
        existing object raises ``ArtifactIntegrityError`` unless *repair* is
        set, in which case it is atomically replaced.
        """
        digest = sha256_hex(data)
        path = self.path_for(name, version, digest)

        if path.exists():
            if self.verify(name, version, digest):
                return self._ref(name, version, digest, len(data))
            if not repair:
                raise ArtifactIntegrityError(
                    f"Cached artifact {name} {version} sha256:{digest} failed integrity check"
                )
            logger.warning(
                "Replacing corrupted cache object %s %s sha256:%s", name, version, digest
            )

        self._atomic_write(path, data)
        return self._ref(name, version, digest, len(data))

    def _atomic_write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    def get(self, name: str, version: str, sha256: str) -> bytes:
        """Return the cached bytes for a key, re-verified against the digest.

        Raises ``FileNotFoundError`` on a miss and ``ArtifactIntegrityError``
        when the stored bytes no longer hash to *sha256*.
        """
        digest = self._extract_digest(sha256)
        path = self.path_for(name, version, digest)
        if not path.exists():
            raise FileNotFoundError(f"Artifact not cached: {name} {version} sha256:{digest}")
        data = path.read_bytes()
        actual = sha256_hex(data)
        if actual != digest:
            raise ArtifactIntegrityError(
                f"Cached artifact {name} {version} expected sha256:{digest}, found sha256:{actual}"
            )
        return data

    # ------------------------------------------------------------------
    # Check and verify
    # ------------------------------------------------------------------

    def exists(self, name: str, version: str, sha256: str) -> bool:
        """Check if an object exists for the key (without verifying it)."""
        return self.path_for(name, version, sha256).exists()

    def verify(self, name: str, version: str, sha256: str) -> bool:
        """Re-hash stored data and compare against the key's digest."""
        digest = self._extract_digest(sha256)
        path = self.path_for(name, version, digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == digest

    def _ref(self, name: str, version: str, digest: str, size: int) -> ArtifactRef:
        return ArtifactRef(
            name=name,
            version=version,
            content_address=f"sha256:{digest}",
            size_bytes=size,
        )
