"""Artifact Fetcher — retrieve upstream binaries and verify them by hash.

Nothing leaves ``fetch`` until the SHA-256 of the received bytes matches the
expected digest.  Transport failures are retried; a hash mismatch never is.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from matrixforge.core.artifact_store import ContentAddressedStore
from matrixforge.core.errors import ArtifactIntegrityError, HashMismatch, NetworkFailure
from matrixforge.core.hasher import content_address, normalize_sha256, sha256_hex
from matrixforge.models.artifacts import ArtifactSpec, FetchedArtifact

logger = logging.getLogger(__name__)


class ArtifactFetcher:
    """Downloads artifacts over HTTP(S) or reads them from local paths.

    Parameters
    ----------
    store:
        Optional (name, version, hash)-keyed cache used by ``fetch_artifact``.
    session:
        ``requests.Session`` used for HTTP(S).  One is created if omitted.
    timeout:
        Per-request timeout in seconds.
    attempts:
        Total attempts for transport failures (>= 1).
    backoff_seconds:
        Base delay between attempts; doubles after each failure.
    """

    def __init__(
        self,
        store: ContentAddressedStore | None = None,
        *,
        session: requests.Session | None = None,
        timeout: float = 60.0,
        attempts: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self._store = store
        self._session = session or requests.Session()
        self._timeout = timeout
        self._attempts = attempts
        self._backoff = backoff_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(self, url: str, expected_hash: str) -> bytes:
        """Return the bytes at *url* iff they hash to *expected_hash*.

        Raises ``HashMismatch`` (terminal) or ``NetworkFailure`` once all
        attempts are exhausted.
        """
        expected = normalize_sha256(expected_hash)
        last_error: NetworkFailure | None = None

        for attempt in range(1, self._attempts + 1):
            try:
                data = self._read(url)
            except NetworkFailure as exc:
                last_error = exc
                logger.warning(
                    "Fetch attempt %d/%d for %s failed: %s", attempt, self._attempts, url, exc
                )
                if attempt < self._attempts and self._backoff > 0:
                    time.sleep(self._backoff * 2 ** (attempt - 1))
                continue

            actual = sha256_hex(data)
            if actual != expected:
                raise HashMismatch(url, expected, actual)
            logger.debug("Fetched %s (%d bytes, sha256:%s)", url, len(data), actual)
            return data

        raise NetworkFailure(
            f"Giving up on {url} after {self._attempts} attempt(s): {last_error}"
        ) from last_error

    def fetch_artifact(self, spec: ArtifactSpec) -> tuple[FetchedArtifact, bytes]:
        """Fetch *spec* through the cache.

        A cache hit is re-verified on read; a corrupted object is treated as
        a miss, re-fetched and atomically replaced.
        """
        if self._store is not None and self._store.exists(*spec.cache_key):
            try:
                data = self._store.get(*spec.cache_key)
            except ArtifactIntegrityError as exc:
                logger.warning("Discarding corrupted cache entry for %s: %s", spec.name, exc)
            else:
                logger.debug("Cache hit for %s %s", spec.name, spec.version)
                return self._describe(spec, data, from_cache=True), data

        data = self.fetch(spec.url, spec.expected_hash)
        if self._store is not None:
            self._store.put(spec.name, spec.version, data, repair=True)
        return self._describe(spec, data, from_cache=False), data

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _read(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            return self._read_http(url)
        if parsed.scheme == "file":
            return self._read_local(Path(unquote(parsed.path)))
        if parsed.scheme == "":
            return self._read_local(Path(url))
        raise NetworkFailure(f"Unsupported URL scheme {parsed.scheme!r} in {url}")

    def _read_http(self, url: str) -> bytes:
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NetworkFailure(f"GET {url} failed: {exc}") from exc
        return response.content

    @staticmethod
    def _read_local(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise NetworkFailure(f"Cannot read {path}: {exc}") from exc

    @staticmethod
    def _describe(spec: ArtifactSpec, data: bytes, *, from_cache: bool) -> FetchedArtifact:
        return FetchedArtifact(
            spec=spec,
            content_address=content_address(data),
            size_bytes=len(data),
            from_cache=from_cache,
        )
