"""Error taxonomy for the build pipeline and the fuzz orchestrator.

Build-stage errors (fetch, patch, template, compose, assemble) abort only the
version build they occur in; the Version Matrix Driver captures them per
version.  ``ScriptedCheckFailed`` aborts a whole fuzz run.  Divergences,
client errors and timeouts found while fuzzing are *not* exceptions: they are
recorded as ``FuzzFailure`` data and aggregated into the summary.
"""

from __future__ import annotations


class ForgeError(RuntimeError):
    """Base class for every error raised by Matrixforge."""


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------


class FetchError(ForgeError):
    """Raised when an upstream artifact cannot be retrieved."""


class HashMismatch(FetchError):
    """Raised when downloaded bytes do not hash to the expected digest.

    Terminal: a hash mismatch is never retried.
    """

    def __init__(self, url: str, expected: str, actual: str) -> None:
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Hash mismatch for {url}: expected sha256:{expected}, got sha256:{actual}"
        )


class NetworkFailure(FetchError):
    """Raised when the transport fails (after exhausting retries)."""


class InvalidHashNotation(FetchError, ValueError):
    """Raised when an expected hash is not in a recognized notation."""


# ---------------------------------------------------------------------------
# Patch
# ---------------------------------------------------------------------------


class PatchError(ForgeError):
    """Raised when a binary's linkage metadata cannot be rewritten."""


class UnrecognizedFormat(PatchError):
    """Raised when the binary is not an ELF64 little-endian image we can patch."""


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateError(ForgeError):
    """Raised when a template cannot be rendered."""


class UnboundParameter(TemplateError, KeyError):
    """Raised when a template placeholder has no value in the parameter map."""

    def __init__(self, key: str, template: str = "", missing: list[str] | None = None) -> None:
        self.key = key
        self.template = template
        self.missing = missing or [key]
        super().__init__(key)

    def __str__(self) -> str:
        where = f" in {self.template}" if self.template else ""
        return f"Unbound template parameter {self.key!r}{where} (missing: {', '.join(self.missing)})"


class TemplateNotFound(TemplateError, FileNotFoundError):
    """Raised when a template source file does not exist."""


# ---------------------------------------------------------------------------
# Compose
# ---------------------------------------------------------------------------


class ComposeError(ForgeError):
    """Raised when a path tree cannot be composed."""


class DuplicatePath(ComposeError):
    """Raised when two entries would occupy the same destination path."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Duplicate destination path: {path}")


class InvalidPath(ComposeError, ValueError):
    """Raised when a destination path is relative or escapes the root."""


# ---------------------------------------------------------------------------
# Assemble
# ---------------------------------------------------------------------------


class AssembleError(ForgeError):
    """Raised when an image cannot be assembled.  No partial image is published."""


class PostPlacementFailure(AssembleError):
    """Raised when a post-placement operation fails."""


class LayerConflict(AssembleError):
    """Raised when one layer places a file where another placed a directory."""


class ProtectedPathOverwrite(AssembleError):
    """Raised when a layer overwrites a protected path and that is forbidden."""


class ServiceAccountMismatch(AssembleError):
    """Raised when the service account is missing or has unexpected ids."""


class InitEntryPointError(AssembleError):
    """Raised when the image does not have exactly one valid init entry point."""


# ---------------------------------------------------------------------------
# Fuzz
# ---------------------------------------------------------------------------


class FuzzError(ForgeError):
    """Raised for harness-level fuzz failures (not fuzz-discovered bugs)."""


class ScriptedCheckFailed(FuzzError):
    """Raised when the fixed scripted check fails.  Fatal for the whole run."""

    def __init__(self, message: str, *, op_index: int | None = None) -> None:
        self.op_index = op_index
        super().__init__(message)


class InvalidPhaseTransition(FuzzError):
    """Raised when the orchestrator is driven through an invalid phase change."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class ArtifactIntegrityError(ForgeError):
    """Raised when a cached artifact's bytes do not match its address."""


class ReportIntegrityError(ForgeError):
    """Raised when the report sink's hash chain is broken."""
