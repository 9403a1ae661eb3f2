"""Statically declared supported server versions.

Each entry pins the SHA-256 of the four upstream release artifacts (client
library, monitor, server, CLI) and the Python binding release the test
shell installs as the oracle.  Adding a version means adding a descriptor
here; nothing else in the build is version-specific.
"""

from __future__ import annotations

from matrixforge.models.versioning import VersionDescriptor

SUPPORTED_VERSIONS: tuple[VersionDescriptor, ...] = (
    VersionDescriptor(
        version="6.3.24",
        client_artifact_hash="sha256-avg6auM2Vqu00+xsdA+brTB7GX0o3BZvEChnEOErMJk=",
        monitor_artifact_hash="sha256-+hiG+YMt1w6mRBnwV3WmBKhgA7mo/t7qstf8pVPlP1k=",
        server_artifact_hash="sha256-ogMPAuDkhuyBNIDpEKDsCKpYZtK2Ik7NcQm93gxWFho=",
        cli_artifact_hash="sha256-zKDCdDfkIwnHCZb3kWHCsqtXVKBJ9serY61jpNAOHzg=",
        template_params={"python_binding_version": "6.3.23"},
    ),
    VersionDescriptor(
        version="7.1.12",
        client_artifact_hash="sha256-5KeYLcy22eYWuQVUMIlrAP90h0crAzvkrcl/ADZ5yCE=",
        monitor_artifact_hash="sha256-meuNIjt6xhkuTM1AiF8fvtFM2SnM16MutNPsHH58gz8=",
        server_artifact_hash="sha256-FQzCcIAeFLfGszkJ61BJqYRlq2ev/fMxA93Lz6qkRJg=",
        cli_artifact_hash="sha256-JGHdRcAXii+hiOamrmy6GA5LG4a4aCfbF4o1LoHC4p0=",
        template_params={"python_binding_version": "7.1.3"},
    ),
)


def get_version(version: str) -> VersionDescriptor:
    """Return the supported descriptor for *version*.

    Raises ``KeyError`` for unsupported versions.
    """
    for descriptor in SUPPORTED_VERSIONS:
        if descriptor.version == version:
            return descriptor
    supported = ", ".join(d.version for d in SUPPORTED_VERSIONS)
    raise KeyError(f"Unsupported version {version!r} (supported: {supported})")


def load_descriptors(raw: list[dict[str, object]]) -> list[VersionDescriptor]:
    """Parse the JSON descriptor input format (camelCase or snake_case keys)."""
    return [VersionDescriptor.model_validate(item) for item in raw]
