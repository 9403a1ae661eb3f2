"""Matrixforge: reproducible versioned runtime images and differential client fuzzing.

  - Content-addressed artifact fetching with hash verification (SHA-256 in
    hex, SRI or Nix base32 notation)
  - In-place ELF interpreter / search-path patching
  - ``@name@`` configuration templates, version-qualified path placement
  - Ordered last-writer-wins image layering with an overwrite audit trail
  - Parallel, failure-isolated builds across the version matrix
  - Scripted, oracle-compared and concurrent fuzz phases with reproducible
    seeds and a hash-chained JSON Lines report
"""

__version__ = "0.1.0"
__description__ = "Reproducible versioned database test images and differential client fuzzing"

from matrixforge.config import ForgeSettings
from matrixforge.core.matrix import VersionMatrixDriver
from matrixforge.fuzz.orchestrator import FuzzOrchestrator
from matrixforge.versions import SUPPORTED_VERSIONS

__all__ = [
    "ForgeSettings",
    "FuzzOrchestrator",
    "SUPPORTED_VERSIONS",
    "VersionMatrixDriver",
    "__version__",
]
