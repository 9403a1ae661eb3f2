"""Client and oracle interfaces for the fuzz orchestrator.

The real client under test and the real oracle are external: anything with
``run`` and ``clear`` satisfies ``KeyValueClient``.  Factories are loaded
from ``module:attribute`` strings so the CLI can wire in implementations
that live outside this package.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from matrixforge.models.fuzz import Operation, OperationResult


@runtime_checkable
class KeyValueClient(Protocol):
    """Protocol for a client session (or an oracle).

    Any object with these two methods satisfies the protocol.
    """

    def run(self, ops: Sequence[Operation], *, namespace: bytes) -> list[OperationResult]:
        """Execute *ops* in order with keys prefixed by *namespace*.

        Returns one result per operation.  Raising signals a client error.
        """
        ...

    def clear(self, namespace: bytes) -> None:
        """Remove every key under *namespace*."""
        ...


ClientFactory = Callable[[], KeyValueClient]


def load_factory(spec: str) -> ClientFactory:
    """Resolve ``"package.module:attribute"`` to a zero-argument factory.

    The attribute may be a class or any callable returning a client.
    """
    module_name, sep, attr_path = spec.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"Factory must look like 'module:attribute', got {spec!r}")
    try:
        target: object = importlib.import_module(module_name)
    except ImportError as exc:
        raise ValueError(f"Cannot import {module_name!r} for factory {spec!r}: {exc}") from exc
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ValueError(f"{spec!r}: {part!r} not found") from exc
    if not callable(target):
        raise ValueError(f"{spec!r} is not callable")
    return target  # type: ignore[return-value]
