"""Path Composer — place artifacts and files at version-qualified paths.

Two placement policies exist because the consumers differ: the client
library is loaded through one stable path (``UNVERSIONED``: versioned file
plus a stable symlink), while server and CLI binaries are selected by
version explicitly (``VERSIONED_ONLY``).  Entries without a version are
placed as-is under either policy.
"""

from __future__ import annotations

import logging
import os
import posixpath
import stat
from collections import Counter
from collections.abc import Callable, Iterable
from pathlib import Path

from matrixforge.core.errors import DuplicatePath, InvalidPath
from matrixforge.models.paths import (
    DirectoryNode,
    FileNode,
    PathEntry,
    PathTree,
    PlacementPolicy,
    SymlinkNode,
    VersionStyle,
)

logger = logging.getLogger(__name__)

MAX_SYMLINK_HOPS = 40


def normalize_path(path: str) -> str:
    """Validate and normalize an absolute POSIX destination path."""
    if not path.startswith("/"):
        raise InvalidPath(f"Destination path must be absolute: {path!r}")
    if ".." in path.split("/"):
        raise InvalidPath(f"Destination path must not contain '..': {path!r}")
    normalized = posixpath.normpath(path)
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if normalized == "/":
        raise InvalidPath("Cannot place a node at the root directory")
    return normalized


def versioned_path(path: str, version: str, style: VersionStyle) -> str:
    """Return the version-qualified form of *path*.

    >>> versioned_path("/opt/fdb/client-lib/libfdb_c.so", "7.1.12", VersionStyle.SUFFIX)
    '/opt/fdb/client-lib/libfdb_c.so.7.1.12'
    >>> versioned_path("/opt/fdb/server/fdbserver", "7.1.12", VersionStyle.DIRECTORY)
    '/opt/fdb/server/7.1.12/fdbserver'
    """
    if style == VersionStyle.SUFFIX:
        return f"{path}.{version}"
    parent, base = posixpath.split(path)
    return posixpath.join(parent, version, base)


def resolve_symlinks(
    link_target: Callable[[str], str | None], path: str, *, follow_final: bool = False
) -> str:
    """Resolve symlinked components of absolute *path* inside a merged tree.

    *link_target* returns the target of the symlink at a path, or ``None``
    when the path is not a symlink.  Relative targets resolve against the
    link's directory and can never climb above ``/``.  The final component
    is only followed with *follow_final*.

    >>> links = {"/lib": "usr/lib"}.get
    >>> resolve_symlinks(links, "/lib/systemd/systemd")
    '/usr/lib/systemd/systemd'
    """
    pending = [part for part in path.split("/") if part]
    resolved = "/"
    hops = 0
    while pending:
        part = pending.pop(0)
        candidate = posixpath.join(resolved, part)
        target = link_target(candidate) if pending or follow_final else None
        if target is None:
            resolved = candidate
            continue
        hops += 1
        if hops > MAX_SYMLINK_HOPS:
            raise InvalidPath(f"Too many levels of symbolic links resolving {path}")
        base = "/" if target.startswith("/") else resolved
        expanded = posixpath.normpath(posixpath.join(base, target))
        pending = [p for p in expanded.split("/") if p] + pending
        resolved = "/"
    return resolved


class PathComposer:
    """Expands placement entries into a validated ``PathTree``."""

    def compose(
        self,
        entries: Iterable[PathEntry],
        policy: PlacementPolicy = PlacementPolicy.VERSIONED_ONLY,
        *,
        name: str = "tree",
    ) -> PathTree:
        """Produce a tree where every path, generated symlinks included, is unique.

        Raises ``InvalidPath`` for relative or escaping paths and
        ``DuplicatePath`` naming the (lexicographically first) colliding
        path, independent of the order of *entries*.
        """
        placed: list[tuple[str, object]] = []

        for entry in entries:
            path = normalize_path(entry.path)
            if entry.version is None:
                placed.append((path, entry.node))
                continue

            target_path = versioned_path(path, entry.version, entry.version_style)
            placed.append((target_path, entry.node))
            if policy == PlacementPolicy.UNVERSIONED:
                link_target = posixpath.relpath(target_path, posixpath.dirname(path))
                placed.append((path, SymlinkNode(target=link_target)))

        counts = Counter(path for path, _ in placed)
        duplicates = sorted(path for path, count in counts.items() if count > 1)
        if duplicates:
            raise DuplicatePath(duplicates[0])

        tree = PathTree(name=name, nodes={path: node for path, node in placed})
        logger.debug("Composed %s: %d paths (%s)", name, len(tree.nodes), policy.value)
        return tree

    @staticmethod
    def from_directory(root: Path, *, name: str) -> PathTree:
        """Load an existing root filesystem directory as a layer.

        Symlinks are kept as links (never followed); modes come from the
        files on disk.
        """
        root = Path(root)
        if not root.is_dir():
            raise InvalidPath(f"Base root is not a directory: {root}")
        nodes: dict[str, FileNode | SymlinkNode | DirectoryNode] = {}
        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            for entry in sorted(dirnames) + sorted(filenames):
                source = current / entry
                path = "/" + source.relative_to(root).as_posix()
                if source.is_symlink():
                    nodes[path] = SymlinkNode(target=os.readlink(source))
                elif source.is_dir():
                    nodes[path] = DirectoryNode(mode=stat.S_IMODE(source.stat().st_mode))
                else:
                    nodes[path] = FileNode(
                        data=source.read_bytes(), mode=stat.S_IMODE(source.stat().st_mode)
                    )
        logger.debug("Loaded %s from %s: %d paths", name, root, len(nodes))
        return PathTree(name=name, nodes=nodes)
