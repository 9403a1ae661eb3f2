"""Image Assembler — merge ordered layers into a bootable image.

Layers merge strictly in order and later layers replace earlier files at
the same path (last writer wins).  Every replacement is logged and recorded
on the image, so final ownership of a path is always inspectable.  After the
merge a post-placement script runs once over the merged tree, then the
result is validated, materialized in an exclusive scratch directory and,
only on success, published.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import tempfile
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from matrixforge.core.composer import normalize_path, resolve_symlinks
from matrixforge.core.errors import (
    AssembleError,
    InitEntryPointError,
    InvalidPath,
    LayerConflict,
    PostPlacementFailure,
    ProtectedPathOverwrite,
    ServiceAccountMismatch,
)
from matrixforge.core.hasher import canonical_json_bytes, sha256_hex
from matrixforge.models.image import Image, LayerOverwrite, ManifestEntry, ServiceAccount
from matrixforge.models.paths import DirectoryNode, FileNode, PathTree, SymlinkNode
from matrixforge.models.placement import (
    ChangeMode,
    ChangeOwner,
    EnableService,
    MakeDirectory,
    PostPlacementOp,
    PostPlacementScript,
    Symlink,
    Touch,
)

logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_PATHS: frozenset[str] = frozenset({"/etc/passwd", "/etc/group", "/etc/shadow"})
POST_PLACEMENT_LAYER = "post-placement"
IMPLICIT_LAYER_SUFFIX = ":implicit"
SYSTEMD_UNIT_DIR = "/etc/systemd/system"
DEFAULT_WANTED_BY = "default.target"


@dataclass
class _Staged:
    """Mutable working state of one path during assembly."""

    kind: str
    layer: str
    mode: int
    data: bytes = b""
    target: str = ""
    uid: int = 0
    gid: int = 0

    def to_manifest(self) -> ManifestEntry:
        return ManifestEntry(
            kind=self.kind,  # type: ignore[arg-type]
            layer=self.layer,
            mode=self.mode,
            uid=self.uid,
            gid=self.gid,
            digest=sha256_hex(self.data) if self.kind == "file" else "",
            target=self.target,
            size_bytes=len(self.data) if self.kind == "file" else 0,
        )


@dataclass
class _Workspace:
    """The merged tree plus the audit trail accumulated while building it."""

    entries: dict[str, _Staged] = field(default_factory=dict)
    overwrites: list[LayerOverwrite] = field(default_factory=list)
    enabled_services: list[str] = field(default_factory=list)


def _ancestors(path: str) -> list[str]:
    """Return the ancestors of *path* from the top down, excluding ``/``."""
    parts = path.strip("/").split("/")[:-1]
    return ["/" + "/".join(parts[: i + 1]) for i in range(len(parts))]


def _resolve(entries: dict[str, _Staged], path: str, *, follow_final: bool = False) -> str:
    """Resolve *path* through symlinks already staged in *entries* (merged-usr roots)."""

    def link_target(candidate: str) -> str | None:
        staged = entries.get(candidate)
        return staged.target if staged is not None and staged.kind == "symlink" else None

    return resolve_symlinks(link_target, path, follow_final=follow_final)


def _stage(node: FileNode | SymlinkNode | DirectoryNode, layer: str) -> _Staged:
    if isinstance(node, FileNode):
        return _Staged(kind="file", layer=layer, mode=node.mode, data=node.data)
    if isinstance(node, SymlinkNode):
        return _Staged(kind="symlink", layer=layer, mode=0o777, target=node.target)
    return _Staged(kind="directory", layer=layer, mode=node.mode)


class ImageAssembler:
    """Builds ``Image`` values from ordered ``PathTree`` layers.

    Parameters
    ----------
    scratch_root:
        Directory under which each assembly gets its own temporary
        directory.  The temporary directory is removed on every exit path.
    protected_paths:
        Paths whose replacement by a later layer is flagged ``protected``.
    forbid_protected_overwrite:
        Raise ``ProtectedPathOverwrite`` instead of only flagging.
    service_account:
        Account that must exist with these ids in the merged identity files
        and own *config_dir*.  ``None`` disables the check.
    config_dir:
        Directory that must be owned by the service account.
    """

    def __init__(
        self,
        scratch_root: Path,
        *,
        protected_paths: frozenset[str] = DEFAULT_PROTECTED_PATHS,
        forbid_protected_overwrite: bool = False,
        service_account: ServiceAccount | None = ServiceAccount(),
        config_dir: str = "/opt/fdb/conf",
    ) -> None:
        self._scratch_root = Path(scratch_root)
        self._protected = frozenset(protected_paths)
        self._forbid_protected = forbid_protected_overwrite
        self._service_account = service_account
        self._config_dir = config_dir

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assemble(
        self,
        layers: Sequence[PathTree],
        init_command: Sequence[str],
        environment: Mapping[str, str],
        post_placement: PostPlacementScript | Sequence[PostPlacementOp] | None = None,
        *,
        name: str,
        version: str,
        publish_dir: Path | None = None,
        listen_ports: Sequence[int] = (),
        cluster_file_path: str = "",
    ) -> Image:
        """Merge *layers*, run *post_placement*, validate and (optionally) publish.

        Raises an ``AssembleError`` subclass on any failure; nothing is
        published in that case.
        """
        operations = (
            post_placement.operations
            if isinstance(post_placement, PostPlacementScript)
            else list(post_placement or [])
        )

        workspace = _Workspace()
        for layer in layers:
            self._merge_layer(workspace, layer)

        for index, op in enumerate(operations):
            try:
                self._apply(workspace, op)
            except (KeyError, ValueError) as exc:
                raise PostPlacementFailure(f"Operation {index} ({op.op}) failed: {exc}") from exc

        self._validate_init(workspace, init_command)
        self._validate_service_account(workspace)

        manifest = {path: workspace.entries[path].to_manifest() for path in sorted(workspace.entries)}
        digest = self._digest(
            name=name,
            version=version,
            init_command=list(init_command),
            environment=dict(environment),
            enabled_services=workspace.enabled_services,
            listen_ports=list(listen_ports),
            cluster_file_path=cluster_file_path,
            manifest=manifest,
        )
        image = Image(
            name=name,
            version=version,
            digest=digest,
            init_command=list(init_command),
            environment=dict(environment),
            enabled_services=list(workspace.enabled_services),
            layers=[layer.name for layer in layers],
            manifest=manifest,
            overwrites=list(workspace.overwrites),
            listen_ports=list(listen_ports),
            cluster_file_path=cluster_file_path,
        )

        self._scratch_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=self._scratch_root, prefix=f"{name}-") as scratch:
            staging = Path(scratch) / "rootfs"
            try:
                self._materialize(workspace, staging)
            except OSError as exc:
                raise AssembleError(f"Cannot materialize image {name}: {exc}") from exc
            if publish_dir is not None:
                published = self._publish(image, staging, Path(publish_dir))
                image = image.model_copy(update={"published_path": published})

        logger.info(
            "Assembled image %s (%d paths, %d overwrites)",
            image.tag,
            len(manifest),
            len(image.overwrites),
        )
        return image

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _merge_layer(self, workspace: _Workspace, layer: PathTree) -> None:
        entries = workspace.entries
        for raw_path in layer.paths():
            node = layer.nodes[raw_path]
            path = normalize_path(raw_path)
            try:
                # A directory may land on a symlink to a directory (lib -> usr/lib).
                path = _resolve(entries, path, follow_final=isinstance(node, DirectoryNode))
            except InvalidPath as exc:
                raise LayerConflict(f"Layer {layer.name!r}: {exc}") from exc

            for ancestor in _ancestors(path):
                existing = entries.get(ancestor)
                if existing is None:
                    entries[ancestor] = _Staged(
                        kind="directory", layer=layer.name + IMPLICIT_LAYER_SUFFIX, mode=0o755
                    )
                elif existing.kind != "directory":
                    raise LayerConflict(
                        f"Layer {layer.name!r} places {path} under {ancestor}, "
                        f"which layer {existing.layer!r} made a {existing.kind}"
                    )

            staged = _stage(node, layer.name)
            existing = entries.get(path)
            if existing is None:
                entries[path] = staged
                continue

            if existing.kind == "directory" and staged.kind == "directory":
                existing.mode = staged.mode
                existing.layer = layer.name
                continue
            if existing.kind == "directory" or staged.kind == "directory":
                raise LayerConflict(
                    f"Layer {layer.name!r} places a {staged.kind} at {path}, "
                    f"where layer {existing.layer!r} placed a {existing.kind}"
                )

            protected = path in self._protected
            if protected and self._forbid_protected:
                raise ProtectedPathOverwrite(
                    f"Layer {layer.name!r} overwrites protected path {path} "
                    f"from layer {existing.layer!r}"
                )
            logger.warning(
                "Layer %s overwrites %s (previously from %s)%s",
                layer.name,
                path,
                existing.layer,
                " [protected]" if protected else "",
            )
            workspace.overwrites.append(
                LayerOverwrite(
                    path=path,
                    previous_layer=existing.layer,
                    layer=layer.name,
                    protected=protected,
                )
            )
            entries[path] = staged

    # ------------------------------------------------------------------
    # Post-placement
    # ------------------------------------------------------------------

    def _apply(self, workspace: _Workspace, op: PostPlacementOp) -> None:
        entries = workspace.entries
        if isinstance(op, MakeDirectory):
            path = _resolve(entries, normalize_path(op.path), follow_final=True)
            for ancestor in _ancestors(path) + [path]:
                existing = entries.get(ancestor)
                if existing is None:
                    entries[ancestor] = _Staged(
                        kind="directory", layer=POST_PLACEMENT_LAYER, mode=0o755
                    )
                elif existing.kind != "directory":
                    raise PostPlacementFailure(f"mkdir {path}: {ancestor} is a {existing.kind}")
            entries[path].mode = op.mode

        elif isinstance(op, ChangeOwner):
            path = _resolve(entries, normalize_path(op.path))
            self._require(entries, path, "chown")
            uid = self._lookup_user(entries, op.user)
            gid = self._lookup_group(entries, op.group)
            targets = [path]
            if op.recursive:
                targets += [p for p in entries if p.startswith(path + "/")]
            for target in targets:
                entries[target].uid = uid
                entries[target].gid = gid

        elif isinstance(op, ChangeMode):
            path = _resolve(entries, normalize_path(op.path))
            self._require(entries, path, "chmod").mode = op.mode

        elif isinstance(op, Symlink):
            path = _resolve(entries, normalize_path(op.path))
            existing = entries.get(path)
            if existing is not None:
                if existing.kind == "symlink" and existing.target == op.target:
                    return
                raise PostPlacementFailure(f"ln -s {op.target} {path}: path already exists")
            self._require_parent(entries, path, "ln -s")
            entries[path] = _Staged(
                kind="symlink", layer=POST_PLACEMENT_LAYER, mode=0o777, target=op.target
            )

        elif isinstance(op, Touch):
            path = _resolve(entries, normalize_path(op.path))
            existing = entries.get(path)
            if existing is None:
                self._require_parent(entries, path, "touch")
                entries[path] = _Staged(kind="file", layer=POST_PLACEMENT_LAYER, mode=op.mode)
            elif existing.kind == "directory":
                raise PostPlacementFailure(f"touch {path}: path is a directory")

        elif isinstance(op, EnableService):
            self._enable(workspace, op.unit)

        else:  # pragma: no cover - exhaustive over PostPlacementOp
            raise PostPlacementFailure(f"Unknown post-placement operation: {op!r}")

    def _enable(self, workspace: _Workspace, unit: str) -> None:
        entries = workspace.entries
        unit_path = f"{SYSTEMD_UNIT_DIR}/{unit}"
        staged = entries.get(unit_path)
        if staged is None or staged.kind != "file":
            raise PostPlacementFailure(f"systemctl enable {unit}: no unit file at {unit_path}")

        targets = _wanted_by(staged.data.decode("utf-8", "replace")) or [DEFAULT_WANTED_BY]
        for target in targets:
            wants_dir = f"{SYSTEMD_UNIT_DIR}/{target}.wants"
            existing = entries.get(wants_dir)
            if existing is None:
                entries[wants_dir] = _Staged(
                    kind="directory", layer=POST_PLACEMENT_LAYER, mode=0o755
                )
            elif existing.kind != "directory":
                raise PostPlacementFailure(f"systemctl enable {unit}: {wants_dir} is not a directory")
            entries[f"{wants_dir}/{unit}"] = _Staged(
                kind="symlink", layer=POST_PLACEMENT_LAYER, mode=0o777, target=unit_path
            )
        if unit not in workspace.enabled_services:
            workspace.enabled_services.append(unit)
        logger.debug("Enabled %s (wanted by %s)", unit, ", ".join(targets))

    @staticmethod
    def _require(entries: dict[str, _Staged], path: str, what: str) -> _Staged:
        staged = entries.get(path)
        if staged is None:
            raise PostPlacementFailure(f"{what} {path}: no such file or directory")
        return staged

    @staticmethod
    def _require_parent(entries: dict[str, _Staged], path: str, what: str) -> None:
        parent = posixpath.dirname(path)
        if parent == "/":
            return
        staged = entries.get(parent)
        if staged is None or staged.kind != "directory":
            raise PostPlacementFailure(f"{what} {path}: parent {parent} is not a directory")

    # ------------------------------------------------------------------
    # Identity lookups (merged /etc/passwd and /etc/group)
    # ------------------------------------------------------------------

    @staticmethod
    def _identity_rows(entries: dict[str, _Staged], path: str) -> list[list[str]]:
        staged = entries.get(path)
        if staged is None or staged.kind != "file":
            return []
        rows = []
        for line in staged.data.decode("utf-8", "replace").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                rows.append(line.split(":"))
        return rows

    def _passwd(self, entries: dict[str, _Staged]) -> dict[str, tuple[int, int]]:
        users = {}
        for row in self._identity_rows(entries, "/etc/passwd"):
            if len(row) >= 4:
                users[row[0]] = (int(row[2]), int(row[3]))
        return users

    def _groups(self, entries: dict[str, _Staged]) -> dict[str, int]:
        groups = {}
        for row in self._identity_rows(entries, "/etc/group"):
            if len(row) >= 3:
                groups[row[0]] = int(row[2])
        return groups

    def _lookup_user(self, entries: dict[str, _Staged], user: str) -> int:
        if user.isdigit():
            return int(user)
        users = self._passwd(entries)
        if user not in users:
            raise PostPlacementFailure(f"chown: unknown user {user!r}")
        return users[user][0]

    def _lookup_group(self, entries: dict[str, _Staged], group: str) -> int:
        if group.isdigit():
            return int(group)
        groups = self._groups(entries)
        if group not in groups:
            raise PostPlacementFailure(f"chown: unknown group {group!r}")
        return groups[group]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_init(workspace: _Workspace, init_command: Sequence[str]) -> None:
        if not init_command:
            raise InitEntryPointError("Image has no init entry point")
        entry_point = init_command[0]
        if not entry_point.startswith("/"):
            raise InitEntryPointError(f"Init entry point must be absolute: {entry_point!r}")
        try:
            resolved = _resolve(workspace.entries, entry_point)
        except InvalidPath as exc:
            raise InitEntryPointError(f"Init entry point {entry_point}: {exc}") from exc
        staged = workspace.entries.get(resolved)
        if staged is None:
            raise InitEntryPointError(f"Init entry point {entry_point} is not in the image")
        if staged.kind == "directory":
            raise InitEntryPointError(f"Init entry point {entry_point} is a directory")
        if staged.kind == "file" and not staged.mode & 0o111:
            raise InitEntryPointError(f"Init entry point {entry_point} is not executable")

    def _validate_service_account(self, workspace: _Workspace) -> None:
        account = self._service_account
        if account is None:
            return
        users = self._passwd(workspace.entries)
        groups = self._groups(workspace.entries)
        if users.get(account.user) != (account.uid, account.gid):
            raise ServiceAccountMismatch(
                f"User {account.user!r} must exist with uid:gid {account.uid}:{account.gid}, "
                f"found {users.get(account.user)}"
            )
        if groups.get(account.group) != account.gid:
            raise ServiceAccountMismatch(
                f"Group {account.group!r} must exist with gid {account.gid}, "
                f"found {groups.get(account.group)}"
            )
        config = workspace.entries.get(self._config_dir)
        if config is None or (config.uid, config.gid) != (account.uid, account.gid):
            owner = None if config is None else (config.uid, config.gid)
            raise ServiceAccountMismatch(
                f"{self._config_dir} must be owned by {account.user}:{account.group}, found {owner}"
            )

    # ------------------------------------------------------------------
    # Digest, materialize, publish
    # ------------------------------------------------------------------

    @staticmethod
    def _digest(*, manifest: dict[str, ManifestEntry], **fields: object) -> str:
        payload = dict(fields)
        payload["manifest"] = {path: entry.model_dump(mode="json") for path, entry in manifest.items()}
        return sha256_hex(canonical_json_bytes(payload))

    @staticmethod
    def _materialize(workspace: _Workspace, root: Path) -> None:
        root.mkdir(parents=True)
        directories = []
        for path in sorted(workspace.entries):
            staged = workspace.entries[path]
            target = root / path.lstrip("/")
            if staged.kind == "directory":
                target.mkdir(exist_ok=True)
                directories.append((target, staged.mode))
            elif staged.kind == "symlink":
                os.symlink(staged.target, target)
            else:
                target.write_bytes(staged.data)
                os.chmod(target, staged.mode & 0o7777)
        # Directory modes last so read-only directories can still be populated.
        for target, mode in reversed(directories):
            os.chmod(target, mode & 0o7777)

    @staticmethod
    def _publish(image: Image, staging: Path, publish_dir: Path) -> Path:
        publish_dir.mkdir(parents=True, exist_ok=True)
        destination = publish_dir / f"{image.name}-{image.digest[:12]}"
        if destination.exists():
            logger.info("Image %s already published at %s", image.tag, destination)
            return destination

        incoming = publish_dir / f".incoming-{uuid.uuid4().hex}"
        try:
            incoming.mkdir()
            shutil.copytree(staging, incoming / "rootfs", symlinks=True)
            (incoming / "manifest.json").write_text(
                image.model_dump_json(indent=2, exclude={"published_path"}), encoding="utf-8"
            )
            os.replace(incoming, destination)
        except OSError as exc:
            shutil.rmtree(incoming, ignore_errors=True)
            if destination.exists():
                return destination
            raise AssembleError(f"Cannot publish image {image.tag}: {exc}") from exc
        return destination


def _wanted_by(unit_text: str) -> list[str]:
    """Parse ``WantedBy=`` values from a unit's ``[Install]`` section."""
    targets: list[str] = []
    section = ""
    for line in unit_text.splitlines():
        line = line.strip()
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1]
        elif section == "Install" and line.startswith("WantedBy="):
            targets.extend(line.split("=", 1)[1].split())
    return targets
