"""Image blueprint — the per-version recipe for a database test image.

A build is a pure function of its ``VersionDescriptor`` and the shared
(name, version, hash)-keyed artifact cache.  Stages run as a strict chain:
fetch -> patch -> render -> compose -> assemble.

Image layout (layers in merge order)::

    base-system        optional pre-built root (coreutils, systemd, ...)
    base-identity      /etc/passwd, /etc/group, /etc/nsswitch.conf, /var/empty
    init-system        systemd targets, halt and journald units
    fdb-client-lib     /opt/fdb/client-lib/libfdb_c.so -> libfdb_c.so.<v>
    fdb-apps           client-lib-dir, monitor, server/<v>, cli/<v>
    fdb-config         /opt/fdb/conf/foundationdb.conf, fdb.cluster
    fdb-units          foundationdb.service, fdbcli.service
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from matrixforge.core.assembler import ImageAssembler
from matrixforge.core.composer import PathComposer, resolve_symlinks
from matrixforge.core.fetcher import ArtifactFetcher
from matrixforge.core.patcher import ElfPatcher
from matrixforge.core.templates import TemplateRenderer
from matrixforge.models.artifacts import ArtifactKind, ArtifactSpec
from matrixforge.models.config import BuildConfig
from matrixforge.models.image import Image, TestShellEnvironment
from matrixforge.models.paths import (
    DirectoryNode,
    FileNode,
    PathEntry,
    PathTree,
    PlacementPolicy,
    SymlinkNode,
    VersionStyle,
)
from matrixforge.models.placement import (
    ChangeMode,
    ChangeOwner,
    EnableService,
    MakeDirectory,
    PostPlacementScript,
    Symlink,
    Touch,
)
from matrixforge.models.results import BuildPlan, BuildStage
from matrixforge.models.versioning import VersionDescriptor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Image constants
# ---------------------------------------------------------------------------

FDB_ROOT = "/opt/fdb"
CLIENT_LIB_DIR = f"{FDB_ROOT}/client-lib"
CONF_DIR = f"{FDB_ROOT}/conf"
CLUSTER_FILE = f"{CONF_DIR}/fdb.cluster"
UNIT_DIR = "/etc/systemd/system"
INIT_PATH = "/lib/systemd/systemd"
INIT_TARGET = "/usr/lib/systemd/systemd"
ENV_PATH = "/bin/env"
USR_ENV_PATH = "/usr/bin/env"

# Descriptor template parameter pinning the Python binding used as the oracle.
PYTHON_BINDING_PARAM = "python_binding_version"

SYSTEMD_UNIT_TEMPLATES: dict[str, str] = {
    f"{UNIT_DIR}/default.target": "systemd/default.target.in",
    f"{UNIT_DIR}/sysinit.target": "systemd/sysinit.target",
    f"{UNIT_DIR}/halt.target": "systemd/halt.target.in",
    f"{UNIT_DIR}/halt.service": "systemd/halt.service.in",
    f"{UNIT_DIR}/systemd-journald.socket": "systemd/systemd-journald.socket",
    f"{UNIT_DIR}/systemd-journald.service": "systemd/systemd-journald.service.in",
}

IDENTITY_TEMPLATES: dict[str, str] = {
    "/etc/passwd": "base/passwd.in",
    "/etc/group": "base/group.in",
    "/etc/nsswitch.conf": "base/nsswitch.conf",
}

CONFIG_TEMPLATES: dict[str, str] = {
    f"{CONF_DIR}/foundationdb.conf": "fdb/foundationdb.conf.in",
    CLUSTER_FILE: "fdb/fdb.cluster",
}

DB_UNIT_TEMPLATES: dict[str, str] = {
    f"{UNIT_DIR}/foundationdb.service": "fdb/foundationdb.service",
    f"{UNIT_DIR}/fdbcli.service": "fdb/fdbcli.service.in",
}

# Rendered verbatim: the cluster file legitimately contains '@'.
STATIC_TEMPLATES: frozenset[str] = frozenset({"fdb/fdb.cluster"})

ENABLED_SERVICES = ("fdbcli.service", "foundationdb.service")

StageCallback = Callable[[BuildStage], None]


class ImageBlueprint:
    """Builds the image and test-shell environment for one version.

    Parameters
    ----------
    config:
        Build configuration (paths, release URL base, identities).
    fetcher:
        Artifact fetcher; shares the artifact cache across builds.
    renderer, composer, assembler:
        Stage implementations.  Defaults are derived from *config*.
    base_layers:
        Layers merged before everything else (e.g. a pre-built root
        filesystem providing coreutils and systemd).
    """

    def __init__(
        self,
        config: BuildConfig,
        fetcher: ArtifactFetcher,
        *,
        renderer: TemplateRenderer | None = None,
        composer: PathComposer | None = None,
        assembler: ImageAssembler | None = None,
        base_layers: Sequence[PathTree] = (),
    ) -> None:
        self.config = config
        self.fetcher = fetcher
        self.renderer = renderer or TemplateRenderer()
        self.composer = composer or PathComposer()
        self.assembler = assembler or ImageAssembler(
            config.scratch_path,
            service_account=config.service_account,
            config_dir=CONF_DIR,
        )
        layers = list(base_layers)
        if not layers and config.base_root is not None:
            layers.append(PathComposer.from_directory(config.base_root, name="base-system"))
        self.base_layers = layers
        self._base_nodes: dict[str, FileNode | SymlinkNode | DirectoryNode] = {}
        for layer in layers:
            self._base_nodes.update(layer.nodes)

    # ------------------------------------------------------------------
    # Planning (no I/O)
    # ------------------------------------------------------------------

    def artifact_specs(self, descriptor: VersionDescriptor) -> list[ArtifactSpec]:
        """The four upstream binaries for *descriptor*, in fetch order."""
        base = f"{self.config.release_url_base.rstrip('/')}/{descriptor.version}"
        return [
            ArtifactSpec(
                name="libfdb_c",
                version=descriptor.version,
                url=f"{base}/libfdb_c.x86_64.so",
                expected_hash=descriptor.client_artifact_hash,
                filename="libfdb_c.so",
                kind=ArtifactKind.LIBRARY,
            ),
            ArtifactSpec(
                name="fdbmonitor",
                version=descriptor.version,
                url=f"{base}/fdbmonitor.x86_64",
                expected_hash=descriptor.monitor_artifact_hash,
                filename="fdbmonitor",
            ),
            ArtifactSpec(
                name="fdbserver",
                version=descriptor.version,
                url=f"{base}/fdbserver.x86_64",
                expected_hash=descriptor.server_artifact_hash,
                filename="fdbserver",
            ),
            ArtifactSpec(
                name="fdbcli",
                version=descriptor.version,
                url=f"{base}/fdbcli.x86_64",
                expected_hash=descriptor.cli_artifact_hash,
                filename="fdbcli",
            ),
        ]

    def template_params(self, descriptor: VersionDescriptor) -> dict[str, str]:
        """Parameters for every template, overridable per descriptor."""
        account = self.config.service_account
        runner = self.config.runner
        params = {
            "service_user": account.user,
            "service_group": account.group,
            "service_uid": str(account.uid),
            "service_gid": str(account.gid),
            "runner_user": runner.user,
            "runner_group": runner.group,
            "runner_uid": str(runner.uid),
            "runner_gid": str(runner.gid),
            "cluster_file": CLUSTER_FILE,
            "port": str(self.config.listen_port),
            "systemd": self.config.systemd_prefix,
            "sysinit_target_name": "sysinit.target",
            "systemd_journald_service_name": "systemd-journald.service",
            "systemd_journald_socket_name": "systemd-journald.socket",
            "halt_service_name": "halt.service",
        }
        params.update(descriptor.params())
        return params

    @staticmethod
    def python_binding_version(descriptor: VersionDescriptor) -> str:
        """Python binding release the oracle installs; defaults to the server version."""
        return descriptor.template_params.get(PYTHON_BINDING_PARAM, descriptor.version)

    def post_placement(self) -> PostPlacementScript:
        runner = self.config.runner
        account = self.config.service_account
        home = f"/home/{runner.user}"
        return PostPlacementScript(
            operations=[
                MakeDirectory(path="/tmp", mode=0o1777),
                MakeDirectory(path="/usr/bin"),
                *self._env_link(),
                Touch(path="/etc/machine-id"),
                MakeDirectory(path="/var"),
                Symlink(path="/var/run", target="/run"),
                MakeDirectory(path=f"{home}/fdb"),
                ChangeOwner(path=home, user=runner.user, group=runner.group, recursive=True),
                MakeDirectory(path=f"{FDB_ROOT}/log"),
                MakeDirectory(path=f"{FDB_ROOT}/data"),
                ChangeOwner(path=CONF_DIR, user=account.user, group=account.group, recursive=True),
                ChangeMode(path=CLUSTER_FILE, mode=0o644),
                ChangeOwner(path=f"{FDB_ROOT}/data", user=account.user, group=account.group),
                ChangeOwner(path=f"{FDB_ROOT}/log", user=account.user, group=account.group),
                *[EnableService(unit=unit) for unit in ENABLED_SERVICES],
            ]
        )

    def plan(self, descriptor: VersionDescriptor) -> BuildPlan:
        templates = {
            **IDENTITY_TEMPLATES,
            **SYSTEMD_UNIT_TEMPLATES,
            **CONFIG_TEMPLATES,
            **DB_UNIT_TEMPLATES,
        }
        return BuildPlan(
            version=descriptor.version,
            image_name=self.image_name(descriptor),
            artifacts=self.artifact_specs(descriptor),
            templates=templates,
            layers=[layer.name for layer in self.base_layers]
            + ["base-identity", "init-system", "fdb-client-lib", "fdb-apps", "fdb-config", "fdb-units"],
            post_placement=self.post_placement(),
            init_command=[INIT_PATH],
        )

    @staticmethod
    def image_name(descriptor: VersionDescriptor) -> str:
        return f"fdb-{descriptor.slug}"

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        descriptor: VersionDescriptor,
        *,
        on_stage: StageCallback | None = None,
    ) -> tuple[Image, TestShellEnvironment]:
        """Run every stage for *descriptor* and return the image and shell env.

        *on_stage* is called as each stage starts, so callers can attribute
        a failure to the stage that raised it.
        """
        notify = on_stage or (lambda stage: None)
        plan = self.plan(descriptor)

        notify(BuildStage.FETCH)
        fetched = {spec.name: self.fetcher.fetch_artifact(spec) for spec in plan.artifacts}

        notify(BuildStage.PATCH)
        binaries = {name: self._patch(meta.spec, data) for name, (meta, data) in fetched.items()}

        notify(BuildStage.RENDER)
        params = self.template_params(descriptor)
        rendered = {
            path: self._render(source, params) for path, source in plan.templates.items()
        }

        notify(BuildStage.COMPOSE)
        layers = self._compose(descriptor, binaries, rendered)

        notify(BuildStage.ASSEMBLE)
        image = self.assembler.assemble(
            self.base_layers + layers,
            plan.init_command,
            {"PATH": "/usr/bin:/bin", "FDB_CLUSTER_FILE": CLUSTER_FILE},
            plan.post_placement,
            name=plan.image_name,
            version=descriptor.version,
            publish_dir=self.config.images_path,
            listen_ports=[self.config.listen_port],
            cluster_file_path=CLUSTER_FILE,
        )
        return image, self.shell_environment(descriptor, image)

    def shell_environment(
        self, descriptor: VersionDescriptor, image: Image
    ) -> TestShellEnvironment:
        """Environment of the shell the client test suite runs in for *descriptor*."""
        workspace_cluster_file = f"/home/{self.config.runner.user}/fdb.cluster"
        return TestShellEnvironment(
            version=descriptor.version,
            image_tag=image.tag,
            variables={
                "LD_LIBRARY_PATH": CLIENT_LIB_DIR,
                "FDB_CLUSTER_FILE": workspace_cluster_file,
            },
            oracle_requirement=f"foundationdb=={self.python_binding_version(descriptor)}",
            setup_commands=[f"cp {image.cluster_file_path} {workspace_cluster_file}"],
        )

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    def _base_resolve(self, path: str) -> str:
        def link_target(candidate: str) -> str | None:
            node = self._base_nodes.get(candidate)
            return node.target if isinstance(node, SymlinkNode) else None

        return resolve_symlinks(link_target, path)

    def _base_provides(self, path: str) -> bool:
        """Whether the base layers place *path*, following symlinked parents."""
        return self._base_resolve(path) in self._base_nodes

    def _env_link(self) -> list[Symlink]:
        # Merged-usr bases already reach /usr/bin/env through /bin.
        if self._base_provides(ENV_PATH) and not self._base_provides(USR_ENV_PATH):
            return [Symlink(path=USR_ENV_PATH, target=ENV_PATH)]
        return []

    def _patch(self, spec: ArtifactSpec, data: bytes) -> bytes:
        if not spec.patch:
            return data
        info = ElfPatcher.inspect(data)
        patcher = ElfPatcher(
            interpreter=self.config.interpreter if info.interpreter is not None else None,
            runpath=self.config.library_search_path
            if info.runpath is not None or info.rpath is not None
            else None,
        )
        patched = patcher.patch(data)
        logger.debug(
            "Patched %s %s (%s)",
            spec.name,
            spec.version,
            "changed" if patched != data else "unchanged",
        )
        return patched

    def _render(self, source: str, params: dict[str, str]) -> bytes:
        if source in STATIC_TEMPLATES:
            return self.renderer.load(source).encode("utf-8")
        return self.renderer.render(source, params).encode("utf-8")

    def _compose(
        self,
        descriptor: VersionDescriptor,
        binaries: dict[str, bytes],
        rendered: dict[str, bytes],
    ) -> list[PathTree]:
        version = descriptor.version
        specs = {spec.name: spec for spec in self.artifact_specs(descriptor)}

        def artifact(name: str) -> FileNode:
            return FileNode(data=binaries[name], mode=specs[name].mode)

        identity_entries = [
            PathEntry(path=path, node=FileNode(data=rendered[path]))
            for path in IDENTITY_TEMPLATES
        ]
        identity_entries.append(PathEntry(path="/var/empty", node=DirectoryNode(mode=0o555)))

        init_entries = [
            PathEntry(path=path, node=FileNode(data=rendered[path]))
            for path in SYSTEMD_UNIT_TEMPLATES
        ]
        # On a merged-usr base the fallback link would point at itself.
        if not self._base_provides(INIT_PATH) and self._base_resolve(INIT_PATH) != INIT_TARGET:
            init_entries.append(PathEntry(path=INIT_PATH, node=SymlinkNode(target=INIT_TARGET)))

        client_lib = self.composer.compose(
            [
                PathEntry(
                    path=f"{CLIENT_LIB_DIR}/libfdb_c.so",
                    node=artifact("libfdb_c"),
                    version=version,
                )
            ],
            PlacementPolicy.UNVERSIONED,
            name="fdb-client-lib",
        )
        apps = self.composer.compose(
            [
                PathEntry(
                    path=f"{FDB_ROOT}/client-lib-dir/libfdb_c.so",
                    node=artifact("libfdb_c"),
                    version=version,
                ),
                PathEntry(path=f"{FDB_ROOT}/monitor/fdbmonitor", node=artifact("fdbmonitor")),
                PathEntry(
                    path=f"{FDB_ROOT}/server/fdbserver",
                    node=artifact("fdbserver"),
                    version=version,
                    version_style=VersionStyle.DIRECTORY,
                ),
                PathEntry(
                    path=f"{FDB_ROOT}/cli/fdbcli",
                    node=artifact("fdbcli"),
                    version=version,
                    version_style=VersionStyle.DIRECTORY,
                ),
            ],
            PlacementPolicy.VERSIONED_ONLY,
            name="fdb-apps",
        )
        return [
            self.composer.compose(identity_entries, name="base-identity"),
            self.composer.compose(init_entries, name="init-system"),
            client_lib,
            apps,
            self.composer.compose(
                [PathEntry(path=path, node=FileNode(data=rendered[path])) for path in CONFIG_TEMPLATES],
                name="fdb-config",
            ),
            self.composer.compose(
                [PathEntry(path=path, node=FileNode(data=rendered[path])) for path in DB_UNIT_TEMPLATES],
                name="fdb-units",
            ),
        ]
