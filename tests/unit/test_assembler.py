"""Tests for the Image Assembler — ordered merge, post-placement, validation, publish."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest

from matrixforge.core.assembler import ImageAssembler
from matrixforge.core.errors import (
    AssembleError,
    InitEntryPointError,
    LayerConflict,
    PostPlacementFailure,
    ServiceAccountMismatch,
)
from matrixforge.models.image import ServiceAccount
from matrixforge.models.paths import DirectoryNode, FileNode, PathTree, SymlinkNode
from matrixforge.models.placement import (
    ChangeMode,
    ChangeOwner,
    EnableService,
    MakeDirectory,
    PostPlacementScript,
    Symlink,
    Touch,
)

INIT = ["/sbin/init"]
PASSWD = b"root:x:0:0::/root:/bin/sh\nfdb:x:4059:4059::/var/empty:/bin/sh\nrunner:x:1001:121::/home/runner:/bin/sh\n"
GROUP = b"root:x:0:\nfdb:x:4059:\ndocker:x:121:\n"


def tree(name: str, **nodes: FileNode | SymlinkNode | DirectoryNode) -> PathTree:
    """Build a layer; keyword names use '__' for '/' (``etc__x`` -> ``/etc/x``)."""
    return PathTree(name=name, nodes={"/" + k.replace("__", "/"): v for k, v in nodes.items()})


@pytest.fixture
def base() -> PathTree:
    return tree(
        "base",
        sbin__init=FileNode(data=b"#!init", mode=0o755),
        etc__passwd=FileNode(data=PASSWD),
        etc__group=FileNode(data=GROUP),
    )


@pytest.fixture
def assembler(tmp_path: Path) -> ImageAssembler:
    return ImageAssembler(tmp_path / "scratch", service_account=None)


class TestMergeOrder:
    def test_last_writer_wins(self, assembler: ImageAssembler, base: PathTree):
        a = tree("A", etc__x=FileNode(data=b"from A"))
        b = tree("B", etc__x=FileNode(data=b"from B"))

        ab = assembler.assemble([base, a, b], INIT, {}, name="img", version="7.1.12")
        ba = assembler.assemble([base, b, a], INIT, {}, name="img", version="7.1.12")

        assert ab.owner_of("/etc/x") == "B"
        assert ba.owner_of("/etc/x") == "A"
        assert ab.manifest["/etc/x"].digest != ba.manifest["/etc/x"].digest
        assert ab.digest != ba.digest

    def test_overwrite_recorded_and_logged(
        self, assembler: ImageAssembler, base: PathTree, caplog: pytest.LogCaptureFixture
    ):
        a = tree("A", etc__x=FileNode(data=b"a"))
        b = tree("B", etc__x=FileNode(data=b"b"))
        with caplog.at_level(logging.WARNING, logger="matrixforge"):
            image = assembler.assemble([base, a, b], INIT, {}, name="img", version="7.1.12")

        assert [(o.path, o.previous_layer, o.layer) for o in image.overwrites] == [
            ("/etc/x", "A", "B")
        ]
        assert image.overwrites_of("/etc/x")[0].protected is False
        assert any("overwrites /etc/x" in r.getMessage() for r in caplog.records)

    def test_implicit_parent_directories(self, assembler: ImageAssembler, base: PathTree):
        image = assembler.assemble(
            [base, tree("deep", opt__fdb__conf__fdb_cluster=FileNode(data=b"c"))],
            INIT,
            {},
            name="img",
            version="7.1.12",
        )
        assert image.manifest["/opt/fdb"].kind == "directory"
        assert image.owner_of("/opt/fdb") == "deep:implicit"

    def test_file_over_directory_conflicts(self, assembler: ImageAssembler, base: PathTree):
        dirs = tree("dirs", opt__fdb__conf=FileNode(data=b"inside"))
        clash = tree("clash", opt__fdb=FileNode(data=b"not a dir"))
        with pytest.raises(LayerConflict):
            assembler.assemble([base, dirs, clash], INIT, {}, name="img", version="7.1.12")

    def test_directory_over_directory_updates_mode(self, assembler: ImageAssembler, base: PathTree):
        a = tree("A", var__empty=DirectoryNode(mode=0o755))
        b = tree("B", var__empty=DirectoryNode(mode=0o555))
        image = assembler.assemble([base, a, b], INIT, {}, name="img", version="7.1.12")
        assert image.manifest["/var/empty"].mode == 0o555
        assert image.overwrites == []

    def test_layers_recorded_in_order(self, assembler: ImageAssembler, base: PathTree):
        image = assembler.assemble(
            [base, tree("A"), tree("B")], INIT, {}, name="img", version="7.1.12"
        )
        assert image.layers == ["base", "A", "B"]


class TestPostPlacement:
    def _assemble(self, assembler: ImageAssembler, layers: list[PathTree], ops: list) -> object:
        return assembler.assemble(
            layers, INIT, {}, PostPlacementScript(operations=ops), name="img", version="7.1.12"
        )

    def test_directory_owner_mode(self, assembler: ImageAssembler, base: PathTree):
        image = self._assemble(
            assembler,
            [base],
            [
                MakeDirectory(path="/tmp", mode=0o1777),
                MakeDirectory(path="/opt/fdb/data"),
                ChangeOwner(path="/opt/fdb", user="fdb", group="fdb", recursive=True),
                ChangeMode(path="/opt/fdb/data", mode=0o700),
            ],
        )
        assert image.manifest["/tmp"].mode == 0o1777
        assert image.manifest["/opt/fdb/data"].mode == 0o700
        assert (image.manifest["/opt/fdb/data"].uid, image.manifest["/opt/fdb/data"].gid) == (4059, 4059)
        assert image.owner_of("/tmp") == "post-placement"

    def test_non_recursive_chown(self, assembler: ImageAssembler, base: PathTree):
        image = self._assemble(
            assembler,
            [base],
            [MakeDirectory(path="/home/runner/fdb"), ChangeOwner(path="/home/runner", user="runner", group="docker")],
        )
        assert image.manifest["/home/runner"].uid == 1001
        assert image.manifest["/home/runner/fdb"].uid == 0

    def test_numeric_ids(self, assembler: ImageAssembler, base: PathTree):
        image = self._assemble(
            assembler, [base], [MakeDirectory(path="/srv"), ChangeOwner(path="/srv", user="7", group="8")]
        )
        assert (image.manifest["/srv"].uid, image.manifest["/srv"].gid) == (7, 8)

    def test_touch_and_symlink(self, assembler: ImageAssembler, base: PathTree):
        image = self._assemble(
            assembler,
            [base],
            [
                Touch(path="/etc/machine-id"),
                MakeDirectory(path="/var"),
                Symlink(path="/var/run", target="/run"),
            ],
        )
        assert image.manifest["/etc/machine-id"].size_bytes == 0
        assert image.manifest["/var/run"].target == "/run"

    def test_enable_service_follows_wanted_by(self, assembler: ImageAssembler, base: PathTree):
        unit = b"[Unit]\nDescription=x\n\n[Install]\nWantedBy=multi-user.target\n"
        units = tree("units", etc__systemd__system__fdb_service=FileNode(data=unit))
        image = self._assemble(assembler, [base, units], [EnableService(unit="fdb_service")])
        link = image.manifest["/etc/systemd/system/multi-user.target.wants/fdb_service"]
        assert link.kind == "symlink"
        assert link.target == "/etc/systemd/system/fdb_service"
        assert image.enabled_services == ["fdb_service"]

    def test_enable_service_defaults_to_default_target(self, assembler: ImageAssembler, base: PathTree):
        units = tree("units", etc__systemd__system__x_service=FileNode(data=b"[Service]\nType=simple\n"))
        image = self._assemble(assembler, [base, units], [EnableService(unit="x_service")])
        assert "/etc/systemd/system/default.target.wants/x_service" in image.manifest

    @pytest.mark.parametrize(
        "op",
        [
            ChangeOwner(path="/etc/passwd", user="nobody-here", group="fdb"),
            ChangeOwner(path="/etc/passwd", user="fdb", group="nogroup"),
            ChangeOwner(path="/absent", user="fdb", group="fdb"),
            ChangeMode(path="/absent", mode=0o644),
            Symlink(path="/etc/passwd", target="/dev/null"),
            Symlink(path="/nope/link", target="/x"),
            Touch(path="/etc"),
            MakeDirectory(path="/etc/passwd/sub"),
            EnableService(unit="missing.service"),
        ],
    )
    def test_failures(self, assembler: ImageAssembler, base: PathTree, op):
        with pytest.raises(PostPlacementFailure):
            self._assemble(assembler, [base], [op])

    def test_failure_publishes_nothing(self, tmp_path: Path, assembler: ImageAssembler, base: PathTree):
        publish = tmp_path / "images"
        with pytest.raises(PostPlacementFailure):
            assembler.assemble(
                [base],
                INIT,
                {},
                [ChangeMode(path="/absent", mode=0o644)],
                name="img",
                version="7.1.12",
                publish_dir=publish,
            )
        assert not publish.exists() or list(publish.iterdir()) == []


class TestValidation:
    def test_missing_init(self, assembler: ImageAssembler, base: PathTree):
        with pytest.raises(InitEntryPointError):
            assembler.assemble([base], ["/lib/systemd/systemd"], {}, name="img", version="7.1.12")

    def test_empty_init_command(self, assembler: ImageAssembler, base: PathTree):
        with pytest.raises(InitEntryPointError):
            assembler.assemble([base], [], {}, name="img", version="7.1.12")

    def test_non_executable_init(self, assembler: ImageAssembler):
        layer = tree("base", sbin__init=FileNode(data=b"x", mode=0o644))
        with pytest.raises(InitEntryPointError, match="not executable"):
            assembler.assemble([layer], INIT, {}, name="img", version="7.1.12")

    def test_symlink_init_accepted(self, assembler: ImageAssembler):
        layer = tree("base", sbin__init=SymlinkNode(target="/usr/lib/systemd/systemd"))
        image = assembler.assemble([layer], INIT, {}, name="img", version="7.1.12")
        assert image.init_command == INIT


class TestServiceAccount:
    @pytest.fixture
    def strict(self, tmp_path: Path) -> ImageAssembler:
        return ImageAssembler(tmp_path / "scratch", service_account=ServiceAccount(), config_dir="/opt/fdb/conf")

    def _ops(self, user: str = "fdb") -> list:
        return [MakeDirectory(path="/opt/fdb/conf"), ChangeOwner(path="/opt/fdb/conf", user=user, group="fdb")]

    def test_valid(self, strict: ImageAssembler, base: PathTree):
        image = strict.assemble([base], INIT, {}, self._ops(), name="img", version="7.1.12")
        assert image.manifest["/opt/fdb/conf"].uid == 4059

    def test_wrong_uid(self, strict: ImageAssembler, base: PathTree):
        passwd = tree("identity", etc__passwd=FileNode(data=b"fdb:x:1000:4059::/:/bin/sh\n"))
        with pytest.raises(ServiceAccountMismatch, match="uid:gid"):
            strict.assemble([base, passwd], INIT, {}, self._ops(), name="img", version="7.1.12")

    def test_missing_group(self, strict: ImageAssembler, base: PathTree):
        group = tree("identity", etc__group=FileNode(data=b"root:x:0:\n"))
        with pytest.raises(AssembleError):
            strict.assemble([base, group], INIT, {}, self._ops(), name="img", version="7.1.12")

    def test_config_dir_not_owned(self, strict: ImageAssembler, base: PathTree):
        with pytest.raises(ServiceAccountMismatch, match="must be owned"):
            strict.assemble(
                [base], INIT, {}, [MakeDirectory(path="/opt/fdb/conf")], name="img", version="7.1.12"
            )


class TestMaterializeAndPublish:
    def test_scratch_cleaned_up(self, tmp_path: Path, assembler: ImageAssembler, base: PathTree):
        assembler.assemble([base], INIT, {}, name="img", version="7.1.12")
        assert list((tmp_path / "scratch").iterdir()) == []

    def test_scratch_cleaned_up_on_failure(self, tmp_path: Path, assembler: ImageAssembler, base: PathTree):
        with pytest.raises(InitEntryPointError):
            assembler.assemble([base], ["/missing"], {}, name="img", version="7.1.12")
        scratch = tmp_path / "scratch"
        assert not scratch.exists() or list(scratch.iterdir()) == []

    def test_publish(self, tmp_path: Path, assembler: ImageAssembler, base: PathTree):
        layer = tree(
            "extra",
            opt__fdb__client_lib__libfdb_c_so=SymlinkNode(target="libfdb_c.so.7.1.12"),
            var__empty=DirectoryNode(mode=0o555),
        )
        image = assembler.assemble(
            [base, layer],
            INIT,
            {"PATH": "/usr/bin:/bin"},
            name="img",
            version="7.1.12",
            publish_dir=tmp_path / "images",
            listen_ports=[4500],
            cluster_file_path="/opt/fdb/conf/fdb.cluster",
        )
        assert image.published_path == tmp_path / "images" / f"img-{image.digest[:12]}"
        rootfs = image.published_path / "rootfs"
        assert (rootfs / "sbin" / "init").read_bytes() == b"#!init"
        assert os.access(rootfs / "sbin" / "init", os.X_OK)
        assert os.readlink(rootfs / "opt" / "fdb" / "client_lib" / "libfdb_c_so") == "libfdb_c.so.7.1.12"
        assert (rootfs / "var" / "empty").stat().st_mode & 0o777 == 0o555

        manifest = json.loads((image.published_path / "manifest.json").read_text())
        assert manifest["digest"] == image.digest
        assert manifest["listen_ports"] == [4500]
        assert manifest["cluster_file_path"] == "/opt/fdb/conf/fdb.cluster"
        assert "published_path" not in manifest
        assert not list((tmp_path / "images").glob(".incoming-*"))

    def test_republish_is_noop(self, tmp_path: Path, assembler: ImageAssembler, base: PathTree):
        first = assembler.assemble([base], INIT, {}, name="img", version="7.1.12", publish_dir=tmp_path / "images")
        second = assembler.assemble([base], INIT, {}, name="img", version="7.1.12", publish_dir=tmp_path / "images")
        assert first.digest == second.digest
        assert first.published_path == second.published_path
        assert len(list((tmp_path / "images").iterdir())) == 1


class TestSymlinkedAncestors:
    """Merged-usr roots: /lib and /bin are symlinks into /usr."""

    SYSTEMD = ["/lib/systemd/systemd"]

    @pytest.fixture
    def merged_usr(self) -> PathTree:
        return tree(
            "base-system",
            lib=SymlinkNode(target="usr/lib"),
            bin=SymlinkNode(target="usr/bin"),
            usr__lib__systemd__systemd=FileNode(data=b"\x7fELF systemd", mode=0o755),
            usr__bin__env=FileNode(data=b"env", mode=0o755),
        )

    def test_layer_placed_through_symlinked_parent(self, assembler: ImageAssembler, merged_usr: PathTree):
        units = tree("init-system", lib__systemd__system__halt_service=FileNode(data=b"[Unit]\n"))
        image = assembler.assemble([merged_usr, units], self.SYSTEMD, {}, name="img", version="7.1.12")
        assert image.owner_of("/usr/lib/systemd/system/halt_service") == "init-system"
        assert "/lib/systemd" not in image.manifest
        assert image.manifest["/lib"].kind == "symlink"

    def test_overwrite_through_symlink_is_audited(self, assembler: ImageAssembler, merged_usr: PathTree):
        init = tree("init-system", lib__systemd__systemd=FileNode(data=b"other init", mode=0o755))
        image = assembler.assemble([merged_usr, init], self.SYSTEMD, {}, name="img", version="7.1.12")
        assert [o.path for o in image.overwrites] == ["/usr/lib/systemd/systemd"]

    def test_directory_merges_into_link_target(self, assembler: ImageAssembler, merged_usr: PathTree):
        dirs = tree("dirs", lib=DirectoryNode(mode=0o755), lib__modules=DirectoryNode(mode=0o700))
        image = assembler.assemble([merged_usr, dirs], self.SYSTEMD, {}, name="img", version="7.1.12")
        assert image.manifest["/lib"].kind == "symlink"
        assert image.manifest["/usr/lib/modules"].mode == 0o700

    def test_init_behind_symlinked_parent_validated(self, assembler: ImageAssembler, merged_usr: PathTree):
        image = assembler.assemble([merged_usr], self.SYSTEMD, {}, name="img", version="7.1.12")
        assert image.init_command == self.SYSTEMD

    def test_missing_init_behind_symlinked_parent(self, assembler: ImageAssembler):
        layer = tree("base-system", lib=SymlinkNode(target="usr/lib"), usr__lib=DirectoryNode())
        with pytest.raises(InitEntryPointError, match="not in the image"):
            assembler.assemble([layer], self.SYSTEMD, {}, name="img", version="7.1.12")

    def test_post_placement_through_symlinked_parent(self, assembler: ImageAssembler, merged_usr: PathTree):
        image = assembler.assemble(
            [merged_usr],
            self.SYSTEMD,
            {},
            [MakeDirectory(path="/bin"), MakeDirectory(path="/lib/modules"), Touch(path="/bin/marker")],
            name="img",
            version="7.1.12",
        )
        assert image.manifest["/bin"].kind == "symlink"
        assert image.manifest["/usr/lib/modules"].kind == "directory"
        assert image.owner_of("/usr/bin/marker") == "post-placement"

    def test_existing_identical_symlink_kept(self, assembler: ImageAssembler, merged_usr: PathTree):
        run = tree("run", var__run=SymlinkNode(target="/run"))
        image = assembler.assemble(
            [merged_usr, run],
            self.SYSTEMD,
            {},
            [Symlink(path="/var/run", target="/run")],
            name="img",
            version="7.1.12",
        )
        assert image.owner_of("/var/run") == "run"

    def test_symlink_loop_conflicts(self, assembler: ImageAssembler):
        loop = tree("loop", a=SymlinkNode(target="b"), b=SymlinkNode(target="a"))
        inner = tree("inner", a__x=FileNode(data=b"x"))
        with pytest.raises(LayerConflict, match="symbolic links"):
            assembler.assemble([loop, inner], INIT, {}, name="img", version="7.1.12")

    def test_materialized_layout(self, tmp_path: Path, assembler: ImageAssembler, merged_usr: PathTree):
        units = tree("init-system", lib__systemd__system__halt_service=FileNode(data=b"[Unit]\n"))
        image = assembler.assemble(
            [merged_usr, units],
            self.SYSTEMD,
            {},
            name="img",
            version="7.1.12",
            publish_dir=tmp_path / "images",
        )
        rootfs = image.published_path / "rootfs"
        assert os.readlink(rootfs / "lib") == "usr/lib"
        assert (rootfs / "lib" / "systemd" / "system" / "halt_service").read_bytes() == b"[Unit]\n"
