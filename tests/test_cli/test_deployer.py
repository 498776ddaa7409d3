"""Tests for the client-side deploy orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING

import pytest

from backend.services.archive_service import iter_archive_entries
from backend.services.snapshot_service import fingerprint_directory
from cli import deployer as deployer_module
from cli.deployer import Deployer, UploadReceipt
from cli.tracking import SnapshotStore

if TYPE_CHECKING:
    from pathlib import Path

    from backend.services.snapshot_service import Snapshot


@dataclass
class Upload:
    kind: str
    site: str
    message: str
    files: dict[str, bytes]
    deleted: list[str] = field(default_factory=list)


class FakeTransport:
    """Records uploads instead of sending them."""

    def __init__(self, fail: bool = False) -> None:
        self.uploads: list[Upload] = []
        self.fail = fail

    def _read(self, archive: IO[bytes]) -> dict[str, bytes]:
        return {e.path: e.data or b"" for e in iter_archive_entries(archive) if not e.is_dir}

    def upload_full(self, site: str, message: str, archive: IO[bytes]) -> UploadReceipt:
        if self.fail:
            raise ConnectionError("server unreachable")
        self.uploads.append(Upload("full", site, message, self._read(archive)))
        return UploadReceipt(version="a" * 40)

    def upload_incremental(
        self, site: str, message: str, archive: IO[bytes], deleted: list[str]
    ) -> UploadReceipt:
        if self.fail:
            raise ConnectionError("server unreachable")
        self.uploads.append(Upload("incremental", site, message, self._read(archive), deleted))
        return UploadReceipt(version="b" * 40, warnings=["history not recorded"])


@pytest.fixture
def local_site(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_text("home")
    (root / "css" / "a.css").write_text("a")
    (root / ".env").write_text("secret")
    return root


@pytest.fixture
def store(tmp_path: Path) -> SnapshotStore:
    return SnapshotStore(tmp_path / "tracking")


class TestDeployer:
    def test_first_deploy_is_full(self, store: SnapshotStore, local_site: Path) -> None:
        transport = FakeTransport()
        summary = Deployer(store, transport).deploy("blog", local_site, "first")
        assert summary.mode == "full"
        assert summary.added == ["css/a.css", "index.html"]
        assert summary.version == "a" * 40
        assert transport.uploads[0].files == {"css/a.css": b"a", "index.html": b"home"}
        assert store.load("blog") is not None

    def test_second_deploy_sends_only_changes(self, store: SnapshotStore, local_site: Path) -> None:
        transport = FakeTransport()
        deployer = Deployer(store, transport)
        deployer.deploy("blog", local_site, "first")

        (local_site / "index.html").write_text("home v2")
        (local_site / "css" / "a.css").unlink()
        (local_site / "new.html").write_text("new")
        summary = deployer.deploy("blog", local_site, "second")

        assert summary.mode == "incremental"
        assert summary.added == ["new.html"]
        assert summary.modified == ["index.html"]
        assert summary.deleted == ["css/a.css"]
        assert summary.changed == 3
        assert summary.warnings == ["history not recorded"]
        upload = transport.uploads[1]
        assert upload.files == {"index.html": b"home v2", "new.html": b"new"}
        assert upload.deleted == ["css/a.css"]

    def test_no_changes_is_noop(self, store: SnapshotStore, local_site: Path) -> None:
        transport = FakeTransport()
        deployer = Deployer(store, transport)
        deployer.deploy("blog", local_site, "first")
        (local_site / "index.html").touch()
        summary = deployer.deploy("blog", local_site, "again")
        assert summary.mode == "noop"
        assert len(transport.uploads) == 1

    def test_forced_full_ignores_tracking(self, store: SnapshotStore, local_site: Path) -> None:
        transport = FakeTransport()
        deployer = Deployer(store, transport)
        deployer.deploy("blog", local_site, "first")
        summary = deployer.deploy("blog", local_site, "again", mode="full")
        assert summary.mode == "full"
        assert [u.kind for u in transport.uploads] == ["full", "full"]

    def test_incremental_without_tracking_falls_back(
        self, store: SnapshotStore, local_site: Path
    ) -> None:
        transport = FakeTransport()
        summary = Deployer(store, transport).deploy(
            "blog", local_site, "first", mode="incremental"
        )
        assert summary.mode == "full"
        assert transport.uploads[0].kind == "full"

    def test_failed_upload_keeps_previous_tracking(
        self, store: SnapshotStore, local_site: Path
    ) -> None:
        Deployer(store, FakeTransport()).deploy("blog", local_site, "first")
        before = store.load("blog")
        (local_site / "index.html").write_text("changed")

        with pytest.raises(ConnectionError):
            Deployer(store, FakeTransport(fail=True)).deploy("blog", local_site, "second")
        after = store.load("blog")
        assert before is not None and after is not None
        assert after.files == before.files

        transport = FakeTransport()
        summary = Deployer(store, transport).deploy("blog", local_site, "retry")
        assert summary.modified == ["index.html"]

    @pytest.mark.parametrize("raw", [b"garbage", b"\xff\xfe not utf-8"])
    def test_corrupt_tracking_triggers_full_deploy(
        self, store: SnapshotStore, local_site: Path, raw: bytes
    ) -> None:
        store.tracking_dir.mkdir(parents=True)
        store.path_for("blog").write_bytes(raw)
        transport = FakeTransport()
        summary = Deployer(store, transport).deploy("blog", local_site, "first")
        assert summary.mode == "full"

    def test_empty_directory_first_deploy(self, store: SnapshotStore, tmp_path: Path) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()
        transport = FakeTransport()
        summary = Deployer(store, transport).deploy("blog", empty, "first")
        assert summary.mode == "full"
        assert transport.uploads[0].files == {}

    def test_file_vanishing_before_full_pack_aborts(
        self, store: SnapshotStore, local_site: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fingerprint_then_delete(root: Path) -> Snapshot:
            snapshot = fingerprint_directory(root)
            (root / "css" / "a.css").unlink()
            return snapshot

        monkeypatch.setattr(deployer_module, "fingerprint_directory", fingerprint_then_delete)
        transport = FakeTransport()
        with pytest.raises(FileNotFoundError, match="css/a.css"):
            Deployer(store, transport).deploy("blog", local_site, "first")
        assert transport.uploads == []
        assert store.load("blog") is None
