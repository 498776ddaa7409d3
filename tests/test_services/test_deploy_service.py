"""Tests for server-side deploy application."""

from __future__ import annotations

import io
import tarfile
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from backend.exceptions import SiteNotFoundError, UnsafeArchivePathError, VersionControlError
from backend.services.archive_service import iter_archive_entries, pack_archive
from backend.services.deploy_service import SiteDeployer, safe_upload_name
from backend.services.version_service import GitBackend, VersionStore
from tests.conftest import requires_git

if TYPE_CHECKING:
    from pathlib import Path


def _tar_with(entries: dict[str, bytes]) -> io.BytesIO:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    buf.seek(0)
    return buf


def _tree(root: Path) -> dict[str, str]:
    return {
        p.relative_to(root).as_posix(): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file() and ".git" not in p.relative_to(root).parts
    }


@pytest.fixture
def versioned(tmp_web_root: Path) -> SiteDeployer:
    (tmp_web_root / "blog").mkdir()
    store = VersionStore(tmp_web_root)
    store.init("blog")
    return SiteDeployer(tmp_web_root, store)


@pytest.fixture
def unversioned(tmp_web_root: Path) -> SiteDeployer:
    (tmp_web_root / "blog").mkdir()
    return SiteDeployer(tmp_web_root)


class TestSafeUploadName:
    @pytest.mark.parametrize(
        ("filename", "expected"),
        [
            (None, "index.html"),
            ("", "index.html"),
            ("page.html", "page.html"),
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\site.html", "site.html"),
        ],
    )
    def test_basename(self, filename: str | None, expected: str) -> None:
        assert safe_upload_name(filename) == expected

    def test_hidden_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            safe_upload_name(".htaccess")


class TestUnversioned:
    def test_full_deploy_replaces_tree(self, unversioned: SiteDeployer) -> None:
        site = unversioned.site_dir("blog")
        (site / "stale.html").write_text("stale")
        result = unversioned.deploy_full(
            "blog", _tar_with({"index.html": b"home", "css/a.css": b"a"}), "Full deploy"
        )
        assert result.mode == "full"
        assert result.files_written == 2
        assert result.version is None
        assert _tree(site) == {"index.html": "home", "css/a.css": "a"}

    def test_incremental_deploy(self, unversioned: SiteDeployer) -> None:
        site = unversioned.site_dir("blog")
        (site / "keep.html").write_text("keep")
        (site / "old").mkdir()
        (site / "old" / "gone.html").write_text("gone")
        result = unversioned.deploy_incremental(
            "blog", _tar_with({"new.html": b"new"}), ["old/gone.html"], "Incremental deploy"
        )
        assert result.files_written == 1
        assert result.files_deleted == 1
        assert _tree(site) == {"keep.html": "keep", "new.html": "new"}
        assert not (site / "old").exists()

    def test_incremental_rejects_escaping_delete(
        self, unversioned: SiteDeployer, tmp_web_root: Path
    ) -> None:
        (tmp_web_root / "victim.txt").write_text("safe")
        site = unversioned.site_dir("blog")
        (site / "keep.html").write_text("keep")
        with pytest.raises(UnsafeArchivePathError):
            unversioned.deploy_incremental(
                "blog", _tar_with({"new.html": b"new"}), ["../victim.txt"], "deploy"
            )
        assert (tmp_web_root / "victim.txt").exists()
        assert _tree(site) == {"keep.html": "keep"}

    def test_single_file_replaces_site(self, unversioned: SiteDeployer) -> None:
        site = unversioned.site_dir("blog")
        (site / "a.html").write_text("a")
        result = unversioned.deploy_single_file(
            "blog", "landing.html", io.BytesIO(b"hello"), "Deploy single file"
        )
        assert result.mode == "single"
        assert _tree(site) == {"landing.html": "hello"}

    def test_missing_site(self, unversioned: SiteDeployer) -> None:
        with pytest.raises(SiteNotFoundError):
            unversioned.deploy_full("nope", _tar_with({"a": b"a"}), "deploy")

    def test_export_excludes_history(self, unversioned: SiteDeployer) -> None:
        site = unversioned.site_dir("blog")
        (site / "index.html").write_text("home")
        (site / ".git").mkdir()
        (site / ".git" / "HEAD").write_text("ref")
        spool, stats = unversioned.export("blog")
        with spool:
            names = [e.path for e in iter_archive_entries(spool)]
        assert names == ["index.html"]
        assert stats.files == 1


@requires_git
class TestVersioned:
    def test_each_deploy_records_a_version(self, versioned: SiteDeployer) -> None:
        first = versioned.deploy_full("blog", _tar_with({"index.html": b"v1"}), "one", "alice")
        second = versioned.deploy_full("blog", _tar_with({"index.html": b"v2"}), "two", "alice")
        assert first.version is not None and second.version is not None
        assert first.version.id != second.version.id
        assert second.version.author == "alice"
        assert versioned.version_store is not None
        assert [v.message for v in versioned.version_store.list("blog")] == ["two", "one"]

    def test_full_deploy_keeps_history_dir(self, versioned: SiteDeployer) -> None:
        versioned.deploy_full("blog", _tar_with({"index.html": b"v1"}), "one")
        assert (versioned.site_dir("blog") / ".git").is_dir()

    def test_identical_deploy_records_nothing(self, versioned: SiteDeployer) -> None:
        versioned.deploy_full("blog", _tar_with({"index.html": b"v1"}), "one")
        again = versioned.deploy_full("blog", _tar_with({"index.html": b"v1"}), "again")
        assert again.version is None
        assert again.warnings == []

    def test_unsafe_archive_leaves_tree_and_history(self, versioned: SiteDeployer) -> None:
        versioned.deploy_full("blog", _tar_with({"index.html": b"v1"}), "one")
        with pytest.raises(UnsafeArchivePathError):
            versioned.deploy_full("blog", _tar_with({"../evil.html": b"x"}), "bad")
        assert _tree(versioned.site_dir("blog")) == {"index.html": "v1"}
        assert versioned.version_store is not None
        assert len(versioned.version_store.list("blog")) == 1

    def test_failed_apply_restores_last_version(self, versioned: SiteDeployer) -> None:
        versioned.deploy_full(
            "blog", _tar_with({"index.html": b"v1", "about.html": b"about"}), "one"
        )

        def explode(fileobj: object, dest: Path) -> None:
            (dest / "partial.html").write_text("partial")
            raise OSError("disk full")

        with (
            patch("backend.services.deploy_service.unpack_archive", side_effect=explode),
            pytest.raises(OSError, match="disk full"),
        ):
            versioned.deploy_full("blog", _tar_with({"index.html": b"v2"}), "two")
        assert _tree(versioned.site_dir("blog")) == {"index.html": "v1", "about.html": "about"}

    def test_commit_failure_keeps_content_live(self, versioned: SiteDeployer) -> None:
        with patch.object(GitBackend, "commit", side_effect=VersionControlError("locked")):
            result = versioned.deploy_full("blog", _tar_with({"index.html": b"v1"}), "one")
        assert result.version is None
        assert len(result.warnings) == 1
        assert (versioned.site_dir("blog") / "index.html").read_text() == "v1"

    def test_client_packed_tree_round_trips(self, versioned: SiteDeployer, tmp_path: Path) -> None:
        local = tmp_path / "local"
        (local / "posts").mkdir(parents=True)
        (local / "index.html").write_text("home")
        (local / "posts" / "p1.html").write_text("p1")
        buf = io.BytesIO()
        pack_archive(local, buf)
        buf.seek(0)
        versioned.deploy_full("blog", buf, "Full deploy")
        assert _tree(versioned.site_dir("blog")) == _tree(local)
