"""Tests for materializing the shadow workspace."""

import os
import tempfile
from pathlib import Path

import pytest

from shadow_watch import MirrorDecision, MirrorSetupError, RuleSet, ShadowMirror


def _tree(root: Path) -> dict:
    """Relative path -> file content (None for dirs), not following links."""
    out = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            p = Path(dirpath) / name
            rel = p.relative_to(root).as_posix()
            if p.is_symlink():
                out[rel] = "->link"
            elif p.is_dir():
                out[rel] = None
            else:
                out[rel] = p.read_text()
    return out


class TestInitialize:
    """Tests for ShadowMirror.initialize(dry_run=False)."""

    def test_mirror_matches_source_except_heavy_and_excluded(self, project, shadow_root):
        mirror = ShadowMirror(project, mirror_root=shadow_root)
        mirror.initialize(False)

        assert (shadow_root / "a.txt").read_text() == "alpha"
        assert (shadow_root / "src" / "main.py").read_text() == "print('hi')\n"
        assert (shadow_root / "docs" / "readme.md").read_text() == "# Docs\n"

        expected = {k: v for k, v in _tree(project).items() if not k.startswith("node_modules")}
        expected.pop(".env")
        expected["node_modules"] = "->link"
        assert _tree(shadow_root) == expected

    def test_env_file_is_not_mirrored(self, project, shadow_root):
        assert (project / ".env").read_text() == "SECRET=1"
        ShadowMirror(project, mirror_root=shadow_root).initialize(False)
        assert not (shadow_root / ".env").exists()

    def test_heavy_directory_is_linked_not_copied(self, project, shadow_root):
        ShadowMirror(project, mirror_root=shadow_root).initialize(False)

        link = shadow_root / "node_modules"
        assert link.is_symlink()
        assert Path(os.readlink(link)) == project.resolve() / "node_modules"
        assert (link / "pkg" / "index.js").read_text() == "module.exports = 1;\n"

    def test_heavy_link_wins_over_exclusion(self, project, shadow_root):
        (project / ".gitignore").write_text("node_modules/\n")
        ShadowMirror(project, mirror_root=shadow_root).initialize(False)
        assert (shadow_root / "node_modules").is_symlink()

    def test_nested_heavy_directory_is_linked(self, project, shadow_root):
        nested = project / "packages" / "web" / "dist"
        nested.mkdir(parents=True)
        (nested / "bundle.js").write_text("x")

        ShadowMirror(project, mirror_root=shadow_root).initialize(False)

        assert (shadow_root / "packages" / "web").is_dir()
        assert (shadow_root / "packages" / "web" / "dist").is_symlink()

    def test_excluded_directory_is_skipped(self, project, shadow_root):
        (project / ".gitignore").write_text("logs/\n")
        (project / "logs").mkdir()
        (project / "logs" / "today.txt").write_text("x")

        ShadowMirror(project, mirror_root=shadow_root).initialize(False)

        assert not (shadow_root / "logs").exists()
        assert (shadow_root / ".gitignore").exists()

    def test_file_metadata_is_preserved(self, project, shadow_root):
        os.utime(project / "a.txt", (1_600_000_000, 1_600_000_000))
        ShadowMirror(project, mirror_root=shadow_root).initialize(False)
        assert int((shadow_root / "a.txt").stat().st_mtime) == 1_600_000_000

    def test_broken_symlink_is_skipped(self, project, shadow_root):
        os.symlink(project / "missing", project / "dangling")
        ShadowMirror(project, mirror_root=shadow_root).initialize(False)
        assert not os.path.lexists(shadow_root / "dangling")
        assert (shadow_root / "a.txt").exists()

    def test_symlink_loop_is_not_followed(self, project, shadow_root):
        os.symlink(project / "src", project / "src" / "loop")
        decisions = ShadowMirror(project, mirror_root=shadow_root).initialize(False)
        assert all("loop/" not in d.rel_path for d in decisions)
        assert (shadow_root / "src" / "main.py").exists()

    def test_extra_heavy_directory(self, project, shadow_root):
        (project / "assets").mkdir()
        (project / "assets" / "big.bin").write_text("0" * 64)
        rules = RuleSet(project, heavy_dirs=["assets"])

        ShadowMirror(project, rules=rules, mirror_root=shadow_root).initialize(False)

        assert (shadow_root / "assets").is_symlink()

    def test_mirror_root_creation_failure_is_fatal(self, project, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        mirror = ShadowMirror(project, mirror_root=blocker / "shadow")

        with pytest.raises(MirrorSetupError, match="Could not create shadow workspace"):
            mirror.initialize(False)


class TestDryRun:
    """Dry runs compute decisions without touching the disk."""

    def test_dry_run_creates_nothing(self, project, shadow_root):
        ShadowMirror(project, mirror_root=shadow_root).initialize(dry_run=True)
        assert not shadow_root.exists()

    def test_dry_run_reports_priority_decisions(self, project, shadow_root):
        decisions = ShadowMirror(project, mirror_root=shadow_root).initialize(dry_run=True)

        assert MirrorDecision("LINK", "node_modules") in decisions
        assert MirrorDecision("IGNORED", ".env") in decisions
        assert MirrorDecision("DIR", "src") in decisions
        assert MirrorDecision("FILE", "src/main.py") in decisions
        assert not any(d.rel_path.startswith("node_modules/") for d in decisions)

    def test_dry_run_logs_decisions(self, project, shadow_root, caplog):
        with caplog.at_level("INFO", logger="shadow_watch"):
            ShadowMirror(project, mirror_root=shadow_root).initialize(dry_run=True)
        assert "DRY RUN" in caplog.text
        assert "IGNORED | .env" in caplog.text


class TestCleanup:
    def test_cleanup_removes_mirror_but_not_linked_content(self, mirror, project, shadow_root):
        mirror.cleanup()
        assert not shadow_root.exists()
        assert (project / "node_modules" / "pkg" / "index.js").exists()
        assert (project / "a.txt").exists()

    def test_cleanup_without_mirror_is_noop(self, project, shadow_root):
        ShadowMirror(project, mirror_root=shadow_root).cleanup()
        assert not shadow_root.exists()

    def test_cleanup_failure_is_logged_not_raised(self, mirror, monkeypatch, caplog):
        def boom(path):
            raise PermissionError(13, "denied")

        monkeypatch.setattr("shadow_watch.remove_path", boom)
        with caplog.at_level("ERROR", logger="shadow_watch"):
            mirror.cleanup()
        assert "Failed to clean up shadow workspace" in caplog.text


class TestMirrorNaming:
    def test_default_mirror_root_is_in_tempdir(self, project):
        mirror = ShadowMirror(project)
        path = mirror.get_mirror_path()
        assert path.parent == Path(tempfile.gettempdir()).resolve()
        assert path.name.startswith("shadow-project-")
        assert not path.exists()
