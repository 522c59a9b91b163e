"""Shared fixtures for shadow_watch tests."""

import logging

import pytest

import shadow_watch


@pytest.fixture
def project(tmp_path):
    """A small project tree with a secret, a heavy dir and some sources."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.py").write_text("print('hi')\n")
    (root / "docs").mkdir()
    (root / "docs" / "readme.md").write_text("# Docs\n")
    (root / "a.txt").write_text("alpha")
    (root / ".env").write_text("SECRET=1")
    (root / "node_modules" / "pkg").mkdir(parents=True)
    (root / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1;\n")
    return root


@pytest.fixture
def shadow_root(tmp_path):
    return tmp_path / "shadow"


@pytest.fixture
def mirror(project, shadow_root):
    """A materialized shadow of ``project``."""
    m = shadow_watch.ShadowMirror(project, mirror_root=shadow_root)
    m.initialize(False)
    return m


@pytest.fixture
def clean_logger():
    """Undo setup_logger() so caplog keeps working in later tests."""
    logger = logging.getLogger(shadow_watch.LOGGER_NAME)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
