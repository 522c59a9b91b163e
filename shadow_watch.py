# /shadow_watch.py
"""
Shadow Watch
- Builds a disposable mirror ("shadow workspace") of the current project in the temp dir.
- Keeps project and shadow in sync in both directions while an agent works in the shadow.
- Never lets forbidden paths reach the project:
  - built-in security patterns (.env*, keys, certificates, .git) can never be re-included
  - .gitignore and .shadowignore add more rules (gitignore syntax, negation allowed)
- Heavy directories (node_modules, venv, dist, ...) are symlinked instead of copied.
- Strict mode destroys forbidden files the moment they appear in the shadow.
- Echo suppression: the engine remembers the hash of every file it copies, so the
  opposite watcher's notifications for that content are not bounced back.
- Exposes the shadow path and a reset tool to agents over MCP (stdio).
- Console output is coloured per action; the log file is always plain.

Usage
  pip install watchdog pathspec colorama mcp
  shadow-watch watch [--strict] [--dry-run]
  shadow-watch mcp [--strict]
  shadow-watch init
  shadow-watch status
"""

from __future__ import annotations

import argparse
import datetime as dt
import errno
import hashlib
import json
import logging
import os
import shutil
import signal
import stat
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from colorama import just_fix_windows_console
from mcp.server.fastmcp import FastMCP
from pathspec import PathSpec
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

LOGGER_NAME = "shadow_watch"

APP_DIR = Path.home() / ".shadow_watch"
CONFIG_PATH = APP_DIR / "config.json"
DEFAULT_LOG_DIR = APP_DIR / "logs"

IGNORE_FILE_NAME = ".shadowignore"
GITIGNORE_FILE_NAME = ".gitignore"

LOCK_HOLD_MINUTES = 10

# Always excluded, in both directions. Nothing in .gitignore or .shadowignore can undo these.
SECURITY_PATTERNS = [
    ".env*",
    "*.pem",
    "*.key",
    "id_rsa*",
    "*.pfx",
    "*.p12",
    ".git",
    IGNORE_FILE_NAME,
]

# Directory names that are linked into the shadow instead of copied.
DEFAULT_HEAVY_DIRS = [
    "node_modules",
    ".next",
    "dist",
    "build",
    "target",
    "venv",
    ".venv",
    "vendor",
]

DEFAULT_IGNORE_CONTENT = """# Shadow Watch ignore file
# Patterns here are HIDDEN from the shadow workspace and never synced back.

# Build artifacts (heavy directories are symlinked rather than copied)
node_modules/
.next/
dist/
build/
.cache/

# Environment & secrets (always ignored, listed here for clarity)
.env
.env.local
.env.development.local
.env.test.local
.env.production.local

# Git
.git/

# OS files
.DS_Store
Thumbs.db
"""


class ShadowWatchError(Exception):
    pass


class MirrorSetupError(ShadowWatchError):
    """The shadow workspace could not be created; syncing must not start."""


class ConfigError(ShadowWatchError):
    pass


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    BLUE = "\x1b[34m"
    CYAN = "\x1b[36m"
    MAGENTA = "\x1b[35m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    GRAY = "\x1b[90m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "MKDIR": Ansi.LIGHT_BROWN,
    "LINK": Ansi.LIGHT_BROWN,
    "DELETE": Ansi.ORANGE,
    "DIR": Ansi.BLUE,
    "FILE": Ansi.CYAN,
    "IGNORED": Ansi.RED,
    "BLOCKED": Ansi.RED,
    "INCINERATE": Ansi.RED,
    "PURGE": Ansi.RED,
    "CLEANUP": Ansi.GRAY,
    "STATUS": Ansi.MAGENTA,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = LOGGER_NAME) -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path, stream=None) -> logging.Logger:
    """
    File handler (plain) plus console handler (coloured when a tty).
    In MCP mode pass stream=sys.stderr: stdout belongs to the protocol.
    """
    stream = stream or sys.stdout
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(logging.INFO)

    ch = logging.StreamHandler(stream)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(stream), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else (path.exists() and path.is_dir())
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Locked suppression
# -------------------------

def _is_locked_error(exc: Exception) -> bool:
    winerror = getattr(exc, "winerror", None)
    if winerror == 32:  # ERROR_SHARING_VIOLATION
        return True
    err = getattr(exc, "errno", None)
    return err in {errno.EACCES, errno.EPERM, errno.EBUSY}


class LockedPathTracker:
    """
    Remembers paths that failed with a lock/permission error and keeps quiet
    about them for a hold window, so an editor holding a file open does not
    flood the console with one warning per save.
    """

    def __init__(self, hold_minutes: float = LOCK_HOLD_MINUTES):
        self.hold = dt.timedelta(minutes=hold_minutes)
        self._next_report: dict[str, dt.datetime] = {}
        self._guard = threading.Lock()

    def should_report(self, path: Path) -> bool:
        key = str(path)
        now = dt.datetime.now()
        with self._guard:
            nxt = self._next_report.get(key)
            return nxt is None or now >= nxt

    def mark_locked(self, path: Path) -> None:
        key = str(path)
        with self._guard:
            self._next_report[key] = dt.datetime.now() + self.hold

    def maybe_report_locked(
        self,
        logger: logging.Logger,
        action: str,
        path: Path,
        reason: str,
        error: Exception,
        is_dir: bool = False,
    ) -> bool:
        """Log once per hold window. Returns True if something was logged."""
        if not self.should_report(path):
            return False

        self.mark_locked(path)
        log_action(
            logger,
            action,
            f"SKIP locked ({reason}) {path} | {error}",
            path=path,
            is_dir=is_dir,
            level=logging.WARNING,
        )
        return True


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    root: Path
    strict: bool
    heavy_dirs: tuple[str, ...]
    log_dir: Path


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="shadow-watch",
        description="Shadow workspace manager for safe AI agent execution.",
    )
    p.add_argument("--root", type=str, default=None, help="Project folder (default: current directory).")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument(
        "--heavy",
        action="append",
        default=[],
        metavar="NAME",
        help="Extra directory name to symlink instead of copy (repeatable).",
    )

    sub = p.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Create the shadow workspace and keep it in sync.")
    watch.add_argument("-d", "--dry-run", action="store_true", help="Show what would be mirrored, change nothing.")
    watch.add_argument("-s", "--strict", action="store_true", default=None,
                       help="Instantly delete any secrets created in the shadow workspace.")

    mcp = sub.add_parser("mcp", help="Run the MCP server for AI agents (stdio).")
    mcp.add_argument("-s", "--strict", action="store_true", default=None,
                     help="Instantly delete any secrets created in the shadow workspace.")

    sub.add_parser("init", help=f"Write a default {IGNORE_FILE_NAME} if missing.")
    sub.add_parser("status", help="Show what will be synced, ignored and linked.")
    return p.parse_args(argv)


def load_config_file(path: Path = CONFIG_PATH) -> dict:
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
    except (OSError, ValueError):
        pass
    return {}


def build_effective_config(args: argparse.Namespace, saved: Optional[dict] = None) -> AppConfig:
    saved = saved or {}

    root = Path(args.root) if args.root else Path.cwd()
    strict_flag = getattr(args, "strict", None)
    strict = bool(strict_flag) if strict_flag is not None else bool(saved.get("strict", False))

    heavy = [str(n) for n in saved.get("heavy_dirs", []) if str(n).strip()]
    heavy.extend(n for n in args.heavy if n not in heavy)

    saved_log = Path(saved["log_dir"]) if "log_dir" in saved else None
    log_dir = Path(args.log_dir) if args.log_dir else (saved_log or DEFAULT_LOG_DIR)

    return AppConfig(
        root=root.expanduser().resolve(),
        strict=strict,
        heavy_dirs=tuple(heavy),
        log_dir=log_dir.expanduser(),
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(root: Path, mirror_root: Optional[Path] = None) -> Path:
    root = root.expanduser().resolve()

    if not root.exists() or not root.is_dir():
        raise ConfigError(f"Project folder does not exist or is not a folder: {root}")
    if mirror_root is not None:
        if _is_subpath(mirror_root, root):
            raise ConfigError("Shadow workspace must NOT be inside the project (would cause loops).")
        if _is_subpath(root, mirror_root):
            raise ConfigError("Project must NOT be inside the shadow workspace.")
    return root


# -------------------------
# Rules
# -------------------------

class RuleSet:
    """
    Exclusion rules for one project root, in two tiers:

    1. ``SECURITY_PATTERNS``: always on, can never be negated.
    2. ``.gitignore`` then ``.shadowignore``: one gitignore-style list, so a
       later ``!pattern`` re-includes what an earlier line excluded.

    A path is excluded when tier 1 matches or tier 2 ends up matching.
    Both ignore files are read once; a broken file is skipped with a warning.
    """

    def __init__(
        self,
        root: Path,
        heavy_dirs: Optional[list[str] | tuple[str, ...]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.root = Path(root).expanduser().resolve()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._heavy = set(DEFAULT_HEAVY_DIRS)
        self._heavy.update(heavy_dirs or ())

        self.security_spec = PathSpec.from_lines("gitwildmatch", SECURITY_PATTERNS)

        self.project_lines: list[str] = []
        for name in (GITIGNORE_FILE_NAME, IGNORE_FILE_NAME):
            self.project_lines.extend(self._read_ignore_file(self.root / name))
        self.project_spec = PathSpec.from_lines("gitwildmatch", self.project_lines)

    def _read_ignore_file(self, path: Path) -> list[str]:
        if not path.exists():
            return []
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
            PathSpec.from_lines("gitwildmatch", lines)
        except (OSError, ValueError) as e:
            self.logger.warning("Could not read %s, proceeding without it: %s", path.name, e)
            return []
        return lines

    def is_excluded(self, path: Path, is_dir: Optional[bool] = None) -> bool:
        path = Path(path)
        if not path.is_absolute():
            path = self.root / path
        rel = relative_to_root(path, self.root)
        if rel is None:
            return True
        if not rel.parts:
            return False

        rel_posix = rel.as_posix()
        if is_dir is None:
            is_dir = path.exists() and path.is_dir()
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.security_spec.match_file(rel_posix) or self.project_spec.match_file(rel_posix)

    def is_heavy(self, name: str) -> bool:
        return name in self._heavy

    def add_heavy_directory(self, name: str) -> None:
        self._heavy.add(name)

    @property
    def heavy_dirs(self) -> list[str]:
        return sorted(self._heavy)


# -------------------------
# Filesystem helpers
# -------------------------

def relative_to_root(path: Path, root: Path) -> Optional[Path]:
    """``path`` relative to ``root``, or None if it lies outside. Tolerates a non-canonical parent (/var vs /private/var)."""
    try:
        return path.relative_to(root)
    except ValueError:
        pass
    try:
        return path.parent.resolve().joinpath(path.name).relative_to(root)
    except (OSError, ValueError):
        return None


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def md5_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.md5()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def files_identical(src: Path, dst: Path) -> bool:
    try:
        s1 = src.stat()
        s2 = dst.stat()
    except OSError:
        return False
    if not stat.S_ISREG(s2.st_mode) or s1.st_size != s2.st_size:
        return False
    return md5_file(src) == md5_file(dst)


def remove_path(path: Path) -> bool:
    """Delete a file, link or whole directory. Returns False if nothing was there."""
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
    if path.is_dir():
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        return True
    return False


def link_directory(src: Path, dst: Path) -> None:
    if dst.is_symlink() and Path(os.readlink(dst)) == src:
        return
    ensure_parent(dst)
    os.symlink(src, dst, target_is_directory=True)


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = digits[r] + out
        if n == 0:
            return out


def default_mirror_root(source_root: Path) -> Path:
    stamp = _base36(int(time.time() * 1000))
    return Path(tempfile.gettempdir()).resolve() / f"shadow-{source_root.name}-{stamp}"


# -------------------------
# Shadow mirror
# -------------------------

@dataclass(frozen=True)
class MirrorDecision:
    action: str  # LINK | IGNORED | DIR | FILE
    rel_path: str


class ShadowMirror:
    """One-shot materialization of the shadow workspace from the project."""

    def __init__(
        self,
        source_root: Path,
        rules: Optional[RuleSet] = None,
        mirror_root: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.source_root = Path(source_root).expanduser().resolve()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.rules = rules or RuleSet(self.source_root, logger=self.logger)
        if mirror_root is not None:
            self.mirror_root = Path(mirror_root).expanduser().resolve()
        else:
            self.mirror_root = default_mirror_root(self.source_root)

    def get_mirror_path(self) -> Path:
        return self.mirror_root

    def initialize(self, dry_run: bool = False) -> list[MirrorDecision]:
        if dry_run:
            self.logger.info("DRY RUN: simulating shadow workspace creation...")
        else:
            try:
                self.mirror_root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise MirrorSetupError(f"Could not create shadow workspace {self.mirror_root}: {e}") from e

        try:
            entries = sorted(self.source_root.iterdir())
        except OSError as e:
            raise MirrorSetupError(f"Could not read project {self.source_root}: {e}") from e

        decisions: list[MirrorDecision] = []
        self._materialize(entries, self.mirror_root, dry_run, decisions, {self.source_root})
        if not dry_run:
            self.logger.info("Shadow workspace ready: %s (%d entries)", self.mirror_root, len(decisions))
        return decisions

    def _materialize(
        self,
        entries: list[Path],
        dst_dir: Path,
        dry_run: bool,
        decisions: list[MirrorDecision],
        ancestors: set[Path],
    ) -> None:
        for src in entries:
            dst = dst_dir / src.name
            rel = src.relative_to(self.source_root).as_posix()
            try:
                st = src.stat()
            except OSError:
                continue
            is_dir = stat.S_ISDIR(st.st_mode)

            # Heavy directories are linked even when an ignore rule matches them.
            if is_dir and self.rules.is_heavy(src.name):
                decisions.append(MirrorDecision("LINK", rel))
                if dry_run:
                    log_action(self.logger, "LINK", f"{rel} -> (symlink)", path=src, is_dir=True)
                else:
                    self._link_heavy(src, dst, rel)
                continue

            if self.rules.is_excluded(src, is_dir=is_dir):
                decisions.append(MirrorDecision("IGNORED", rel))
                if dry_run:
                    log_action(self.logger, "IGNORED", rel, path=src, is_dir=is_dir)
                continue

            if is_dir:
                real = src.resolve()
                if real in ancestors:
                    self.logger.warning("Skipping symlink loop: %s", rel)
                    continue
                try:
                    children = sorted(src.iterdir())
                except OSError:
                    continue
                decisions.append(MirrorDecision("DIR", rel))
                if dry_run:
                    log_action(self.logger, "DIR", rel, path=src, is_dir=True)
                else:
                    dst.mkdir(exist_ok=True)
                self._materialize(children, dst, dry_run, decisions, ancestors | {real})
                continue

            decisions.append(MirrorDecision("FILE", rel))
            if dry_run:
                log_action(self.logger, "FILE", rel, path=src, is_dir=False)
                continue
            try:
                shutil.copy2(src, dst)
            except OSError as e:
                log_action(self.logger, "COPY", f"ERROR (initialize) {src} -> {dst} | {e}",
                           path=dst, is_dir=False, level=logging.ERROR)

    def _link_heavy(self, src: Path, dst: Path, rel: str) -> None:
        try:
            link_directory(src, dst)
            log_action(self.logger, "LINK", f"{dst} -> {src}", path=dst, is_dir=True)
        except OSError as e:
            log_action(self.logger, "LINK", f"could not link {rel}, falling back to copy | {e}",
                       path=dst, is_dir=True, level=logging.WARNING)
            shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)

    def cleanup(self) -> None:
        try:
            if remove_path(self.mirror_root):
                log_action(self.logger, "CLEANUP", f"removed shadow workspace {self.mirror_root}",
                           path=self.mirror_root, is_dir=True)
        except OSError as e:
            self.logger.error("Failed to clean up shadow workspace %s: %s", self.mirror_root, e)


# -------------------------
# Watchdog handlers
# -------------------------

def _event_path(raw) -> Path:
    return Path(os.fsdecode(raw))


class TreeEventHandler(FileSystemEventHandler):
    """Turns watchdog events into (event, path, is_dir) calls. Moves become delete + create."""

    def __init__(self, callback: Callable[[str, Path, bool], None]):
        self.callback = callback

    def on_created(self, event):
        self.callback(EVENT_TYPE_CREATED, _event_path(event.src_path), bool(event.is_directory))

    def on_modified(self, event):
        if event.is_directory:
            return
        self.callback(EVENT_TYPE_MODIFIED, _event_path(event.src_path), False)

    def on_deleted(self, event):
        self.callback(EVENT_TYPE_DELETED, _event_path(event.src_path), bool(event.is_directory))

    def on_moved(self, event):
        is_dir = bool(event.is_directory)
        self.callback(EVENT_TYPE_DELETED, _event_path(event.src_path), is_dir)
        self.callback(EVENT_TYPE_CREATED, _event_path(event.dest_path), is_dir)


class SourceEventHandler(TreeEventHandler):
    """Project-side handler. Excluded paths are dropped before any callback sees them."""

    def __init__(self, callback: Callable[[str, Path, bool], None], rules: RuleSet):
        super().__init__(callback)
        self.rules = rules

    def _excluded(self, raw, is_dir) -> bool:
        path = _event_path(raw)
        if is_dir and self.rules.is_heavy(path.name):
            return False
        return self.rules.is_excluded(path, is_dir=bool(is_dir))

    def dispatch(self, event):
        if event.event_type != EVENT_TYPE_MOVED and self._excluded(event.src_path, event.is_directory):
            return
        super().dispatch(event)

    def on_moved(self, event):
        is_dir = bool(event.is_directory)
        if not self._excluded(event.src_path, is_dir):
            self.callback(EVENT_TYPE_DELETED, _event_path(event.src_path), is_dir)
        if not self._excluded(event.dest_path, is_dir):
            self.callback(EVENT_TYPE_CREATED, _event_path(event.dest_path), is_dir)


# -------------------------
# Sync engine
# -------------------------

class SyncEngine:
    """
    Bidirectional project <-> shadow sync.

    File copies are recorded in ``written`` as the MD5 of the bytes the engine
    put at the target. Any notification for that path whose current content
    still hashes to the recorded value is the engine's own write and is
    dropped, however many events watchdog sends for it. Content that differs
    is a real edit: the record is discarded and the change propagates.

    Directory creation, deletes and links carry no content, so they use a
    path marker instead (``pending_mirror`` for the shadow, ``pending_source``
    for the project). The first notification for a marked path consumes it.
    """

    def __init__(
        self,
        mirror: ShadowMirror,
        strict: bool = False,
        logger: Optional[logging.Logger] = None,
        locked: Optional[LockedPathTracker] = None,
    ):
        self.mirror = mirror
        self.source_root = mirror.source_root
        self.mirror_root = mirror.mirror_root
        self.rules = mirror.rules
        self.strict = strict
        self.logger = logger or mirror.logger
        self.locked = locked or LockedPathTracker()

        self.pending_mirror: set[str] = set()
        self.pending_source: set[str] = set()
        self.written: dict[str, str] = {}
        self._markers_guard = threading.Lock()

        self._observer: Optional[Observer] = None
        self._mirror_watch = None
        self._mirror_handler = TreeEventHandler(self.handle_mirror_change)
        self._source_handler = SourceEventHandler(self.handle_source_change, self.rules)

    # markers

    def _mark(self, markers: set[str], path: Path) -> None:
        with self._markers_guard:
            markers.add(str(path))

    def _consume(self, markers: set[str], path: Path) -> bool:
        key = str(path)
        with self._markers_guard:
            if key in markers:
                markers.discard(key)
                return True
            return False

    def _record_write(self, path: Path) -> None:
        digest = md5_file(path)
        with self._markers_guard:
            self.written[str(path)] = digest

    def _forget_write(self, path: Path) -> None:
        with self._markers_guard:
            self.written.pop(str(path), None)

    def _is_own_write(self, path: Path) -> bool:
        """True if ``path`` still holds exactly what the engine last copied there."""
        key = str(path)
        with self._markers_guard:
            expected = self.written.get(key)
        if expected is None:
            return False
        try:
            if path.is_file() and md5_file(path) == expected:
                return True
        except OSError:
            pass
        self._forget_write(path)
        return False

    def _is_echo(self, markers: set[str], path: Path, event: str, is_dir: bool) -> bool:
        if event == EVENT_TYPE_DELETED:
            self._forget_write(path)
        elif not is_dir and self._is_own_write(path):
            return True
        return self._consume(markers, path)

    # lifecycle

    def start(self) -> None:
        if self._observer is not None:
            raise RuntimeError("sync engine already started")

        if self.strict:
            self.logger.warning("STRICT MODE ACTIVE: secrets in the shadow workspace will be destroyed.")
            self.initial_strict_sweep()

        observer = Observer()
        observer.schedule(self._source_handler, str(self.source_root), recursive=True)
        self._mirror_watch = observer.schedule(self._mirror_handler, str(self.mirror_root), recursive=True)
        observer.start()
        self._observer = observer
        self.logger.info("Watchers started. Syncing active...")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=10)
        self._observer = None
        self._mirror_watch = None
        self.logger.info("Watchers stopped.")

    def reset(self) -> None:
        """Rebuild the shadow from the project. The mirror watch is paused so the wipe is not synced."""
        if self._observer is not None and self._mirror_watch is not None:
            self._observer.unschedule(self._mirror_watch)
            self._mirror_watch = None

        self.mirror.cleanup()
        with self._markers_guard:
            self.pending_mirror.clear()
            self.pending_source.clear()
            self.written.clear()
        try:
            self.mirror.initialize(False)
        finally:
            if self._observer is not None and self.mirror_root.is_dir():
                self._mirror_watch = self._observer.schedule(
                    self._mirror_handler, str(self.mirror_root), recursive=True
                )
        self.logger.info("Shadow workspace reset from %s", self.source_root)

    def initial_strict_sweep(self) -> int:
        """Delete everything already in the shadow that the rules forbid. Returns the purge count."""
        purged = 0

        def sweep(directory: Path) -> None:
            nonlocal purged
            try:
                entries = list(directory.iterdir())
            except OSError:
                return
            for entry in entries:
                try:
                    st = entry.lstat()
                except OSError:
                    continue
                is_link = stat.S_ISLNK(st.st_mode)
                if is_link and self.rules.is_heavy(entry.name):
                    continue

                rel = entry.relative_to(self.mirror_root)
                is_dir = stat.S_ISDIR(st.st_mode) or (is_link and entry.is_dir())
                if self.rules.is_excluded(self.source_root / rel, is_dir=is_dir):
                    try:
                        remove_path(entry)
                        purged += 1
                        log_action(self.logger, "PURGE", f"STRICT MODE: purged existing forbidden file: {rel}",
                                   path=entry, is_dir=is_dir, level=logging.WARNING)
                    except OSError:
                        pass
                    continue

                if stat.S_ISDIR(st.st_mode):
                    sweep(entry)

        sweep(self.mirror_root)
        return purged

    # helpers

    def _below_heavy(self, rel: Path) -> bool:
        return any(self.rules.is_heavy(part) for part in rel.parts[:-1])

    def _in_heavy_link(self, rel: Path, event: str) -> bool:
        """True if ``rel`` is a heavy link in the shadow or lies below one."""
        for p in (rel, *rel.parents):
            if not p.parts or not self.rules.is_heavy(p.name):
                continue
            if (self.mirror_root / p).is_symlink():
                return True
        # The link itself is gone once its delete arrives. Removing it must
        # leave the project's directory alone.
        return (
            event == EVENT_TYPE_DELETED
            and self.rules.is_heavy(rel.name)
            and (self.source_root / rel).is_dir()
            and not (self.source_root / rel).is_symlink()
        )

    def _link(self, src: Path, dst: Path) -> None:
        if dst.is_symlink():
            return
        try:
            self._mark(self.pending_mirror, dst)
            link_directory(src, dst)
            log_action(self.logger, "LINK", f"{dst} -> {src}", path=dst, is_dir=True)
        except OSError as e:
            log_action(self.logger, "LINK", f"ERROR link {dst} | {e}", path=dst, is_dir=True, level=logging.ERROR)

    def _copy(self, src: Path, dst: Path, reason: str) -> None:
        if not src.exists() or not src.is_file():
            log_action(self.logger, "COPY", f"SKIP ({reason}) src missing/not file: {src}", path=src, is_dir=False)
            return
        if files_identical(src, dst):
            return
        ensure_parent(dst)
        if dst.is_dir() and not dst.is_symlink():
            shutil.rmtree(dst)
        shutil.copy2(src, dst)
        self._record_write(dst)
        log_action(self.logger, "COPY", f"({reason}) {src} -> {dst}", path=dst, is_dir=False)

    def _make_dir(self, dst: Path, markers: set[str], reason: str) -> None:
        if dst.is_dir():
            return
        self._mark(markers, dst)
        dst.mkdir(parents=True, exist_ok=True)
        log_action(self.logger, "MKDIR", f"({reason}) {dst}", path=dst, is_dir=True)

    def _remove(self, dst: Path, markers: set[str], reason: str) -> None:
        if not dst.exists() and not dst.is_symlink():
            return
        is_dir = dst.is_dir() and not dst.is_symlink()
        self._forget_write(dst)
        self._mark(markers, dst)
        if remove_path(dst):
            log_action(self.logger, "DELETE", f"({reason}) {dst}", path=dst, is_dir=is_dir)

    def _apply(self, event: str, src: Path, dst: Path, is_dir: bool, markers: set[str], reason: str) -> None:
        try:
            if event == EVENT_TYPE_DELETED:
                self._remove(dst, markers, reason)
            elif is_dir:
                self._make_dir(dst, markers, reason)
            else:
                self._copy(src, dst, reason)
        except Exception as e:
            # nothing was written, so no echo will arrive for this marker
            self._consume(markers, dst)
            self._forget_write(dst)
            action = "DELETE" if event == EVENT_TYPE_DELETED else ("MKDIR" if is_dir else "COPY")
            if _is_locked_error(e):
                self.locked.maybe_report_locked(self.logger, action, dst, reason, e, is_dir=is_dir)
                return
            log_action(self.logger, action, f"ERROR ({reason}) {src} -> {dst} | {e}",
                       path=dst, is_dir=is_dir, level=logging.ERROR)

    # propagation

    def handle_source_change(self, event: str, path: Path, is_dir: bool = False) -> None:
        path = Path(path)
        rel = relative_to_root(path, self.source_root)
        if rel is None or not rel.parts or (event == EVENT_TYPE_MODIFIED and is_dir):
            return
        path = self.source_root / rel
        target = self.mirror_root / rel

        if self._is_echo(self.pending_source, path, event, is_dir):
            return

        # Below a heavy dir the shadow already sees the change through the link.
        if self._below_heavy(rel):
            return
        # Heavy dirs are linked even when an ignore rule matches them.
        if is_dir and self.rules.is_heavy(rel.name):
            if event == EVENT_TYPE_CREATED:
                self._link(path, target)
            else:
                self._apply(event, path, target, is_dir, self.pending_mirror, "project deleted")
            return

        if self.rules.is_excluded(path, is_dir=is_dir):
            return

        self._apply(event, path, target, is_dir, self.pending_mirror, f"project {event}")

    def handle_mirror_change(self, event: str, path: Path, is_dir: bool = False) -> None:
        path = Path(path)
        rel = relative_to_root(path, self.mirror_root)
        if rel is None or not rel.parts or (event == EVENT_TYPE_MODIFIED and is_dir):
            return
        path = self.mirror_root / rel
        target = self.source_root / rel

        if self._is_echo(self.pending_mirror, path, event, is_dir):
            return

        if self._in_heavy_link(rel, event):
            return

        # Security gate: forbidden paths never reach the project.
        if self.rules.is_excluded(target, is_dir=is_dir):
            if event == EVENT_TYPE_DELETED:
                self.logger.debug("Ignoring delete of forbidden shadow path: %s", rel)
            elif self.strict:
                try:
                    remove_path(path)
                    log_action(self.logger, "INCINERATE",
                               f"STRICT MODE: incinerated forbidden file in shadow: {rel}",
                               path=path, is_dir=is_dir, level=logging.WARNING)
                except OSError as e:
                    log_action(self.logger, "INCINERATE", f"ERROR failed to delete forbidden file: {rel} | {e}",
                               path=path, is_dir=is_dir, level=logging.ERROR)
            else:
                log_action(self.logger, "BLOCKED", f"agent tried to modify ignored file: {rel}",
                           path=path, is_dir=is_dir, level=logging.WARNING)
            return

        self._apply(event, path, target, is_dir, self.pending_source, f"shadow {event}")


# -------------------------
# Init / status
# -------------------------

def write_default_ignore(root: Path, logger: Optional[logging.Logger] = None) -> bool:
    """Create ``.shadowignore`` with defaults. Returns False if one already exists or writing failed."""
    logger = logger or logging.getLogger(LOGGER_NAME)
    path = root / IGNORE_FILE_NAME
    if path.exists():
        return False
    try:
        path.write_text(DEFAULT_IGNORE_CONTENT, encoding="utf-8")
    except OSError as e:
        logger.error("Failed to create %s: %s", IGNORE_FILE_NAME, e)
        return False
    logger.info("Created %s with smart defaults.", IGNORE_FILE_NAME)
    return True


@dataclass
class StatusReport:
    synced_files: int = 0
    ignored_entries: int = 0
    heavy_dirs: list[str] = field(default_factory=list)


def collect_status(rules: RuleSet) -> StatusReport:
    report = StatusReport()

    def walk(directory: Path) -> None:
        try:
            entries = sorted(directory.iterdir())
        except OSError:
            return
        for entry in entries:
            rel = entry.relative_to(rules.root).as_posix()
            try:
                is_dir = entry.is_dir()
            except OSError:
                continue
            if is_dir and rules.is_heavy(entry.name):
                report.heavy_dirs.append(rel)
                continue
            if rules.is_excluded(entry, is_dir=is_dir):
                report.ignored_entries += 1
                continue
            if is_dir:
                walk(entry)
            elif entry.is_file():
                report.synced_files += 1

    walk(rules.root)
    return report


def print_status(report: StatusReport, root: Path, logger: logging.Logger) -> None:
    log_action(logger, "STATUS", f"Project root:  {root}", path=root, is_dir=True)
    log_action(logger, "STATUS", f"Synced files:  {report.synced_files}")
    log_action(logger, "STATUS", f"Ignored:       {report.ignored_entries}")
    log_action(logger, "STATUS", f"Heavy links:   {len(report.heavy_dirs)} ({', '.join(report.heavy_dirs) or 'None'})")
    if report.ignored_entries == 0:
        logger.warning("No files are being ignored. Check your %s or %s!", GITIGNORE_FILE_NAME, IGNORE_FILE_NAME)


# -------------------------
# MCP server
# -------------------------

class WorkspaceTools:
    """What the MCP server exposes: paths, reset and the safety briefing."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    def get_workspace_info(self) -> str:
        return json.dumps(
            {
                "status": "active",
                "mode": "strict" if self.engine.strict else "normal",
                "real_path": str(self.engine.source_root),
                "shadow_path": str(self.engine.mirror_root),
                "instructions": "Perform ALL file modifications in the 'shadow_path'. Do NOT touch 'real_path'.",
            },
            indent=2,
        )

    def reset_shadow_workspace(self) -> str:
        self.engine.reset()
        return "Shadow workspace has been reset and re-synced from the real project."

    def safety_briefing(self) -> str:
        strict_line = (
            "ACTIVE. Secrets created here will be destroyed immediately."
            if self.engine.strict
            else "Inactive. Secrets are blocked from syncing back."
        )
        return (
            "You are operating within a **Shadow Watch workspace**.\n\n"
            "1. **Safety**: This is a sandboxed copy. You can freely create, edit or delete files here.\n"
            "2. **Synchronization**: Changes are synced back to the real project *unless* they are "
            "dangerous (e.g. secrets).\n"
            f"3. **Location**: Your workspace is located at:\n{self.engine.mirror_root}\n"
            f"4. **Strict mode**: {strict_line}\n\n"
            "Please perform your tasks within this directory."
        )


def build_mcp_server(tools: WorkspaceTools) -> FastMCP:
    server = FastMCP("shadow-watch")

    @server.tool()
    def get_workspace_info() -> str:
        """Returns information about the current shadow workspace, including the path where file operations should be performed."""
        return tools.get_workspace_info()

    @server.tool()
    def reset_shadow_workspace() -> str:
        """Wipes and re-creates the shadow workspace from the real project. Use this if the environment gets messed up or out of sync."""
        return tools.reset_shadow_workspace()

    @server.prompt()
    def shadow_safety_briefing() -> str:
        """Injects the shadow workspace safety rules and paths into the agent's context."""
        return tools.safety_briefing()

    return server


# -------------------------
# Main
# -------------------------

def _prepare_mirror(cfg: AppConfig, logger: logging.Logger) -> ShadowMirror:
    write_default_ignore(cfg.root, logger)
    rules = RuleSet(cfg.root, heavy_dirs=cfg.heavy_dirs, logger=logger)
    mirror = ShadowMirror(cfg.root, rules=rules, logger=logger)
    validate_paths(cfg.root, mirror.get_mirror_path())
    return mirror


def run_watch(cfg: AppConfig, logger: logging.Logger, dry_run: bool = False) -> int:
    mirror = _prepare_mirror(cfg, logger)

    if dry_run:
        mirror.initialize(dry_run=True)
        logger.info("Done. No files were moved.")
        return 0

    try:
        mirror.initialize(False)
    except MirrorSetupError as e:
        logger.error("Fatal: %s", e)
        mirror.cleanup()
        return 1

    logger.info("Real path  : %s", cfg.root)
    logger.info("Shadow path: %s", mirror.get_mirror_path())
    logger.info("Point your AI agent to the shadow path above.")

    engine = SyncEngine(mirror, strict=cfg.strict, logger=logger)
    engine.start()

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())

    try:
        while not stop_event.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        engine.stop()
        mirror.cleanup()
        logger.info("Stopped.")
    return 0


def run_mcp(cfg: AppConfig, logger: logging.Logger) -> int:
    mirror = _prepare_mirror(cfg, logger)
    try:
        mirror.initialize(False)
    except MirrorSetupError as e:
        logger.error("Fatal MCP error: %s", e)
        mirror.cleanup()
        return 1

    engine = SyncEngine(mirror, strict=cfg.strict, logger=logger)
    engine.start()
    server = build_mcp_server(WorkspaceTools(engine))

    logger.info("Shadow Watch MCP server running on stdio...")
    try:
        server.run()
    finally:
        engine.stop()
        mirror.cleanup()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    cfg = build_effective_config(args, load_config_file())

    # stdout is the JSON-RPC channel in MCP mode
    stream = sys.stderr if args.command == "mcp" else sys.stdout
    logger = setup_logger(cfg.log_dir, stream=stream)

    try:
        validate_paths(cfg.root)
        if args.command == "init":
            write_default_ignore(cfg.root, logger)
            return 0
        if args.command == "status":
            rules = RuleSet(cfg.root, heavy_dirs=cfg.heavy_dirs, logger=logger)
            print_status(collect_status(rules), cfg.root, logger)
            return 0
        if args.command == "mcp":
            return run_mcp(cfg, logger)
        return run_watch(cfg, logger, dry_run=args.dry_run)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
