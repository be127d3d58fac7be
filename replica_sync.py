# /replica_sync.py
"""
Replica Sync
- Periodically mirrors a source folder onto a replica folder.
- Every pass recopies every source file (no mtime/checksum skipping).
- Replica entries with no source counterpart are deleted, one level at a time,
  after that level's children have been synced.
- Stale directories are removed with a single-entry remove: non-empty ones stay
  until their contents are gone.
- Failures never abort a pass: the affected entry is skipped and the next pass
  tries again from scratch.
- Sync log (plain text, appended per line):
    Copied <source> to <replica>
    Deleted <replica>
    --- Sync completed at YYYY-MM-DD HH:MM:SS ---
- Styled console output:
  - COPY green
  - DELETE orange
  - MKDIR light brown
  - failures red
  - file paths white
  - folder paths light brown
- Optional gitignore-style excludes and a watchdog trigger that starts the next
  pass early when the source changes.

Usage
  pip install pathspec watchdog colorama
  python replica_sync.py /src /dst 60 sync.log
  python replica_sync.py /src /dst 60 sync.log --exclude "*.tmp" --watch
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import os
import re
import signal
import stat
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from colorama import just_fix_windows_console
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

CHUNK_SIZE = 1024
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

OK = "ok"
SKIPPED = "skipped"
FAILED = "failed"

LOGGER = logging.getLogger("replica_sync")


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "DELETE": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "SCAN": Ansi.LIGHT_BROWN,
}


def _supports_color(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except ValueError:
        # closed stream
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
            if action.endswith("_FAIL"):
                action_color = Ansi.RED
            else:
                action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def setup_logger(level: int = logging.INFO) -> logging.Logger:
    logger = LOGGER
    logger.setLevel(level)
    logger.propagate = False

    if any(getattr(h, "replica_sync_console", False) for h in logger.handlers):
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"

    ch = logging.StreamHandler(sys.stdout)
    ch.replica_sync_console = True
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=TIMESTAMP_FORMAT))

    logger.addHandler(ch)
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
        extra["is_dir"] = bool(is_dir) if is_dir is not None else os.path.isdir(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Outcomes
# -------------------------

@dataclass(frozen=True)
class Outcome:
    """Result of one filesystem operation during a pass.

    ``status`` is one of ``ok``, ``skipped`` (precondition failed, nothing
    touched) or ``failed`` (the operation started but did not complete).
    """

    action: str
    path: Path
    status: str = OK
    reason: str = ""
    is_dir: bool = False

    @property
    def ok(self) -> bool:
        return self.status == OK


def report_outcome(logger: logging.Logger, outcome: Outcome) -> Outcome:
    if outcome.status == OK:
        message = f"{outcome.path}{' | ' + outcome.reason if outcome.reason else ''}"
        log_action(logger, outcome.action, message, path=outcome.path, is_dir=outcome.is_dir)
    elif outcome.status == SKIPPED:
        log_action(
            logger,
            outcome.action,
            f"SKIP {outcome.path} | {outcome.reason}",
            path=outcome.path,
            is_dir=outcome.is_dir,
            level=logging.DEBUG,
        )
    else:
        log_action(
            logger,
            f"{outcome.action}_FAIL",
            f"{outcome.path} | {outcome.reason}",
            path=outcome.path,
            is_dir=outcome.is_dir,
            level=logging.WARNING,
        )
    return outcome


@dataclass
class PassReport:
    started: dt.datetime
    finished: Optional[dt.datetime] = None
    outcomes: list[Outcome] = field(default_factory=list)

    def count(self, action: str, status: str = OK) -> int:
        return sum(1 for o in self.outcomes if o.action == action and o.status == status)

    @property
    def copied(self) -> int:
        return self.count("COPY")

    @property
    def deleted(self) -> int:
        return self.count("DELETE")

    @property
    def created_dirs(self) -> int:
        return self.count("MKDIR")

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == SKIPPED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == FAILED)

    def summary(self) -> str:
        took = (self.finished - self.started).total_seconds() if self.finished else 0.0
        return (
            f"copied={self.copied} deleted={self.deleted} mkdir={self.created_dirs} "
            f"skipped={self.skipped} failed={self.failed} ({took:.2f}s)"
        )


# -------------------------
# Sync log
# -------------------------

class SyncLog:
    """
    Append-only plain text record of a replica's history.
    Every line is an independent open/write/close so an external viewer sees it
    immediately. A line that cannot be written is dropped.
    """

    def __init__(self, path: Path, logger: logging.Logger = LOGGER):
        self.path = Path(path)
        self.logger = logger

    def append(self, line: str) -> bool:
        try:
            with self.path.open("a", encoding="utf-8", errors="surrogateescape") as f:
                f.write(line)
        except OSError as e:
            self.logger.debug("Sync log unwritable, line dropped: %s | %s", self.path, e)
            return False
        return True

    def copied(self, source_path: Path, replica_path: Path) -> bool:
        return self.append(f"Copied {source_path} to {replica_path}\n")

    def deleted(self, replica_path: Path) -> bool:
        return self.append(f"Deleted {replica_path}\n")

    def finalize(self, when: Optional[dt.datetime] = None) -> bool:
        ts = (when or dt.datetime.now()).strftime(TIMESTAMP_FORMAT)
        return self.append(f"--- Sync completed at {ts} ---\n\n")


# -------------------------
# Excludes
# -------------------------

class ExcludeMatcher:
    def __init__(self, patterns: list[str]):
        self.patterns = list(patterns)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_excluded(self, rel_posix: str, is_dir: bool = False) -> bool:
        """``rel_posix`` is the entry's path relative to the source root."""
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


# -------------------------
# File copy
# -------------------------

def _pump(src, dst) -> str:
    """Copy ``src`` into ``dst`` chunk by chunk; return a fault reason or ''."""
    while True:
        try:
            chunk = src.read(CHUNK_SIZE)
        except OSError as e:
            return f"read error: {e}"
        if not chunk:
            return ""
        try:
            written = dst.write(chunk)
        except OSError as e:
            return f"short write: {e}"
        if written != len(chunk):
            return f"short write: {written} of {len(chunk)} bytes"


def copy_file(
    source_path: Path,
    replica_path: Path,
    sync_log: SyncLog,
    logger: logging.Logger = LOGGER,
) -> Outcome:
    """Overwrite ``replica_path`` with the bytes of ``source_path``.

    Nothing happens (and nothing is recorded) when either side cannot be
    opened. Once both are open the attempt is always recorded in the sync log,
    including a copy cut short by a write fault, which leaves a partial file.
    """
    source_path = Path(source_path)
    replica_path = Path(replica_path)

    try:
        src = open(source_path, "rb", buffering=0)
    except OSError as e:
        return report_outcome(logger, Outcome("COPY", source_path, SKIPPED, f"source unreadable: {e}"))

    with src:
        try:
            # 0o666 minus umask, same as open(2) with O_CREAT
            dst = open(replica_path, "wb", buffering=0)
        except OSError as e:
            return report_outcome(logger, Outcome("COPY", replica_path, SKIPPED, f"replica unwritable: {e}"))
        with dst:
            fault = _pump(src, dst)

    sync_log.copied(source_path, replica_path)
    if fault:
        return report_outcome(logger, Outcome("COPY", replica_path, FAILED, f"partial copy from {source_path}: {fault}"))
    return report_outcome(logger, Outcome("COPY", replica_path, OK, f"from {source_path}"))


# -------------------------
# Prune
# -------------------------

def _list_names(directory: Path) -> list[str]:
    with os.scandir(directory) as it:
        return sorted(entry.name for entry in it)


def remove_entry(replica_path: Path, sync_log: SyncLog, logger: logging.Logger = LOGGER) -> Outcome:
    """Single-entry remove: files are unlinked, directories only go when empty."""
    is_dir = os.path.isdir(replica_path) and not os.path.islink(replica_path)
    try:
        if is_dir:
            os.rmdir(replica_path)
        else:
            os.remove(replica_path)
    except OSError as e:
        return report_outcome(logger, Outcome("DELETE", replica_path, FAILED, str(e), is_dir=is_dir))

    sync_log.deleted(replica_path)
    return report_outcome(logger, Outcome("DELETE", replica_path, OK, is_dir=is_dir))


def prune_replica(
    source_dir: Path,
    replica_dir: Path,
    sync_log: SyncLog,
    logger: logging.Logger = LOGGER,
    excludes: Optional[ExcludeMatcher] = None,
    rel: str = "",
) -> list[Outcome]:
    """Delete entries of ``replica_dir`` that have no counterpart in ``source_dir``.

    Only this one directory level is scanned. ``rel`` is the source-relative
    prefix of ``source_dir`` (``""`` for the root, else ending in ``/``), used
    to match excludes; excluded source entries count as absent.
    """
    source_dir = Path(source_dir)
    replica_dir = Path(replica_dir)

    try:
        names = _list_names(replica_dir)
    except OSError as e:
        logger.debug("Replica not listable, nothing to prune: %s | %s", replica_dir, e)
        return []

    outcomes: list[Outcome] = []
    for name in names:
        source_path = source_dir / name
        if os.path.exists(source_path):
            if excludes is None or not excludes.is_excluded(rel + name, is_dir=os.path.isdir(source_path)):
                continue
        outcomes.append(remove_entry(replica_dir / name, sync_log, logger))
    return outcomes


# -------------------------
# Tree sync
# -------------------------

@dataclass
class _Frame:
    source_dir: Path
    replica_dir: Path
    rel: str
    pending: Iterator[str]


def _ensure_dir(replica_dir: Path, logger: logging.Logger) -> Optional[Outcome]:
    if os.path.isdir(replica_dir):
        return None
    try:
        replica_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return report_outcome(logger, Outcome("MKDIR", replica_dir, FAILED, str(e), is_dir=True))
    return report_outcome(logger, Outcome("MKDIR", replica_dir, OK, is_dir=True))


def _open_frame(
    source_dir: Path,
    replica_dir: Path,
    rel: str,
    outcomes: list[Outcome],
    logger: logging.Logger,
) -> Optional[_Frame]:
    try:
        names = _list_names(source_dir)
    except FileNotFoundError:
        # a vanished source directory is empty: its replica still gets pruned
        outcomes.append(report_outcome(logger, Outcome("SCAN", source_dir, SKIPPED, "source missing", is_dir=True)))
        return _Frame(source_dir, replica_dir, rel, iter(()))
    except OSError as e:
        outcomes.append(report_outcome(logger, Outcome("SCAN", source_dir, SKIPPED, f"source unreadable: {e}", is_dir=True)))
        return None

    created = _ensure_dir(replica_dir, logger)
    if created is not None:
        outcomes.append(created)
    return _Frame(source_dir, replica_dir, rel, iter(names))


def sync_tree(
    source_dir: Path,
    replica_dir: Path,
    sync_log: SyncLog,
    logger: logging.Logger = LOGGER,
    excludes: Optional[ExcludeMatcher] = None,
) -> list[Outcome]:
    """Reconcile ``replica_dir`` with ``source_dir``.

    Depth-first: a subdirectory is finished before its next sibling starts, and
    each directory level is pruned once all of its children are processed.
    Uses an explicit stack, so nesting depth is not bounded by the interpreter's
    recursion limit. Never raises for filesystem errors.
    """
    outcomes: list[Outcome] = []
    stack: list[_Frame] = []

    root = _open_frame(Path(source_dir), Path(replica_dir), "", outcomes, logger)
    if root is not None:
        stack.append(root)

    while stack:
        frame = stack[-1]
        name = next(frame.pending, None)
        if name is None:
            stack.pop()
            outcomes.extend(
                prune_replica(frame.source_dir, frame.replica_dir, sync_log, logger, excludes=excludes, rel=frame.rel)
            )
            continue

        src = frame.source_dir / name
        dst = frame.replica_dir / name
        try:
            is_dir = stat.S_ISDIR(os.stat(src).st_mode)
        except OSError as e:
            outcomes.append(report_outcome(logger, Outcome("SCAN", src, SKIPPED, f"stat failed: {e}")))
            continue

        if excludes is not None and excludes.is_excluded(frame.rel + name, is_dir=is_dir):
            outcomes.append(report_outcome(logger, Outcome("SCAN", src, SKIPPED, "excluded", is_dir=is_dir)))
            continue

        if is_dir:
            child = _open_frame(src, dst, f"{frame.rel}{name}/", outcomes, logger)
            if child is not None:
                stack.append(child)
        else:
            outcomes.append(copy_file(src, dst, sync_log, logger))

    return outcomes


def run_pass(
    source_dir: Path,
    replica_dir: Path,
    sync_log: SyncLog,
    logger: logging.Logger = LOGGER,
    excludes: Optional[ExcludeMatcher] = None,
) -> PassReport:
    """One full pass: sync the whole tree, then write the completion banner."""
    report = PassReport(started=dt.datetime.now())
    logger.info("PASS: start %s -> %s", source_dir, replica_dir)

    report.outcomes.extend(sync_tree(source_dir, replica_dir, sync_log, logger, excludes=excludes))

    report.finished = dt.datetime.now()
    sync_log.finalize(report.finished)
    logger.info("PASS: done | %s", report.summary())
    return report


# -------------------------
# Scheduling
# -------------------------

class Scheduler:
    """
    Runs passes back to back with ``interval_sec`` between the end of one pass
    and the start of the next. ``wake()`` cuts the current wait short and
    ``stop()`` ends the loop once the running pass returns.
    """

    def __init__(self, interval_sec: int, run: Callable[[], object], logger: logging.Logger = LOGGER):
        self.interval_sec = max(0, int(interval_sec))
        self._run = run
        self.logger = logger
        self.passes = 0
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def wake(self) -> None:
        self._wake_event.set()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()

    def run_once(self) -> object:
        result = self._run()
        self.passes += 1
        return result

    def run_forever(self, max_passes: Optional[int] = None) -> int:
        while not self._stop_event.is_set():
            self.run_once()
            if max_passes is not None and self.passes >= max_passes:
                break
            if self._wake_event.wait(self.interval_sec) and not self._stop_event.is_set():
                self.logger.debug("Woken early after pass %d", self.passes)
            self._wake_event.clear()
        return self.passes


# -------------------------
# Watchdog trigger
# -------------------------

class SourceChangeHandler(FileSystemEventHandler):
    """Wakes the scheduler on source writes. Read-only access is ignored."""

    def __init__(self, scheduler: Scheduler, logger: logging.Logger = LOGGER):
        self.scheduler = scheduler
        self.logger = logger

    def _trigger(self, event) -> None:
        self.logger.debug("Source changed (%s): %s", event.event_type, event.src_path)
        self.scheduler.wake()

    def on_created(self, event):
        self._trigger(event)

    def on_modified(self, event):
        if event.is_directory:
            return
        self._trigger(event)

    def on_deleted(self, event):
        self._trigger(event)

    def on_moved(self, event):
        self._trigger(event)


def start_watch(source_dir: Path, scheduler: Scheduler, logger: logging.Logger = LOGGER):
    """Start an observer on ``source_dir``; returns ``None`` if it cannot be watched."""
    observer = Observer()
    observer.schedule(SourceChangeHandler(scheduler, logger), str(source_dir), recursive=True)
    try:
        observer.start()
    except OSError as e:
        logger.warning("Cannot watch %s, falling back to interval only | %s", source_dir, e)
        return None
    logger.info("Watching %s for changes", source_dir)
    return observer


# -------------------------
# Config / CLI
# -------------------------

_ATOI = re.compile(r"\s*([+-]?\d+)")


def parse_interval(raw: str) -> int:
    """Leading integer of ``raw``, or 0 when there is none (``atoi`` semantics)."""
    m = _ATOI.match(raw)
    return int(m.group(1)) if m else 0


@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    replica_dir: Path
    interval_sec: int
    log_file: Path
    excludes: tuple[str, ...] = ()
    watch: bool = False
    once: bool = False
    log_level: int = logging.INFO


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="replica-sync",
        description="Periodically mirror a source folder onto a replica folder.",
    )
    p.add_argument("source_folder", help="Folder to mirror (read only).")
    p.add_argument("replica_folder", help="Folder kept identical to the source.")
    p.add_argument("interval", type=parse_interval, help="Seconds to wait between passes.")
    p.add_argument("log_file", help="Sync log, appended to on every copy and delete.")
    p.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Gitignore-style pattern of source paths to leave out (repeatable).",
    )
    p.add_argument("--watch", action="store_true", help="Start the next pass early when the source changes.")
    p.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    verbosity = p.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show skipped entries.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors.")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> AppConfig:
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    return AppConfig(
        source_dir=Path(args.source_folder),
        replica_dir=Path(args.replica_folder),
        interval_sec=args.interval,
        log_file=Path(args.log_file),
        excludes=tuple(args.exclude),
        watch=args.watch,
        once=args.once,
        log_level=level,
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def check_paths(cfg: AppConfig, logger: logging.Logger = LOGGER) -> list[str]:
    """Warn about layouts that make mirroring misbehave; never refuses to run."""
    problems: list[str] = []
    source, replica = cfg.source_dir, cfg.replica_dir

    if not os.path.isdir(source):
        problems.append(f"Source folder does not exist or is not a folder: {source}")
    if source.resolve() == replica.resolve():
        problems.append("Source and replica folders are the same folder.")
    elif _is_subpath(replica, source):
        problems.append("Replica folder is inside the source folder (it will be mirrored into itself).")
    elif _is_subpath(source, replica):
        problems.append("Source folder is inside the replica folder (pruning will reach it).")

    for problem in problems:
        logger.warning("Config: %s", problem)
    return problems


# -------------------------
# Main
# -------------------------

def _interrupt_on_sigterm(signum, frame) -> None:
    raise KeyboardInterrupt


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    cfg = build_config(args)

    logger = setup_logger(cfg.log_level)
    logger.info("Source : %s", cfg.source_dir)
    logger.info("Replica: %s", cfg.replica_dir)
    logger.info("Sync log: %s", cfg.log_file)
    check_paths(cfg, logger)

    sync_log = SyncLog(cfg.log_file, logger=logger)
    excludes = ExcludeMatcher(list(cfg.excludes)) if cfg.excludes else None

    def one_pass() -> PassReport:
        return run_pass(cfg.source_dir, cfg.replica_dir, sync_log, logger, excludes=excludes)

    scheduler = Scheduler(cfg.interval_sec, one_pass, logger)

    if cfg.once:
        scheduler.run_once()
        return 0

    observer = start_watch(cfg.source_dir, scheduler, logger) if cfg.watch else None

    logger.info("Starting sync loop (interval=%ss)... (Ctrl+C to stop)", scheduler.interval_sec)
    previous_sigterm = signal.signal(signal.SIGTERM, _interrupt_on_sigterm)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        scheduler.stop()
        if observer is not None:
            observer.stop()
            observer.join(timeout=10)
        signal.signal(signal.SIGTERM, previous_sigterm)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
