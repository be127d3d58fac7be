from __future__ import annotations

import errno
import os
from pathlib import Path

import replica_sync


def make_tree(root: Path, files: dict[str, str]) -> Path:
    """Create ``root`` with the given relative file paths and text contents."""
    root.mkdir(parents=True, exist_ok=True)
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def log_lines(log: replica_sync.SyncLog) -> list[str]:
    if not log.path.exists():
        return []
    return log.path.read_text(encoding="utf-8").splitlines()


def fail_stat_for(monkeypatch, target: Path, err: int = errno.EACCES) -> None:
    """Make ``os.stat`` and ``os.lstat`` raise ``err`` for ``target`` only."""
    target_text = str(target)

    def wrap(real):
        def fake(path, *args, **kwargs):
            if isinstance(path, (str, os.PathLike)) and os.fspath(path) == target_text:
                raise OSError(err, os.strerror(err), target_text)
            return real(path, *args, **kwargs)

        return fake

    monkeypatch.setattr(os, "stat", wrap(os.stat))
    monkeypatch.setattr(os, "lstat", wrap(os.lstat))
