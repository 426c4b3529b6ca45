from __future__ import annotations

import fcntl
import hashlib
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO


class ServiceLockedError(RuntimeError):
    pass


@dataclass(frozen=True)
class ProcessLock:
    path: str
    pid: int
    service: str


def get_lock_dir() -> Path:
    configured = os.getenv("CHAINMIRROR_LOCK_DIR")
    lock_dir = Path(configured).expanduser() if configured else Path(tempfile.gettempdir()) / "chainmirror-locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    if not lock_dir.is_dir():
        raise RuntimeError(f"lock directory is not a directory: {lock_dir}")
    return lock_dir.resolve()


def lock_file_path(*, db_path: str, service: str) -> Path:
    key = f"{Path(db_path).expanduser().resolve()}::{service}"
    digest = hashlib.sha256(key.encode()).hexdigest()[:16]
    return get_lock_dir() / f"chainmirror-{service}-{digest}.lock"


def read_lock_owner(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


@contextmanager
def single_instance_lock(*, db_path: str, service: str) -> Iterator[ProcessLock]:
    """Hold an exclusive flock so only one loop advances the cursor of ``service`` in ``db_path``.

    Intended for local filesystems; flock semantics over network mounts vary.
    """
    path = lock_file_path(db_path=db_path, service=service)
    fd = os.open(path, os.O_CREAT | os.O_RDWR)
    fh: BinaryIO = os.fdopen(fd, "r+b")
    pid = os.getpid()
    acquired = False
    try:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            acquired = True
        except OSError as exc:
            owner = read_lock_owner(path)
            owner_text = f" owner_pid={owner}" if owner is not None else ""
            raise ServiceLockedError(
                f"LOCKED: another chainmirror {service} loop is running for db_path={db_path} "
                f"lock_path={path}.{owner_text}"
            ) from exc

        fh.seek(0)
        fh.truncate(0)
        fh.write(f"{pid}\n".encode())
        fh.flush()
        yield ProcessLock(path=str(path), pid=pid, service=service)
    finally:
        if acquired:
            try:
                fh.seek(0)
                fh.truncate(0)
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass
        fh.close()
