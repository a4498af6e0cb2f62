from __future__ import annotations

import os
import time
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Iterator, TextIO


class FileLockTimeout(RuntimeError):
    pass


def _try_lock(fp: TextIO) -> bool:
    if os.name == "nt":
        import msvcrt  # type: ignore

        try:
            msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
            return True
        except OSError:
            return False
    import fcntl

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except BlockingIOError:
        return False


def _unlock(fp: TextIO) -> None:
    if os.name == "nt":
        import msvcrt  # type: ignore

        with suppress(Exception):
            msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
        return
    import fcntl

    with suppress(Exception):
        fcntl.flock(fp.fileno(), fcntl.LOCK_UN)


@contextmanager
def file_lock(path: Path, *, timeout_s: float = 10.0, poll_interval_s: float = 0.05) -> Iterator[None]:
    """
    Cross-process lock guarding the client state file (two CLI runs may overlap).
    """
    lock_path = Path(path).resolve()
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fp = lock_path.open("a+", encoding="utf-8")
    try:
        deadline = time.monotonic() + float(timeout_s)
        while not _try_lock(fp):
            if time.monotonic() >= deadline:
                raise FileLockTimeout(f"Timed out acquiring lock {lock_path}")
            time.sleep(float(poll_interval_s))
        try:
            yield
        finally:
            _unlock(fp)
    finally:
        with suppress(Exception):
            fp.close()
