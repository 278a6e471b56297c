from __future__ import annotations

import contextlib
import logging
import os
import time
from pathlib import Path


logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return True


def read_pid(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


class PidLock:
    """Single-flight guard: a file holding the PID of the active run.

    The file is written aside and linked into place, so it is never seen
    empty. A lock whose PID is no longer alive is stale and taken over; one
    without a readable PID counts as held until it is older than
    ``stale_after_seconds``.
    """

    def __init__(self, path: Path, pid: int | None = None, stale_after_seconds: float = 60.0) -> None:
        self.path = path
        self._pid = pid if pid is not None else os.getpid()
        self._stale_after_seconds = stale_after_seconds
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _create(self) -> bool:
        tmp = self.path.with_name(f"{self.path.name}.{self._pid}.tmp")
        tmp.write_text(str(self._pid), encoding="utf-8")
        try:
            os.link(tmp, self.path)
        except FileExistsError:
            return False
        finally:
            tmp.unlink(missing_ok=True)
        return True

    def _age_seconds(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _take_over(self, stale_owner: int | None) -> bool:
        aside = self.path.with_name(f"{self.path.name}.stale.{self._pid}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return self._create()
        try:
            if read_pid(aside) != stale_owner:
                # Someone else replaced the stale lock first; put theirs back.
                with contextlib.suppress(FileExistsError):
                    os.link(aside, self.path)
                return False
        finally:
            aside.unlink(missing_ok=True)
        return self._create()

    def acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._create():
            self._held = True
            return True

        owner = read_pid(self.path)
        if owner is not None and owner != self._pid and pid_alive(owner):
            logger.info("another run is active (pid %s, lock %s)", owner, self.path)
            return False
        if owner is None:
            age = self._age_seconds()
            if age is not None and age < self._stale_after_seconds:
                logger.info("lock %s has no pid yet, treating it as held", self.path)
                return False

        logger.warning("removing stale lock %s (pid %s)", self.path, owner)
        if self._take_over(owner) and read_pid(self.path) == self._pid:
            self._held = True
            return True
        logger.info("lost the takeover of %s to another process", self.path)
        return False

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if read_pid(self.path) == self._pid:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
