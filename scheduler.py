"""
Interval job scheduler with persisted last-run timestamps
"""
import fcntl
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from settings_store import SettingsStore

logger = logging.getLogger(__name__)


def is_due(last_run: Optional[int], interval: int, now: int) -> bool:
    """A job that never ran is due; otherwise it waits a full interval"""
    return last_run is None or now >= last_run + interval


@dataclass
class Job:
    name: str
    interval: int
    func: Callable[[], object]


class Scheduler:
    """Runs registered jobs when their interval has elapsed"""

    def __init__(self, settings_store: SettingsStore, clock: Callable[[], float] = time.time):
        self.settings_store = settings_store
        self.clock = clock
        self.jobs: List[Job] = []

    def register(self, name: str, interval: int, func: Callable[[], object]) -> None:
        self.jobs = [job for job in self.jobs if job.name != name]
        self.jobs.append(Job(name, interval, func))

    @staticmethod
    def last_run_key(name: str) -> str:
        return f'scheduler_last_run_{name}'

    def last_run(self, name: str) -> Optional[int]:
        value = self.settings_store.get(self.last_run_key(name))
        if value is None or value == '':
            return None
        try:
            return int(value)
        except ValueError:
            logger.error("Invalid last run for job %s: %r", name, value)
            return None

    def run_due_jobs(self, now: Optional[int] = None) -> List[str]:
        """
        Run every due job once

        A job's last run is stored only when it completes; a failing job is
        logged and retried on the next eligible tick.

        Returns:
            Names of the jobs that completed
        """
        if now is None:
            now = int(self.clock())
        completed = []
        for job in self.jobs:
            if not is_due(self.last_run(job.name), job.interval, now):
                continue
            logger.info("Running job %s", job.name)
            try:
                job.func()
            except Exception as e:
                logger.exception("Scheduler job %s failed: %s", job.name, e)
                continue
            self.settings_store.set(self.last_run_key(job.name), str(now))
            completed.append(job.name)
        return completed

    def run_once(self) -> List[str]:
        return self.run_due_jobs()

    def run_forever(self, poll_interval: float = 0.5, sleep: Callable[[float], None] = time.sleep,
                    should_stop: Callable[[], bool] = lambda: False) -> None:
        while not should_stop():
            try:
                self.run_due_jobs()
            except Exception as e:
                # Settings store unavailable; keep polling
                logger.exception("Scheduler tick failed: %s", e)
            sleep(poll_interval)


class SchedulerLock:
    """Exclusive non-blocking file lock held for the scheduler's lifetime"""

    def __init__(self, path: str):
        self.path = path
        self._handle = None

    def acquire(self) -> bool:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handle = open(self.path, 'a')
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            return False
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is not None:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            self._handle.close()
            self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
