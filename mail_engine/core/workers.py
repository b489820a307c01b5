"""
Threading primitives for blocking mail I/O.

IoWorkerPool runs network calls off the caller's thread; KeyedLock
serializes work that touches the same (account, folder) pair while letting
unrelated pairs proceed in parallel.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Dict, Hashable, Iterator, Optional

from mail_engine import config


logger = logging.getLogger(__name__)


class KeyedLock:
    """A registry of locks, one per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for key for the duration of the block."""
        lock = self._lock_for(key)
        with lock:
            yield

    def locked(self, key: Hashable) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return bool(lock and lock.locked())


class IoWorkerPool:
    """Bounded thread pool for blocking network and disk operations."""

    def __init__(self, max_workers: Optional[int] = None, name: str = "mail-io"):
        self.max_workers = max_workers or config.SYNC_MAX_WORKERS
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name)
        self._closed = False

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        if self._closed:
            raise RuntimeError("I/O worker pool is shut down")
        return self._executor.submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and cancel anything not yet started."""
        if self._closed:
            return
        self._closed = True
        logger.debug("Shutting down I/O worker pool")
        self._executor.shutdown(wait=wait, cancel_futures=True)
