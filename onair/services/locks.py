import threading
from contextlib import contextmanager

from onair.errors import ChannelBusy

LOCK_TIMEOUT_SEC = 30.0


class ChannelLocks:
    """One mutex per channel id, held for the whole check-then-act sequence."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, channel_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(channel_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[channel_id] = lock
            return lock

    @contextmanager
    def hold(self, channel_id: str, timeout: float = LOCK_TIMEOUT_SEC):
        lock = self._lock_for(channel_id)
        if not lock.acquire(timeout=timeout):
            raise ChannelBusy(f"Channel {channel_id} is busy with another command.")
        try:
            yield
        finally:
            lock.release()


channel_locks = ChannelLocks()
