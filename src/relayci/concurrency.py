"""
Concurrency groups and cooperative cancellation.

A concurrency group is a named key with at most one active holder. Holders
are Runs or JobInstances, each carrying a CancellationToken; preemption never
kills a thread, it cancels the evicted holder's token and lets the holder
notice at its next suspension point.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Union

from .errors import ConcurrencyPreemptedError, RunCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal.

    Cancelling a token cancels every child created from it. Callbacks run
    once, on the thread that cancels.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[BaseException] = None
        self._callbacks: List[Callable[[], None]] = []
        if parent is not None:
            parent.add_callback(lambda: self.cancel(parent.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[BaseException]:
        return self._reason

    def cancel(self, reason: Union[BaseException, str, None] = None) -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        if not isinstance(reason, BaseException):
            reason = RunCancelledError(reason or "cancelled")
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()
        return True

    def add_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        cb()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise self._reason


@dataclass(frozen=True)
class Holder:
    """Anything that can occupy a concurrency group: a Run or a JobInstance."""
    id: str
    token: CancellationToken = field(default_factory=CancellationToken, compare=False, repr=False)


class AcquireOutcome(str, Enum):
    GRANTED = "granted"
    QUEUED = "queued"
    GRANTED_AFTER_PREEMPTION = "granted_after_preemption"


@dataclass(frozen=True)
class AcquireResult:
    outcome: AcquireOutcome
    evicted: Optional[Holder] = None

    @property
    def granted(self) -> bool:
        return self.outcome is not AcquireOutcome.QUEUED


class ConcurrencyGroupManager:
    """
    Enforces a single active holder per group key.

    cancel_in_progress=False: holders queue FIFO behind the active one.
    cancel_in_progress=True:  the newcomer is granted at once and the active
                              holder's token is cancelled.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active: Dict[str, Holder] = {}
        self._queues: Dict[str, Deque[Holder]] = {}

    def acquire(self, key: str, holder: Holder, cancel_in_progress: bool = False) -> AcquireResult:
        with self._cond:
            current = self._active.get(key)
            if current is None or current == holder:
                self._active[key] = holder
                logger.debug("concurrency %s: granted to %s", key, holder.id)
                return AcquireResult(AcquireOutcome.GRANTED)

            if not cancel_in_progress:
                self._queues.setdefault(key, deque()).append(holder)
                logger.debug("concurrency %s: %s queued behind %s", key, holder.id, current.id)
                return AcquireResult(AcquireOutcome.QUEUED)

            self._active[key] = holder
            logger.info("concurrency %s: %s preempts %s", key, holder.id, current.id)

        # Cancel outside the lock; the evicted holder releases on its own thread.
        current.token.cancel(
            ConcurrencyPreemptedError(key=key, holder=current.id, preempted_by=holder.id)
        )
        return AcquireResult(AcquireOutcome.GRANTED_AFTER_PREEMPTION, evicted=current)

    def wait_until_granted(self, key: str, holder: Holder, timeout: Optional[float] = None) -> bool:
        """
        Block a queued holder until it becomes active.

        Returns False (and drops the holder from the queue) if its token is
        cancelled or the timeout expires first.
        """
        holder.token.add_callback(self._wake)
        with self._cond:
            granted = self._cond.wait_for(
                lambda: self._active.get(key) == holder or holder.token.cancelled,
                timeout=timeout,
            )
            if granted and self._active.get(key) == holder:
                return True
            self._discard(key, holder)
            return False

    def release(self, key: str, holder: Holder) -> Optional[Holder]:
        """
        Give up the slot (or a queue position). Returns the holder granted next.

        Releasing a holder that was already evicted leaves the slot alone.
        """
        with self._cond:
            if self._active.get(key) != holder:
                self._discard(key, holder)
                return None

            del self._active[key]
            nxt: Optional[Holder] = None
            queue = self._queues.get(key)
            while queue:
                candidate = queue.popleft()
                if not candidate.token.cancelled:
                    nxt = candidate
                    break
            if queue is not None and not queue:
                del self._queues[key]
            if nxt is not None:
                self._active[key] = nxt
                logger.debug("concurrency %s: handed from %s to %s", key, holder.id, nxt.id)
            self._cond.notify_all()
            return nxt

    def holder_of(self, key: str) -> Optional[Holder]:
        with self._cond:
            return self._active.get(key)

    def queued(self, key: str) -> List[Holder]:
        with self._cond:
            return list(self._queues.get(key, ()))

    def _discard(self, key: str, holder: Holder) -> None:
        queue = self._queues.get(key)
        if queue and holder in queue:
            queue.remove(holder)
            if not queue:
                del self._queues[key]

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()
