from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from ingress_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

# 2**62 * any sane base delay is already far past every useful cap.
_MAX_BACKOFF_EXPONENT = 62


class ShutDown(Exception):
    """Raised by :meth:`WorkQueue.get` once the queue is shut down and drained."""


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures`` capped at ``max_delay``.

    Every call to :meth:`when` counts as one failure for *item*; the count is
    what :meth:`num_requeues` reports and what :meth:`forget` clears.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        if exponent > _MAX_BACKOFF_EXPONENT:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all items (``qps`` refill, ``burst`` capacity).

    Protects the API server from a retry storm when many keys fail at once.
    It keeps no per-item state.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay and the highest requeue count."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> RateLimiter:
    """Return the usual controller limiter: per-item backoff combined with an overall bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class WorkQueue:
    """Deduplicating FIFO queue with dirty-while-processing semantics.

    Bookkeeping, all guarded by one condition variable:
        ``_queue``
            Items ready to be handed out, in insertion order.
        ``_dirty``
            Items that need processing.  An item is added to the queue at
            most once while it is dirty, which gives deduplication.
        ``_processing``
            Items currently held by a worker.  Re-adding such an item only
            marks it dirty; :meth:`done` puts it back on the queue, so one
            item is never processed by two workers at the same time.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

    def _record_depth(self) -> None:
        METRICS.queue_depth.labels(name=self.name).set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            METRICS.queue_adds_total.labels(name=self.name).inc()
            if item in self._processing:
                return
            self._queue.append(item)
            self._record_depth()
            self._cond.notify()

    def get(self) -> Hashable:
        """Block until an item is available and mark it as being processed.

        After :meth:`shutdown` the remaining items are still handed out;
        :class:`ShutDown` is raised once the queue is empty.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                raise ShutDown
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._record_depth()
            return item

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._record_depth()
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class DelayingQueue(WorkQueue):
    """Work queue that can hold items back until a delay has elapsed.

    Delayed items live in a heap drained by a background thread that is
    started on first use.  If an item is already waiting, only an *earlier*
    ready time replaces the existing one.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(name=name)
        self._clock = clock
        self._delay_cond = threading.Condition()
        self._heap: list[tuple[float, int, Hashable]] = []
        self._waiting: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._waiter: threading.Thread | None = None
        self._stopped = False

    def add_after(self, item: Hashable, delay: float) -> None:
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        with self._delay_cond:
            if self._stopped:
                return
            ready_at = self._clock() + delay
            existing = self._waiting.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[item] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._sequence), item))
            if self._waiter is None:
                self._waiter = threading.Thread(
                    target=self._waiting_loop,
                    name=f"{self.name or 'workqueue'}-delaying",
                    daemon=True,
                )
                self._waiter.start()
            self._delay_cond.notify()

    def _pop_ready(self, now: float) -> list[Hashable]:
        ready: list[Hashable] = []
        while self._heap:
            ready_at, _, item = self._heap[0]
            if self._waiting.get(item) != ready_at:
                # Superseded by an earlier ready time.
                heapq.heappop(self._heap)
                continue
            if ready_at > now:
                break
            heapq.heappop(self._heap)
            del self._waiting[item]
            ready.append(item)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._delay_cond:
                ready: list[Hashable] = []
                while not self._stopped:
                    now = self._clock()
                    ready = self._pop_ready(now)
                    if ready:
                        break
                    timeout = self._heap[0][0] - now if self._heap else None
                    self._delay_cond.wait(timeout=timeout)
                if self._stopped:
                    return
            for item in ready:
                self.add(item)

    def waiting(self) -> int:
        """Return the number of items currently held back by a delay."""
        with self._delay_cond:
            return len(self._waiting)

    def shutdown(self) -> None:
        super().shutdown()
        with self._delay_cond:
            self._stopped = True
            self._delay_cond.notify_all()


class RateLimitingQueue(DelayingQueue):
    """Delaying queue whose re-adds are paced by a :class:`RateLimiter`.

    The limiter owns the per-item retry count, so callers ask the queue
    (:meth:`num_requeues`) rather than tracking attempts themselves.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        LOGGER.debug("Requeueing %s in %.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
