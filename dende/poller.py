import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Tuple, Union

from .errors import TransientLookupError
from .events import ReputationEvent


logger = logging.getLogger("dende.poller")

SECONDS_PER_DAY = 86400
DAILY_QUOTA = 400
STEADY_INTERVAL = SECONDS_PER_DAY / DAILY_QUOTA  # 216s
BURST_MAX = 4
BURST_REFILL_EVERY = 60.0

STAT_KEYS = (
    "malicious",
    "suspicious",
    "undetected",
    "harmless",
    "timeout",
    "failure",
    "confirmed-timeout",
)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Found:
    filename: str
    description: str
    url: str
    first_seen: str
    reputation: int
    ratio: str
    malicious: int


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class TransientError:
    reason: str = ""


PollResult = Union[Found, NotFound, TransientError]


def detection_ratio(stats: Mapping[str, int]) -> Tuple[int, int, str]:
    """Return (malicious, total, "<malicious>/<total>") from analysis stats."""
    stats = stats or {}

    def _n(key: str) -> int:
        try:
            return int(stats.get(key) or 0)
        except (TypeError, ValueError):
            return 0

    malicious = _n("malicious")
    total = sum(_n(k) for k in STAT_KEYS)
    ratio = f"{malicious}/{total}" if total > 0 else "0/0"
    return malicious, total, ratio


class SteadyTicker:
    """Fixed-period ticker. The first tick fires immediately.

    When the caller stalls past one or more deadlines the missed ticks are
    dropped: the next deadline is the first period boundary after now.
    """

    def __init__(self, period: float, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep):
        self.period = float(period)
        self._clock = clock
        self._sleep = sleep
        self._deadline = None

    async def tick(self) -> float:
        now = self._clock()
        if self._deadline is None:
            self._deadline = now
        if now < self._deadline:
            await self._sleep(self._deadline - now)
            now = self._clock()
        fired = self._deadline
        nxt = fired + self.period
        if nxt <= now and self.period > 0:
            nxt = fired + (int((now - fired) // self.period) + 1) * self.period
        self._deadline = nxt
        return now


class BurstPool:
    """Counting permit pool topped back up to `size` on fixed period boundaries.

    Boundaries are measured from first use; this is a periodic refill, not a
    sliding window.
    """

    def __init__(
        self,
        size: int = BURST_MAX,
        refill_every: float = BURST_REFILL_EVERY,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.size = size
        self.refill_every = float(refill_every)
        self.available = size
        self._clock = clock
        self._sleep = sleep
        self._next_refill = None
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        if self._next_refill is None:
            self._next_refill = now + self.refill_every
            return
        if now >= self._next_refill:
            self.available = self.size
            periods = int((now - self._next_refill) // self.refill_every) + 1
            self._next_refill += periods * self.refill_every

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._refill(now)
                if self.available > 0:
                    self.available -= 1
                    return
                logger.debug("burst pool empty, waiting %.1fs for refill", self._next_refill - now)
                await self._sleep(self._next_refill - now)


class PollScheduler:
    """Drain a FIFO of hashes through a reputation client at a gated rate.

    Each steady tick pops the head, waits for a burst permit and issues one
    lookup. Found hashes are notified and dropped; anything else goes back to
    the tail, without a retry cap. run() returns once the queue is empty.

    The client needs ``async lookup(hash) -> PollResult``; it may raise
    TransientLookupError.
    """

    def __init__(
        self,
        client,
        hashes: Iterable[str],
        notifier,
        *,
        interval: float = STEADY_INTERVAL,
        burst: int = BURST_MAX,
        refill_every: float = BURST_REFILL_EVERY,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        name: str = "virustotal",
    ):
        self.client = client
        self.notifier = notifier
        self.name = name
        self.queue: Deque[str] = deque(hashes)
        self.ticker = SteadyTicker(interval, clock=clock, sleep=sleep)
        self.pool = BurstPool(burst, refill_every, clock=clock, sleep=sleep)
        self.resolved: List[str] = []
        self.attempts: Dict[str, int] = {}

    async def run(self) -> List[str]:
        logger.info(
            "[%s] polling %d hash(es), one lookup per %.0fs, burst %d per %.0fs",
            self.name, len(self.queue), self.ticker.period, self.pool.size, self.pool.refill_every,
        )
        while self.queue:
            await self.ticker.tick()
            await self.step()
        logger.info("[%s] all hashes resolved. Done.", self.name)
        return self.resolved

    async def step(self) -> PollResult:
        entry = self.queue.popleft()
        await self.pool.acquire()
        self.attempts[entry] = self.attempts.get(entry, 0) + 1
        try:
            result = await self.client.lookup(entry)
        except TransientLookupError as e:
            result = TransientError(str(e))
        except Exception as e:
            logger.exception("[%s] unexpected lookup failure for %s", self.name, entry)
            result = TransientError(f"{type(e).__name__}: {e}")
        self._settle(entry, result)
        return result

    def _settle(self, entry: str, result: PollResult) -> None:
        if isinstance(result, Found):
            logger.info("[%s] %s published on VirusTotal (%s)", self.name, entry, result.ratio)
            self.resolved.append(entry)
            self.notifier.notify(ReputationEvent(hash=entry, result=result))
        elif isinstance(result, NotFound):
            logger.info("[%s] %s not found yet, requeued", self.name, entry)
            self.queue.append(entry)
        else:
            logger.error("[%s] transient lookup error for %s: %s; requeued", self.name, entry, result.reason)
            self.queue.append(entry)
