import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Union

import httpx

from .errors import DeliveryError


logger = logging.getLogger("dende.notifier")

TELEGRAM_API = "https://api.telegram.org"


class ConsoleSink:
    def __init__(self, tag: str):
        self.tag = tag

    async def send(self, event) -> None:
        print(f"\n[notify:{self.tag}] {event.text()}\n", flush=True)

    def __repr__(self) -> str:
        return f"ConsoleSink(tag={self.tag!r})"


class TelegramSink:
    """Sends HTML-formatted messages through the Telegram Bot API."""

    def __init__(
        self,
        token: str,
        chat_id: int,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = TELEGRAM_API,
        timeout: float = 15.0,
    ):
        self.token = token
        self.chat_id = chat_id
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, method: str) -> str:
        return f"{self.base_url}/bot{self.token}/{method}"

    async def send(self, event) -> None:
        payload = {"chat_id": self.chat_id, "text": event.html(), "parse_mode": "HTML"}
        try:
            resp = await self._client.post(self._url("sendMessage"), json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(f"telegram transport error: {type(e).__name__}: {e}") from e
        if not resp.is_success:
            raise DeliveryError(f"telegram HTTP {resp.status_code}: {resp.text[:200]}")
        logger.debug("sent by telegram to chat %d", self.chat_id)

    async def verify(self) -> bool:
        """Check the bot token once with getMe. Failures are only logged."""
        try:
            resp = await self._client.get(self._url("getMe"))
            resp.raise_for_status()
            me = resp.json().get("result") or {}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Telegram getMe error for chat %d: %s", self.chat_id, e)
            return False
        logger.debug("Telegram running as @%s (id=%s)", me.get("username", "unknown"), me.get("id"))
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def __repr__(self) -> str:
        return f"TelegramSink(chat_id={self.chat_id})"


Sink = Union[ConsoleSink, TelegramSink]


def build_sinks(recipients: Sequence[str], telegram_token: Optional[str] = None) -> List[Sink]:
    """Resolve "<scheme>:<payload>" recipients into sinks.

    Bad entries are logged and skipped; the remaining sinks are kept in order.
    """
    sinks: List[Sink] = []
    for raw in recipients:
        scheme, sep, payload = str(raw).partition(":")
        scheme = scheme.strip().lower()
        if not sep or not scheme:
            logger.warning("skipping recipient %r: expected '<scheme>:<payload>'", raw)
            continue
        if scheme == "tg":
            try:
                chat_id = int(payload.strip())
            except ValueError:
                logger.warning("skipping Telegram recipient %r: chat id must be numeric", raw)
                continue
            if not telegram_token:
                logger.warning("skipping Telegram recipient %r: no bot token provided", raw)
                continue
            sinks.append(TelegramSink(telegram_token, chat_id))
        elif scheme == "console":
            sinks.append(ConsoleSink(payload))
        else:
            logger.warning("skipping recipient %r: scheme %r is not implemented", raw, scheme)
    return sinks


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.4
    max_delay: float = 5.0

    def delay(self, failed_attempt: int) -> float:
        """Backoff to wait after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (failed_attempt - 1)), self.max_delay)


class Notifier:
    """Per-job dispatcher: one ordered mailbox drained by a single task.

    Every message goes to every sink in order; each sink gets up to
    policy.attempts tries before the message is dropped for that sink.
    notify() is safe to call from other threads.
    """

    def __init__(
        self,
        sinks: Sequence,
        name: str = "notifier",
        policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sinks = list(sinks)
        self.name = name
        self.policy = policy
        self._sleep = sleep
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._side_tasks: List[asyncio.Task] = []
        self.delivered = 0
        self.dropped = 0

    def start(self) -> asyncio.Task:
        self._loop = asyncio.get_running_loop()
        if not self.sinks:
            logger.warning("[%s] no usable recipients; notifications will be discarded", self.name)
        for sink in self.sinks:
            if isinstance(sink, TelegramSink):
                self._side_tasks.append(self._loop.create_task(sink.verify()))
        self._task = self._loop.create_task(self._run())
        return self._task

    def notify(self, event) -> None:
        """Queue an event for delivery and return immediately."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is None or running is self._loop:
            self._mailbox.put_nowait(event)
            return
        self._loop.call_soon_threadsafe(self._mailbox.put_nowait, event)

    async def _run(self) -> None:
        while True:
            event = await self._mailbox.get()
            try:
                await self.deliver(event)
            finally:
                self._mailbox.task_done()

    async def deliver(self, event) -> None:
        for sink in self.sinks:
            await self._send_with_retry(sink, event)

    async def _send_with_retry(self, sink, event) -> bool:
        attempt = 1
        while True:
            try:
                await sink.send(event)
            except Exception as e:
                if attempt >= self.policy.attempts:
                    self.dropped += 1
                    logger.error(
                        "[%s] dropping %s message from %s for %r after %d attempts: %s",
                        self.name, event.kind, event.source, sink, attempt, e,
                    )
                    return False
                delay = self.policy.delay(attempt)
                logger.warning(
                    "[%s] %r attempt %d/%d failed: %s; retrying in %.1fs",
                    self.name, sink, attempt, self.policy.attempts, e, delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue
            self.delivered += 1
            return True

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        await self._mailbox.join()

    async def stop(self) -> None:
        """Cancel delivery; undelivered messages are lost."""
        tasks = [t for t in [self._task, *self._side_tasks] if t is not None]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for sink in self.sinks:
            close = getattr(sink, "aclose", None)
            if close is not None:
                await close()
