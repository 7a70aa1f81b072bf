import asyncio
import json
import logging

import httpx
import pytest

from dende.errors import DeliveryError
from dende.events import MatchEvent
from dende.notifier import ConsoleSink, Notifier, RetryPolicy, TelegramSink, build_sinks


class RecordingSink:
    def __init__(self, failures=0, log=None, name="rec"):
        self.failures = failures
        self.calls = 0
        self.got = []
        self.log = log if log is not None else []
        self.name = name

    async def send(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise DeliveryError(f"{self.name} down")
        self.got.append(event.source)
        self.log.append((self.name, event.source))


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def ev(n: int) -> MatchEvent:
    return MatchEvent(path="/var/log/app.log", line_no=n, line=f"ERROR {n}")


def test_backoff_doubles_from_400ms_and_caps_at_5s():
    p = RetryPolicy()
    assert [p.delay(n) for n in (1, 2, 3, 4, 5)] == [0.4, 0.8, 1.6, 3.2, 5.0]


def test_messages_delivered_in_order_to_every_sink_in_order():
    log = []
    a = RecordingSink(log=log, name="a")
    b = RecordingSink(log=log, name="b")

    async def case():
        n = Notifier([a, b])
        for i in (1, 2, 3):
            n.notify(ev(i))
        n.start()
        await n.join()
        await n.stop()

    asyncio.run(case())
    src = [ev(i).source for i in (1, 2, 3)]
    assert log == [(name, s) for s in src for name in ("a", "b")]


def test_sink_succeeding_on_third_attempt_delivers_once():
    flaky = RecordingSink(failures=2)
    sleep = SleepRecorder()

    async def case():
        n = Notifier([flaky], sleep=sleep)
        n.start()
        n.notify(ev(1))
        await n.join()
        await n.stop()
        return n

    n = asyncio.run(case())
    assert flaky.calls == 3
    assert flaky.got == [ev(1).source]
    assert sleep.delays == [0.4, 0.8]
    assert n.delivered == 1
    assert n.dropped == 0


def test_failing_sink_drops_message_without_blocking_others(caplog):
    dead = RecordingSink(failures=100, name="dead")
    good = RecordingSink(name="good")
    sleep = SleepRecorder()

    async def case():
        n = Notifier([dead, good], sleep=sleep)
        n.start()
        n.notify(ev(1))
        n.notify(ev(2))
        await n.join()
        await n.stop()
        return n

    with caplog.at_level(logging.ERROR, logger="dende.notifier"):
        n = asyncio.run(case())

    assert dead.calls == 6
    assert good.got == [ev(1).source, ev(2).source]
    assert n.dropped == 2
    dropped = [r for r in caplog.records if "dropping" in r.getMessage()]
    assert len(dropped) == 2
    assert sleep.delays == [0.4, 0.8, 0.4, 0.8]


def test_notify_from_another_thread():
    sink = RecordingSink()

    async def case():
        n = Notifier([sink])
        n.start()
        await asyncio.to_thread(n.notify, ev(7))
        await n.join()
        await n.stop()

    asyncio.run(case())
    assert sink.got == [ev(7).source]


def test_build_sinks_skips_bad_recipients(caplog):
    with caplog.at_level(logging.WARNING, logger="dende.notifier"):
        sinks = build_sinks(["tg:123", "console:ops", "mail:me@x", "plain", "tg:abc"], telegram_token="T")
    assert [repr(s) for s in sinks] == ["TelegramSink(chat_id=123)", "ConsoleSink(tag='ops')"]
    assert len(caplog.records) == 3


def test_build_sinks_without_token_rejects_telegram_only():
    sinks = build_sinks(["tg:123", "console:"], telegram_token=None)
    assert len(sinks) == 1
    assert isinstance(sinks[0], ConsoleSink)
    assert sinks[0].tag == ""


def test_console_sink_prints_tagged_text(capsys):
    asyncio.run(ConsoleSink("ops").send(ev(3)))
    out = capsys.readouterr().out
    assert "[notify:ops]" in out
    assert "/var/log/app.log:3" in out
    assert "ERROR 3" in out


def test_telegram_sink_posts_escaped_html():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "result": {}})

    async def case():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = TelegramSink("123:abc", 42, client=client)
        await sink.send(MatchEvent(path="/srv/a.log", line_no=9, line="<script> ERROR"))
        await client.aclose()

    asyncio.run(case())
    req = seen[0]
    assert req.url.path.endswith("/sendMessage")
    assert "bot123" in str(req.url)
    body = json.loads(req.content)
    assert body["chat_id"] == 42
    assert body["parse_mode"] == "HTML"
    assert "&lt;script&gt; ERROR" in body["text"]
    assert "/srv/a.log:9" in body["text"]


@pytest.mark.parametrize("response", [
    httpx.Response(400, json={"ok": False, "description": "chat not found"}),
    None,
])
def test_telegram_sink_failures_raise_delivery_error(response):
    def handler(request: httpx.Request) -> httpx.Response:
        if response is None:
            raise httpx.ConnectError("connection refused", request=request)
        return response

    async def case():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = TelegramSink("t", 1, client=client)
        try:
            await sink.send(ev(1))
        finally:
            await client.aclose()

    with pytest.raises(DeliveryError):
        asyncio.run(case())


def test_telegram_verify_reports_bad_token():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/getMe"):
            return httpx.Response(401, json={"ok": False})
        return httpx.Response(200, json={"ok": True})

    async def case():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        ok = await TelegramSink("bad", 1, client=client).verify()
        await client.aclose()
        return ok

    assert asyncio.run(case()) is False
