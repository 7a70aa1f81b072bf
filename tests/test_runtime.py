import asyncio
import time
from pathlib import Path

from dende.config import JobSpec, Settings
from dende.runtime import Monitor


async def wait_until(cond, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        await asyncio.sleep(0.05)
    return cond()


def test_monitor_reads_existing_match_and_isolates_failed_job(tmp_path: Path, capsys):
    log = tmp_path / "app.log"
    log.write_text("boot\nready\nERROR cache miss storm\n", encoding="utf-8")
    settings = Settings(jobs=[
        JobSpec(to=["console:broken"], path=str(tmp_path / "missing"), search="ERROR"),
        JobSpec(to=["console:ops", "tg:1"], path=str(log), search="ERROR"),
    ])

    async def case():
        monitor = Monitor(settings)
        monitor.start()
        try:
            ok = await wait_until(lambda: monitor.notifiers[1].delivered >= 1)
            broken, good = monitor.file_jobs
            await asyncio.to_thread(broken.ready.wait, 5)
            return ok, broken.failed, good.failed, len(monitor.notifiers[1].sinks)
        finally:
            await monitor.stop()

    ok, broken_failed, good_failed, sink_count = asyncio.run(case())
    assert ok
    assert broken_failed is not None
    assert good_failed is None
    # tg:1 has no bot token, only the console sink remains
    assert sink_count == 1
    out = capsys.readouterr().out
    assert "[notify:ops]" in out
    assert f"{log}:3" in out
