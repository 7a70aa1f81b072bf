import asyncio
import logging
from typing import List

from .config import JobSpec, Settings
from .notifier import Notifier, build_sinks
from .poller import PollScheduler
from .virustotal import VirusTotalClient
from .watcher import FileJob


logger = logging.getLogger("dende.runtime")


class Monitor:
    """Owns every job of one process: file jobs on threads, poll jobs as tasks."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.notifiers: List[Notifier] = []
        self.file_jobs: List[FileJob] = []
        self.poll_tasks: List[asyncio.Task] = []

    def start(self) -> None:
        for idx, job in enumerate(self.settings.jobs):
            notifier = Notifier(build_sinks(job.to, self.settings.telegram_token_for(job)), name=f"job-{idx}")
            notifier.start()
            self.notifiers.append(notifier)
            if job.kind == "file":
                self._start_file_job(idx, job, notifier)
            else:
                self._start_poll_job(idx, job, notifier)

    def _start_file_job(self, idx: int, job: JobSpec, notifier: Notifier) -> None:
        fj = FileJob(
            idx,
            job.path,
            job.matcher(),
            notifier,
            recursive=job.recursive,
            read_existing=job.read_existing,
        )
        fj.start()
        self.file_jobs.append(fj)
        logger.info("[job %d] watching %s for %s", idx, job.path, fj.tailer.matcher)

    def _start_poll_job(self, idx: int, job: JobSpec, notifier: Notifier) -> None:
        client = VirusTotalClient(self.settings.virustotal_token_for(job))
        sched = PollScheduler(client, job.hashes, notifier, name=f"job-{idx}")
        self.poll_tasks.append(asyncio.create_task(self._poll(idx, sched, client)))

    async def _poll(self, idx: int, sched: PollScheduler, client: VirusTotalClient) -> None:
        try:
            await sched.run()
        except Exception:
            logger.exception("[job %d] virustotal scheduler error", idx)
        finally:
            await client.aclose()

    async def stop(self) -> None:
        for fj in self.file_jobs:
            fj.stop()
        for t in self.poll_tasks:
            t.cancel()
        await asyncio.gather(*self.poll_tasks, return_exceptions=True)
        for n in self.notifiers:
            await n.stop()


async def run_monitor(settings: Settings) -> None:
    monitor = Monitor(settings)
    monitor.start()
    logger.info("dende: %d job(s) running. Press Ctrl-C to quit.", len(settings.jobs))
    try:
        while True:
            await asyncio.sleep(3600)
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.info("Shutdown requested. Bye!")
        raise
    finally:
        await monitor.stop()
