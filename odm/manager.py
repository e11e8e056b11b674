"""Scheduling and lifecycle control for many download jobs."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import os
from collections.abc import Iterator
from pathlib import Path
from types import TracebackType

import aiohttp

from odm.downloader import DownloadError, DownloadPaused, run_download
from odm.limiter import SpeedLimiter
from odm.models import DownloadJob, JobStatus
from odm.state_manager import StateError, StateManager

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/108.0.0.0 Safari/537.36"
)
_SCHEDULE_INTERVAL = 0.5
_SAVE_INTERVAL = 5.0


class ManagerError(Exception):
    """Raised when the download manager cannot carry out a request."""


class JobNotFoundError(ManagerError):
    """No job with the given id is known to the manager."""

    def __init__(self, job_id: int) -> None:
        self.job_id = job_id
        super().__init__(f"job with ID {job_id} not found")


@contextlib.contextmanager
def _state_errors() -> Iterator[None]:
    try:
        yield
    except StateError as exc:
        raise ManagerError(f"state manager error: {exc}") from exc


class DownloadManager:
    """Keeps every job's state, starts queued jobs and persists their progress."""

    def __init__(
        self,
        state_manager: StateManager,
        max_concurrent_downloads: int,
        jobs: dict[int, DownloadJob],
        session: aiohttp.ClientSession,
    ) -> None:
        self._state = state_manager
        self._max_concurrent = max_concurrent_downloads
        self._jobs = jobs
        self._session = session
        self._limiter = SpeedLimiter(0)
        self._workers: dict[int, asyncio.Task[None]] = {}
        self._saver_stops: dict[int, asyncio.Event] = {}
        self._pause_flags: dict[int, asyncio.Event] = {}
        self._next_job_id = max(jobs, default=0) + 1

    @classmethod
    async def create(
        cls, state_manager: StateManager, max_concurrent_downloads: int
    ) -> DownloadManager:
        """Load stored jobs; any that were downloading come back paused."""
        with _state_errors():
            loaded = await state_manager.load_all_jobs()
        jobs: dict[int, DownloadJob] = {}
        for job in loaded:
            if job.status is JobStatus.DOWNLOADING:
                job.status = JobStatus.PAUSED
            jobs[job.id] = job
        session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
        return cls(state_manager, max_concurrent_downloads, jobs, session)

    async def __aenter__(self) -> DownloadManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def speed_limit(self) -> int:
        """The global limit in bytes per second (0 means unlimited)."""
        return self._limiter.rate

    async def set_speed_limit(self, bytes_per_sec: int) -> None:
        """Set the global download speed limit; 0 means unlimited."""
        logger.info("Setting global speed limit to %s bytes/sec.", bytes_per_sec)
        await self._limiter.set_rate(bytes_per_sec)

    async def add_new_job(
        self, url: str, destination: str | os.PathLike[str], num_threads: int
    ) -> int:
        """Queue a new download and return its id."""
        job_id = self._next_job_id
        self._next_job_id += 1
        job = DownloadJob(
            id=job_id, url=url, destination=Path(destination), num_threads=num_threads
        )
        with _state_errors():
            await self._state.save_job(job)
        self._jobs[job_id] = job
        logger.info("Added new job %s to the queue.", job_id)
        return job_id

    async def run(self) -> None:
        """Start queued jobs as slots free up, forever, lowest id first."""
        while True:
            self._prune_completed_workers()
            available = max(self._max_concurrent - len(self._workers), 0)
            if available:
                candidates = sorted(
                    job_id
                    for job_id, job in self._jobs.items()
                    if job_id not in self._workers and job.status is JobStatus.QUEUED
                )
                for job_id in candidates[:available]:
                    self._spawn_worker(self._jobs[job_id])
            await asyncio.sleep(_SCHEDULE_INTERVAL)

    def _spawn_worker(self, job: DownloadJob) -> None:
        pause_flag = asyncio.Event()
        saver_stop = asyncio.Event()
        self._pause_flags[job.id] = pause_flag
        self._saver_stops[job.id] = saver_stop
        self._workers[job.id] = asyncio.create_task(
            self._work(job, pause_flag, saver_stop)
        )

    async def _work(
        self, job: DownloadJob, pause_flag: asyncio.Event, saver_stop: asyncio.Event
    ) -> None:
        logger.info("Worker starting for job ID: %s", job.id)
        saver = asyncio.create_task(self._save_periodically(job, saver_stop))
        try:
            await run_download(self._session, job, pause_flag, self._limiter)
        except DownloadPaused:
            job.status = JobStatus.PAUSED
            logger.info("Worker for job %s was paused.", job.id)
        except DownloadError as exc:
            self._fail(job, str(exc))
        except Exception as exc:  # noqa: BLE001 - any crash must end as a failed job
            self._fail(job, str(exc))
        else:
            logger.info("Worker for job %s finished successfully.", job.id)
        finally:
            saver_stop.set()
            await asyncio.gather(saver, return_exceptions=True)

        try:
            await self._state.save_job(job)
        except StateError as exc:
            logger.error("Failed to save final state for job %s: %s", job.id, exc)

    @staticmethod
    def _fail(job: DownloadJob, reason: str) -> None:
        job.status = JobStatus.FAILED
        job.failure_reason = reason
        logger.error("Worker for job %s failed: %s", job.id, reason)

    async def _save_periodically(self, job: DownloadJob, stop: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=_SAVE_INTERVAL)
                return
            except asyncio.TimeoutError:
                pass
            if job.status is not JobStatus.DOWNLOADING:
                return
            try:
                await self._state.save_job(job)
            except StateError as exc:
                logger.error("Periodic save for job %s failed: %s", job.id, exc)

    def _prune_completed_workers(self) -> None:
        finished = [job_id for job_id, task in self._workers.items() if task.done()]
        for job_id in finished:
            logger.info("Pruning completed worker for job %s.", job_id)
            self._workers.pop(job_id, None)
            self._saver_stops.pop(job_id, None)
            self._pause_flags.pop(job_id, None)

    async def pause_download(self, job_id: int) -> None:
        """Pause a running job, or move a queued one to paused."""
        logger.info("Received pause request for job %s.", job_id)
        pause_flag = self._pause_flags.get(job_id)
        if pause_flag is not None:
            pause_flag.set()
            return
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status is JobStatus.QUEUED:
            job.status = JobStatus.PAUSED
            with _state_errors():
                await self._state.save_job(job)
            logger.info("Job %s was Queued, moved to Paused state.", job_id)

    async def resume_download(self, job_id: int) -> None:
        """Put a paused job back in the queue; other states are left alone."""
        logger.info("Received resume request for job %s.", job_id)
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status is JobStatus.PAUSED:
            job.status = JobStatus.QUEUED
            with _state_errors():
                await self._state.save_job(job)
            logger.info("Job %s set to Queued.", job_id)
        else:
            logger.info("Job %s is not Paused, resume ignored.", job_id)

    async def cancel_download(self, job_id: int, delete_file: bool = False) -> None:
        """Stop a job, forget it, and optionally remove its files."""
        logger.info("Received cancel request for job %s.", job_id)
        saver_stop = self._saver_stops.pop(job_id, None)
        if saver_stop is not None:
            saver_stop.set()
        self._pause_flags.pop(job_id, None)

        worker = self._workers.pop(job_id, None)
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
            logger.info("Aborted and awaited worker for job %s.", job_id)

        job = self._jobs.pop(job_id, None)
        if job is None:
            raise JobNotFoundError(job_id)
        with _state_errors():
            await self._state.delete_job(job_id)
        logger.info("Removed job %s from the database.", job_id)

        if delete_file:
            for path in (job.temporary_path(), job.destination):
                with contextlib.suppress(OSError):
                    path.unlink(missing_ok=True)
            logger.info("Cleaned up files for job %s.", job_id)

    async def get_all_jobs(self) -> list[DownloadJob]:
        """Snapshots of every known job, ordered by id."""
        return [copy.deepcopy(self._jobs[job_id]) for job_id in sorted(self._jobs)]

    async def close(self) -> None:
        """Stop all workers and release the HTTP session."""
        workers = list(self._workers.values())
        for stop in self._saver_stops.values():
            stop.set()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._saver_stops.clear()
        self._pause_flags.clear()
        await self._session.close()