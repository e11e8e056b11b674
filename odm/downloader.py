"""Segmented, resumable download of a single job."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

import aiohttp

from odm.limiter import SpeedLimiter
from odm.models import DownloadJob, JobStatus, Segment

logger = logging.getLogger(__name__)

_PAUSE_POLL_SECONDS = 0.5
_SEGMENT_TIMEOUT = aiohttp.ClientTimeout(total=30)


class DownloadError(Exception):
    """Raised when a download attempt cannot finish."""


class NoContentLengthError(DownloadError):
    """The server did not report the size of the file."""

    def __init__(self) -> None:
        super().__init__("could not get content length from server")


class DownloadPaused(DownloadError):
    """The download stopped because its pause flag was set."""

    def __init__(self) -> None:
        super().__init__("download was paused by user")


class DownloadAborted(DownloadError):
    """The download stopped without completing."""

    def __init__(self) -> None:
        super().__init__("task was aborted")


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise DownloadError(f"network error: {exc}") from exc
    except OSError as exc:
        raise DownloadError(f"io error: {exc}") from exc


def _mark_failed(job: DownloadJob, reason: str) -> None:
    job.status = JobStatus.FAILED
    job.failure_reason = reason


def _parse_content_length(raw: str | None) -> int:
    if raw is None:
        raise NoContentLengthError()
    text = raw.strip()
    if not (text.isascii() and text.isdigit()):
        raise NoContentLengthError()
    return int(text)


def _plan_segments(total_size: int, num_threads: int) -> list[Segment]:
    threads = max(num_threads, 1)
    chunk_size = total_size // threads
    segments = []
    for index in range(threads):
        start = index * chunk_size
        end = total_size if index == threads - 1 else start + chunk_size
        segments.append(Segment(start_byte=start, end_byte=end, current_pos=start))
    return segments


async def run_download(
    session: aiohttp.ClientSession,
    job: DownloadJob,
    pause_flag: asyncio.Event,
    limiter: SpeedLimiter,
) -> None:
    """Start or resume ``job`` and return once the file is in place.

    ``pause_flag`` being set means the download should pause: while it is set
    before the attempt begins the call waits; once segments are running it
    raises :class:`DownloadPaused`. The job is updated in place throughout.
    """
    while True:
        if pause_flag.is_set():
            await asyncio.sleep(_PAUSE_POLL_SECONDS)
            continue

        await _initialize_job_state(session, job)

        tasks = [
            asyncio.create_task(
                _download_segment(session, job, index, pause_flag, limiter)
            )
            for index in range(len(job.segments))
        ]
        try:
            for task in tasks:
                try:
                    await task
                except DownloadError:
                    raise
                except Exception as exc:
                    raise DownloadAborted() from exc
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if job.progress() >= 1.0:
            with _translate_errors():
                os.replace(job.temporary_path(), job.destination)
            job.status = JobStatus.COMPLETED
            return
        if not pause_flag.is_set():
            _mark_failed(job, "Incomplete download")
            raise DownloadAborted()


async def _initialize_job_state(
    session: aiohttp.ClientSession, job: DownloadJob
) -> None:
    """Fetch metadata and lay out segments, or check the partial file on resume."""
    if job.status is JobStatus.COMPLETED:
        return

    temp_path = job.temporary_path()

    if job.segments:
        logger.info("Resuming download for job ID: %s", job.id)
        try:
            actual_size = temp_path.stat().st_size
        except OSError:
            reason = "Temporary file is missing for resume."
            _mark_failed(job, reason)
            raise DownloadError(f"io error: {reason}") from None
        if actual_size != job.total_size:
            reason = "Temporary file size mismatch. Please restart download."
            _mark_failed(job, reason)
            raise DownloadError(f"io error: {reason}")
    else:
        logger.info("Starting new download for job ID: %s", job.id)
        with _translate_errors():
            async with session.head(job.url) as response:
                raw_length = response.headers.get("Content-Length")
        size = _parse_content_length(raw_length)
        job.total_size = size

        with _translate_errors():
            job.destination.parent.mkdir(parents=True, exist_ok=True)
            temp_path.touch()
            os.truncate(temp_path, size)

        job.segments = _plan_segments(size, job.num_threads)

    job.status = JobStatus.DOWNLOADING
    job.failure_reason = None


async def _download_segment(
    session: aiohttp.ClientSession,
    job: DownloadJob,
    index: int,
    pause_flag: asyncio.Event,
    limiter: SpeedLimiter,
) -> None:
    """Fetch the remaining bytes of one segment into the partial file."""
    segment = job.segments[index]
    if segment.is_complete():
        return

    range_header = f"bytes={segment.current_pos}-{segment.end_byte - 1}"
    temp_path = job.temporary_path()

    with _translate_errors():
        async with session.get(
            job.url, headers={"Range": range_header}, timeout=_SEGMENT_TIMEOUT
        ) as response:
            response.raise_for_status()
            with open(temp_path, "r+b") as handle:
                async for chunk in response.content.iter_any():
                    if pause_flag.is_set():
                        raise DownloadPaused()
                    await limiter.take(len(chunk))
                    handle.seek(segment.current_pos)
                    handle.write(chunk)
                    segment.current_pos += len(chunk)
                    job.downloaded_bytes += len(chunk)