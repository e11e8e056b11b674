"""Command that downloads one file under a speed limit and checks the limit held."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys
import time
from collections.abc import Sequence
from pathlib import Path

from odm.manager import DownloadManager, ManagerError
from odm.models import JobStatus
from odm.state_manager import StateError, StateManager

DEFAULT_URL = "http://212.183.159.230/50MB.zip"
DEFAULT_DESTINATION = "50MB.zip"
DEFAULT_DB = "downloads.db"
DEFAULT_THREADS = 8
DEFAULT_LIMIT = 10 * 1024 * 1024
_MIN_TIME_FACTOR = 0.9
_MAX_TIME_FACTOR = 2.0


class CommandError(Exception):
    """The download or its verification did not succeed."""


def _non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError("must not be negative")
    return value


def _positive_float(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="odm",
        description="Download a file with a speed limit and verify the limit was respected.",
    )
    parser.add_argument("url", nargs="?", default=DEFAULT_URL, help="URL to download")
    parser.add_argument(
        "destination", nargs="?", default=DEFAULT_DESTINATION, help="where to save the file"
    )
    parser.add_argument("--db", default=DEFAULT_DB, help="job database file")
    parser.add_argument(
        "--threads", type=_non_negative_int, default=DEFAULT_THREADS,
        help="number of segments to download in parallel",
    )
    parser.add_argument(
        "--limit", type=_non_negative_int, default=DEFAULT_LIMIT,
        help="speed limit in bytes per second (0 means unlimited, no timing check)",
    )
    parser.add_argument(
        "--poll-interval", type=_positive_float, default=1.0,
        help="seconds between progress reports",
    )
    parser.add_argument(
        "--keep", action="store_true",
        help="keep the downloaded file and database afterwards",
    )
    return parser


def _remove_quietly(*paths: Path) -> None:
    for path in paths:
        with contextlib.suppress(OSError):
            path.unlink(missing_ok=True)


def _check_timing(elapsed: float, size: int, limit: int) -> None:
    speed = (size / (1024 * 1024)) / elapsed if elapsed > 0 else float("inf")
    print(f"\n[VERIFY] Download completed in {elapsed:.2f} seconds.")
    print(f"[VERIFY] Actual average speed: {speed:.2f} MB/s")
    if limit == 0:
        return
    expected = size / limit
    print(f"[INFO] Theoretical minimum time: {expected:.2f} seconds.")
    if elapsed < expected * _MIN_TIME_FACTOR:
        raise CommandError("Download finished too fast! Limiter may not be working.")
    if elapsed > expected * _MAX_TIME_FACTOR:
        raise CommandError(
            "Download took too long! Limiter may be too aggressive or network is slow."
        )
    print("\nTest successful: Speed limiter worked as expected.")


async def _wait_for_job(
    manager: DownloadManager, job_id: int, poll_interval: float
) -> int:
    """Report progress until the job completes; return its size in bytes."""
    while True:
        await asyncio.sleep(poll_interval)
        jobs = await manager.get_all_jobs()
        job = next((item for item in jobs if item.id == job_id), None)
        if job is None:
            raise CommandError("Job disappeared from manager.")
        print(f"[PROGRESS] {job.progress() * 100:.2f}%")
        if job.status is JobStatus.COMPLETED:
            return job.total_size
        if job.status is JobStatus.FAILED:
            raise CommandError(
                f"Download failed unexpectedly: {job.failure_reason or 'unknown reason'}"
            )


async def _run(args: argparse.Namespace) -> None:
    db_path = Path(args.db)
    destination = Path(args.destination)
    temp_path = Path(f"{destination}.odm-part")
    _remove_quietly(db_path, destination, temp_path)

    state = await StateManager.open(db_path)
    try:
        manager = await DownloadManager.create(state, 1)
        async with manager:
            await manager.set_speed_limit(args.limit)
            print(f"\n[ACTION] Starting download with a {args.limit} bytes/s limit...")
            start = time.monotonic()
            job_id = await manager.add_new_job(args.url, destination, args.threads)
            runner = asyncio.create_task(manager.run())
            try:
                size = await _wait_for_job(manager, job_id, args.poll_interval)
                elapsed = time.monotonic() - start
            finally:
                print("\n--- Shutting down manager ---")
                runner.cancel()
                await asyncio.gather(runner, return_exceptions=True)
                print("Manager task stopped.")
        _check_timing(elapsed, size, args.limit)
    finally:
        await state.close()

    if not args.keep:
        _remove_quietly(destination, db_path)
        print("\n--- Test complete and all resources cleaned up. ---")


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point; returns 0 on success and 1 when the download or check fails."""
    args = _build_parser().parse_args(argv)
    try:
        asyncio.run(_run(args))
    except (CommandError, ManagerError, StateError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())