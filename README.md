# odm

`odm` is an asynchronous HTTP download manager. It splits each file into
byte-range segments fetched in parallel, writes them into a pre-allocated
`.odm-part` file next to the destination, and renames that file into place once
every byte has arrived. Job state is kept as JSON rows in an SQLite database,
so jobs that were downloading when the program stopped come back paused and
can be resumed where they left off. One token-bucket speed limit is shared by
every running download.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Command line

Installing the package provides the `odm` command. It downloads one file under
a speed limit and checks that the limit held:

```
odm --help
odm http://localhost:8000/file.zip file.zip --limit 1048576 --threads 4
```

Arguments and options:

- `url` (optional) — what to download; a built-in test file is used if omitted.
- `destination` (optional, default `50MB.zip`) — where to save it.
- `--db` (default `downloads.db`) — the job database file.
- `--threads` (default 8) — number of segments fetched in parallel.
- `--limit` (default 10485760) — speed limit in bytes per second; `0` means
  unlimited and skips the timing check.
- `--poll-interval` (default 1.0) — seconds between progress reports.
- `--keep` — keep the downloaded file and the database afterwards.

Before starting, the command removes any existing database, destination file
and `.odm-part` file at the given paths. It prints progress until the job
completes, then reports the elapsed time and average speed. With a non-zero
limit it fails if the download took less than 0.9 times or more than 2 times
the theoretical minimum time (size divided by limit). Unless `--keep` is given,
the file and database are deleted at the end. The exit status is 0 on success
and 1 if the download fails, the job vanishes, the timing check fails, or the
database cannot be used.

## Using the library

```python
import asyncio
from pathlib import Path

from odm.manager import DownloadManager
from odm.models import JobStatus
from odm.state_manager import StateManager


async def fetch() -> None:
    async with await StateManager.open(Path("downloads.db")) as state:
        async with await DownloadManager.create(state, 2) as manager:
            await manager.set_speed_limit(10 * 1024 * 1024)  # bytes/s, 0 = unlimited
            job_id = await manager.add_new_job(
                "http://localhost:8000/file.zip", Path("file.zip"), 8
            )
            runner = asyncio.create_task(manager.run())

            while True:
                await asyncio.sleep(1)
                job = next(j for j in await manager.get_all_jobs() if j.id == job_id)
                print(f"{job.progress() * 100:.2f}%")
                if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                    break

            runner.cancel()


asyncio.run(fetch())
```

### The modules

- `odm.models` — `DownloadJob`, its `Segment`s and `JobStatus` (`QUEUED`,
  `DOWNLOADING`, `PAUSED`, `COMPLETED`, `FAILED`). A job reports `progress()`
  as a fraction from 0 to 1 and `temporary_path()` (the destination with
  `.odm-part` appended), keeps a `failure_reason` when failed, and converts to
  and from plain data with `to_dict()` / `from_dict()` and JSON with
  `to_json()` / `from_json()`; malformed input raises `ValueError`. A segment
  offers `remaining_bytes()` and `is_complete()`.
- `odm.state_manager` — `StateManager.open(path)` connects to (and creates) the
  database; `save_job`, `load_all_jobs` (ordered by id), `delete_job` and
  `close`. It is an async context manager. Failures raise `StateError`.
- `odm.limiter` — `SpeedLimiter`, a token bucket whose burst size equals its
  rate and which starts full. `take(n)` waits until `n` bytes may pass,
  `set_rate(r)` changes the limit and refills the bucket, and a rate of 0
  disables limiting. Negative values raise `ValueError`.
- `odm.downloader` — `run_download(session, job, pause_flag, limiter)` starts or
  resumes one job with an `aiohttp.ClientSession`, an `asyncio.Event` as pause
  flag, and a `SpeedLimiter`. A new job gets its size from a HEAD request and
  is split into `num_threads` segments; a resumed job must have a partial file
  of the recorded size. It raises `NoContentLengthError` when the server gives
  no size, `DownloadPaused` when the pause flag is set mid-download, and
  `DownloadAborted` when a download ends incomplete; network, file and resume
  problems raise `DownloadError`, the base of them all.
- `odm.manager` — `DownloadManager.create(state_manager, max_concurrent)`
  loads stored jobs. `run()` starts queued jobs, lowest id first, as slots free
  up; running jobs are saved every five seconds and once more when they end.
  `add_new_job`, `pause_download`, `resume_download`,
  `cancel_download(job_id, delete_file)`, `get_all_jobs` (copies, ordered by
  id), `set_speed_limit`, the `speed_limit` property and `close`. Unknown ids
  raise `JobNotFoundError`, a `ManagerError`; database failures raise
  `ManagerError`.
- `odm.integrity` — `sha256_sum(path)` returns the lowercase hex SHA-256 of a
  file, computed off the event loop.
- `odm.cli` — `main(argv=None)`, the `odm` command.

### Job lifecycle

New jobs start `QUEUED`. A running job is `DOWNLOADING`; pausing it moves it to
`PAUSED`, and resuming puts it back in the queue. Pausing a queued job moves it
straight to `PAUSED`. A finished job is `COMPLETED`; one that went wrong is
`FAILED` with the reason kept on the job. Cancelling a job stops its worker,
removes it from the manager and the database, and can also delete its partial
and final files.

## What it does not do

- The `odm` command handles a single download per run; there is no command for
  listing, pausing, resuming or cancelling stored jobs. Those are available
  only through `DownloadManager`.
- Failed segments are not retried: the `retries` and `current_retries` fields
  of a job are stored but not used.
- A job's `sha256_checksum` is stored but not checked automatically; call
  `sha256_sum` yourself to verify a finished file.