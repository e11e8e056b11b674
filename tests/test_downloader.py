import asyncio

import aiohttp
import pytest

from odm.downloader import (
    DownloadAborted,
    DownloadError,
    DownloadPaused,
    NoContentLengthError,
    run_download,
)
from odm.limiter import SpeedLimiter
from odm.models import DownloadJob, JobStatus, Segment

DATA = bytes(range(256)) * 4
URL = "http://files.example.com/data.bin"


class FakeContent:
    def __init__(self, chunks, on_chunk):
        self._chunks = chunks
        self._on_chunk = on_chunk

    async def iter_any(self):
        for chunk in self._chunks:
            self._on_chunk()
            yield chunk


class FakeResponse:
    def __init__(self, status=200, headers=None, chunks=(), on_chunk=lambda: None):
        self.status = status
        self.headers = headers or {}
        self.content = FakeContent(list(chunks), on_chunk)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientError(f"HTTP status {self.status}")


class FakeSession:
    def __init__(
        self,
        data=DATA,
        chunk_size=16,
        content_length=True,
        status=200,
        fail=None,
        truncate=0,
        pause_flag=None,
        pause_after=None,
    ):
        self.data = data
        self.chunk_size = chunk_size
        self.content_length = content_length
        self.status = status
        self.fail = fail
        self.truncate = truncate
        self.pause_flag = pause_flag
        self.pause_after = pause_after
        self.served_chunks = 0
        self.requests = []

    def _count_chunk(self):
        self.served_chunks += 1
        if self.pause_after is not None and self.served_chunks >= self.pause_after:
            self.pause_flag.set()

    def head(self, url, **kwargs):
        self.requests.append(("HEAD", url, None))
        headers = {"Content-Length": str(len(self.data))} if self.content_length else {}
        return FakeResponse(headers=headers)

    def get(self, url, headers=None, **kwargs):
        range_header = (headers or {}).get("Range")
        self.requests.append(("GET", url, range_header))
        if self.fail is not None:
            raise self.fail
        start_text, end_text = range_header.removeprefix("bytes=").split("-")
        body = self.data[int(start_text) : int(end_text) + 1]
        if self.truncate:
            body = body[: -self.truncate]
        chunks = [
            body[offset : offset + self.chunk_size]
            for offset in range(0, len(body), self.chunk_size)
        ]
        return FakeResponse(status=self.status, chunks=chunks, on_chunk=self._count_chunk)


def make_job(tmp_path, num_threads=4):
    return DownloadJob(
        id=1, url=URL, destination=tmp_path / "out" / "data.bin", num_threads=num_threads
    )


@pytest.mark.asyncio
async def test_complete_download_writes_file(tmp_path):
    job = make_job(tmp_path)
    session = FakeSession()
    await run_download(session, job, asyncio.Event(), SpeedLimiter(0))

    assert job.status is JobStatus.COMPLETED
    assert job.destination.read_bytes() == DATA
    assert not job.temporary_path().exists()
    assert job.total_size == len(DATA)
    assert job.downloaded_bytes == len(DATA)
    assert job.progress() == 1.0
    assert all(segment.is_complete() for segment in job.segments)


@pytest.mark.asyncio
async def test_segments_cover_whole_file_contiguously(tmp_path):
    job = make_job(tmp_path, num_threads=3)
    session = FakeSession(data=DATA[:10])
    await run_download(session, job, asyncio.Event(), SpeedLimiter(0))

    assert len(job.segments) == 3
    assert job.segments[0].start_byte == 0
    assert job.segments[-1].end_byte == 10
    for previous, current in zip(job.segments, job.segments[1:]):
        assert previous.end_byte == current.start_byte
    assert job.destination.read_bytes() == DATA[:10]


@pytest.mark.asyncio
async def test_zero_threads_uses_single_segment(tmp_path):
    job = make_job(tmp_path, num_threads=0)
    session = FakeSession()
    await run_download(session, job, asyncio.Event(), SpeedLimiter(0))

    assert len(job.segments) == 1
    assert job.segments[0].start_byte == 0
    assert job.segments[0].end_byte == len(DATA)
    ranges = [r for method, _, r in session.requests if method == "GET"]
    assert ranges == [f"bytes=0-{len(DATA) - 1}"]


@pytest.mark.asyncio
async def test_missing_content_length_raises(tmp_path):
    job = make_job(tmp_path)
    session = FakeSession(content_length=False)
    with pytest.raises(NoContentLengthError):
        await run_download(session, job, asyncio.Event(), SpeedLimiter(0))
    assert job.segments == []
    assert not job.temporary_path().exists()


@pytest.mark.asyncio
async def test_pause_then_resume_completes(tmp_path):
    job = make_job(tmp_path, num_threads=2)
    pause_flag = asyncio.Event()
    session = FakeSession(pause_flag=pause_flag, pause_after=3)

    with pytest.raises(DownloadPaused):
        await run_download(session, job, pause_flag, SpeedLimiter(0))

    assert 0 < job.downloaded_bytes < len(DATA)
    assert job.downloaded_bytes == sum(
        seg.current_pos - seg.start_byte for seg in job.segments
    )
    partial = job.temporary_path().read_bytes()
    assert len(partial) == len(DATA)
    for seg in job.segments:
        assert partial[seg.start_byte : seg.current_pos] == DATA[seg.start_byte : seg.current_pos]

    positions = [(seg.current_pos, seg.end_byte) for seg in job.segments]
    pause_flag.clear()
    resume_session = FakeSession()
    await run_download(resume_session, job, pause_flag, SpeedLimiter(0))

    assert job.status is JobStatus.COMPLETED
    assert job.destination.read_bytes() == DATA
    assert not any(method == "HEAD" for method, _, _ in resume_session.requests)
    expected_ranges = sorted(
        f"bytes={pos}-{end - 1}" for pos, end in positions if pos < end
    )
    actual_ranges = sorted(r for method, _, r in resume_session.requests if method == "GET")
    assert actual_ranges == expected_ranges


@pytest.mark.asyncio
async def test_waits_while_paused_before_starting(tmp_path):
    job = make_job(tmp_path)
    pause_flag = asyncio.Event()
    pause_flag.set()
    session = FakeSession()

    task = asyncio.create_task(run_download(session, job, pause_flag, SpeedLimiter(0)))
    await asyncio.sleep(0.05)
    assert session.requests == []
    assert job.status is JobStatus.QUEUED

    pause_flag.clear()
    await asyncio.wait_for(task, timeout=5)
    assert job.status is JobStatus.COMPLETED
    assert job.destination.read_bytes() == DATA


@pytest.mark.asyncio
async def test_resume_with_missing_temp_file_fails(tmp_path):
    job = make_job(tmp_path)
    job.total_size = len(DATA)
    job.segments = [Segment(start_byte=0, end_byte=len(DATA), current_pos=100)]
    session = FakeSession()

    with pytest.raises(DownloadError) as info:
        await run_download(session, job, asyncio.Event(), SpeedLimiter(0))

    assert job.status is JobStatus.FAILED
    assert job.failure_reason == "Temporary file is missing for resume."
    assert "Temporary file is missing for resume." in str(info.value)
    assert session.requests == []


@pytest.mark.asyncio
async def test_resume_with_wrong_size_fails(tmp_path):
    job = make_job(tmp_path)
    job.total_size = len(DATA)
    job.segments = [Segment(start_byte=0, end_byte=len(DATA), current_pos=0)]
    job.destination.parent.mkdir(parents=True)
    job.temporary_path().write_bytes(DATA[:10])

    with pytest.raises(DownloadError):
        await run_download(FakeSession(), job, asyncio.Event(), SpeedLimiter(0))

    assert job.status is JobStatus.FAILED
    assert job.failure_reason == "Temporary file size mismatch. Please restart download."


@pytest.mark.asyncio
async def test_network_failure_raises_download_error(tmp_path):
    job = make_job(tmp_path, num_threads=2)
    session = FakeSession(fail=aiohttp.ClientConnectionError("connection refused"))

    with pytest.raises(DownloadError) as info:
        await run_download(session, job, asyncio.Event(), SpeedLimiter(0))

    assert not isinstance(info.value, DownloadPaused)
    assert str(info.value).startswith("network error:")
    assert not job.destination.exists()


@pytest.mark.asyncio
async def test_http_error_status_raises_download_error(tmp_path):
    job = make_job(tmp_path)
    session = FakeSession(status=404)

    with pytest.raises(DownloadError) as info:
        await run_download(session, job, asyncio.Event(), SpeedLimiter(0))

    assert str(info.value).startswith("network error:")
    assert job.downloaded_bytes == 0


@pytest.mark.asyncio
async def test_short_response_marks_job_failed(tmp_path):
    job = make_job(tmp_path, num_threads=2)
    session = FakeSession(truncate=5)

    with pytest.raises(DownloadAborted):
        await run_download(session, job, asyncio.Event(), SpeedLimiter(0))

    assert job.status is JobStatus.FAILED
    assert job.failure_reason == "Incomplete download"
    assert job.progress() < 1.0
    assert job.temporary_path().exists()
    assert not job.destination.exists()


@pytest.mark.asyncio
async def test_download_respects_speed_limit(tmp_path):
    data = DATA[:300]
    job = make_job(tmp_path, num_threads=1)
    session = FakeSession(data=data, chunk_size=100)
    limiter = SpeedLimiter(1000)

    loop = asyncio.get_running_loop()
    started = loop.time()
    await run_download(session, job, asyncio.Event(), limiter)
    elapsed = loop.time() - started

    assert job.destination.read_bytes() == data
    assert elapsed < 2.0


def test_error_messages_match_source():
    assert str(NoContentLengthError()) == "could not get content length from server"
    assert str(DownloadPaused()) == "download was paused by user"
    assert str(DownloadAborted()) == "task was aborted"
    assert issubclass(DownloadPaused, DownloadError)