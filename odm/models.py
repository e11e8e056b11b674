"""Persistent data types describing download jobs and their segments."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

TEMP_SUFFIX = ".odm-part"
DEFAULT_RETRIES = 3


@dataclass
class Segment:
    """A byte range of a download and how far it has progressed."""

    start_byte: int
    end_byte: int
    current_pos: int

    def remaining_bytes(self) -> int:
        """Bytes still to be downloaded for this segment."""
        return max(self.end_byte - self.current_pos, 0)

    def is_complete(self) -> bool:
        """Whether every byte of the segment has been downloaded."""
        return self.current_pos >= self.end_byte

    def to_dict(self) -> dict[str, int]:
        return {
            "start_byte": self.start_byte,
            "end_byte": self.end_byte,
            "current_pos": self.current_pos,
        }


class JobStatus(Enum):
    """Lifecycle state of a download job."""

    QUEUED = "Queued"
    DOWNLOADING = "Downloading"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass
class DownloadJob:
    """The complete persistent state of a single download."""

    id: int
    url: str
    destination: Path
    num_threads: int
    status: JobStatus = JobStatus.QUEUED
    failure_reason: str | None = None
    total_size: int = 0
    downloaded_bytes: int = 0
    segments: list[Segment] = field(default_factory=list)
    retries: int = DEFAULT_RETRIES
    current_retries: int = 0
    sha256_checksum: str | None = None

    def __post_init__(self) -> None:
        self.destination = Path(self.destination)

    def progress(self) -> float:
        """Fraction of the file downloaded, from 0.0 to 1.0."""
        if self.total_size == 0:
            return 0.0
        return self.downloaded_bytes / self.total_size

    def temporary_path(self) -> Path:
        """Path of the partial file used while downloading."""
        return Path(f"{self.destination}{TEMP_SUFFIX}")

    def to_dict(self) -> dict[str, Any]:
        """Plain-data form of the job, suitable for JSON."""
        if self.status is JobStatus.FAILED:
            status: Any = {JobStatus.FAILED.value: self.failure_reason}
        else:
            status = self.status.value
        return {
            "id": self.id,
            "url": self.url,
            "destination": str(self.destination),
            "status": status,
            "total_size": self.total_size,
            "downloaded_bytes": self.downloaded_bytes,
            "segments": [segment.to_dict() for segment in self.segments],
            "num_threads": self.num_threads,
            "retries": self.retries,
            "current_retries": self.current_retries,
            "sha256_checksum": self.sha256_checksum,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DownloadJob:
        """Build a job from its plain-data form; raises ValueError if malformed."""
        try:
            status, reason = _parse_status(data["status"])
            return cls(
                id=int(data["id"]),
                url=str(data["url"]),
                destination=Path(data["destination"]),
                num_threads=int(data["num_threads"]),
                status=status,
                failure_reason=reason,
                total_size=int(data["total_size"]),
                downloaded_bytes=int(data["downloaded_bytes"]),
                segments=[
                    Segment(
                        start_byte=int(item["start_byte"]),
                        end_byte=int(item["end_byte"]),
                        current_pos=int(item["current_pos"]),
                    )
                    for item in data["segments"]
                ],
                retries=int(data["retries"]),
                current_retries=int(data["current_retries"]),
                sha256_checksum=data.get("sha256_checksum"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid job data: {exc}") from exc

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> DownloadJob:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid job JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("invalid job JSON: expected an object")
        return cls.from_dict(data)


def _parse_status(raw: Any) -> tuple[JobStatus, str | None]:
    if isinstance(raw, str):
        return JobStatus(raw), None
    if isinstance(raw, dict) and list(raw) == [JobStatus.FAILED.value]:
        reason = raw[JobStatus.FAILED.value]
        if reason is not None and not isinstance(reason, str):
            raise ValueError("failure reason must be a string or null")
        return JobStatus.FAILED, reason
    raise ValueError(f"unrecognised status: {raw!r}")