import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

# Backoff never waits longer than one hour
MAX_RETRY_DELAY_SECONDS = 3600.0


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """Represents a unit of background work."""
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    retries: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def should_retry(self) -> bool:
        """Return True while the job still has retries left."""
        return self.retries < self.max_retries

    def increment_retry(self) -> None:
        self.retries += 1

    def to_dict(self) -> dict[str, Any]:
        """Build the JSON wire representation.

        Optional timestamps and the error are left out when unset.
        """
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "status": self.status.value,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "created_at": self.created_at.isoformat(),
        }
        for name in ("processed_at", "completed_at", "failed_at"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value.isoformat()
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            type=data["type"],
            payload=data.get("payload") or {},
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            retries=int(data.get("retries", 0)),
            max_retries=int(data.get("max_retries", 0)),
            created_at=_parse_timestamp(data["created_at"]),
            processed_at=_parse_optional_timestamp(data.get("processed_at")),
            completed_at=_parse_optional_timestamp(data.get("completed_at")),
            failed_at=_parse_optional_timestamp(data.get("failed_at")),
            error=data.get("error") or None,
        )

    def serialize(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def deserialize(cls, data: Union[str, bytes]) -> "Job":
        """Parse a job from its JSON wire form.

        Raises:
            ValueError: If the data is not a valid job document
        """
        try:
            raw = json.loads(data)
            if not isinstance(raw, dict):
                raise ValueError("job document must be a JSON object")
            return cls.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"failed to deserialize job: {e}") from e


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_optional_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return _parse_timestamp(value)


def generate_job_id() -> str:
    """Return a random 32 character hex identifier."""
    return secrets.token_hex(16)


def new_job(
    job_type: str, payload: Optional[dict[str, Any]] = None, max_retries: int = 3
) -> Job:
    """Create a pending job with a fresh id.

    Args:
        job_type: Handler selector (e.g., 'send_email')
        payload: Handler specific data, copied into the job
        max_retries: How many times a failed attempt may be retried

    Returns:
        New Job instance
    """
    return Job(
        id=generate_job_id(),
        type=job_type,
        payload=dict(payload or {}),
        status=JobStatus.PENDING,
        retries=0,
        max_retries=max_retries,
        created_at=utcnow(),
    )


def calculate_retry_delay(base_delay_seconds: float, retry_count: int) -> float:
    """Exponential backoff: base * 2^retry_count, capped at one hour."""
    if retry_count < 0:
        retry_count = 0
    delay = float(base_delay_seconds)
    for _ in range(retry_count):
        delay *= 2
        if delay >= MAX_RETRY_DELAY_SECONDS:
            return MAX_RETRY_DELAY_SECONDS
    return min(delay, MAX_RETRY_DELAY_SECONDS)
