"""Process-local outcome per video job id, read by polling clients.

Not persisted: a restart forgets every job, and an unknown id is reported as
"processing" by convention (indistinguishable from a job that never existed).
Each process keeps its own registry; multi-instance deployments need sticky
routing or a shared store.
"""

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

JobState = Literal["processing", "completed", "failed"]

STATUS_MESSAGES = {
    "processing": "Video is processing",
    "completed": "Video completed successfully",
    "failed": "Video generation failed",
}


class JobStatusRecord(BaseModel):
    status: JobState
    user_id: str
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    points_deducted: int = 0
    new_balance: int = 0
    video_url: str = ""


class JobStatusRegistry:
    """Unconditional-overwrite map of job id -> JobStatusRecord.

    max_entries > 0 bounds memory: once full, the least recently written job is dropped.
    max_entries == 0 keeps every job for the process lifetime.
    """

    def __init__(self, max_entries: int = 0) -> None:
        self.max_entries = max_entries
        self._records: OrderedDict[str, JobStatusRecord] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, job_id: str, record: JobStatusRecord) -> None:
        with self._lock:
            self._records[job_id] = record
            self._records.move_to_end(job_id)
            if self.max_entries > 0:
                while len(self._records) > self.max_entries:
                    self._records.popitem(last=False)

    def get(self, job_id: str) -> JobStatusRecord | None:
        with self._lock:
            return self._records.get(job_id)

    def __len__(self) -> int:
        return len(self._records)


def status_payload(job_id: str, user_id: str, record: JobStatusRecord | None) -> dict:
    """Poll response body. An absent record is reported as processing."""
    if record is None:
        return {
            "job_id": job_id,
            "user_id": user_id,
            "status": "processing",
            "message": STATUS_MESSAGES["processing"],
        }
    return {
        "job_id": job_id,
        "user_id": user_id,
        "status": record.status,
        "completed_at": record.completed_at.isoformat(),
        "points_deducted": record.points_deducted,
        "new_balance": record.new_balance,
        "video_url": record.video_url,
        "message": STATUS_MESSAGES[record.status],
    }
