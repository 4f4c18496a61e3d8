"""Progress Tracker - one progress record per in-flight job."""

from datetime import datetime
from threading import Lock
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.models.schemas import ProgressRecord, ProgressStatus


class ProgressTracker:
    """Concurrency-safe progress records keyed by job id."""

    def __init__(self, settings: Settings, logger: Any):
        self.settings = settings
        self.logger = logger
        self._records: dict[str, ProgressRecord] = {}
        self._lock = Lock()

    def start(
        self, job_id: str, total: int, completed: int = 0, process_type: str = "scene_media"
    ) -> ProgressRecord:
        """Create (or overwrite) the record for a job."""
        record = ProgressRecord(
            job_id=job_id,
            process_type=process_type,
            total=total,
            completed=completed,
            status=ProgressStatus.PROCESSING,
            message=f"Processing {total} scenes",
        )
        with self._lock:
            self._records[job_id] = record
        return record.model_copy()

    def record_scene(self, job_id: str, succeeded: bool, message: Optional[str] = None) -> ProgressRecord:
        with self._lock:
            record = self._records[job_id]
            if succeeded:
                record.completed += 1
            else:
                record.failed += 1
            record.message = message or f"{record.completed}/{record.total} scenes completed, {record.failed} failed"
            record.updated_at = datetime.now()
            return record.model_copy()

    def update(
        self,
        job_id: str,
        status: Optional[ProgressStatus] = None,
        message: Optional[str] = None,
        total_duration: Optional[float] = None,
    ) -> ProgressRecord:
        with self._lock:
            record = self._records[job_id]
            if status is not None:
                record.status = status
            if message is not None:
                record.message = message
            if total_duration is not None:
                record.total_duration = total_duration
            record.updated_at = datetime.now()
            return record.model_copy()

    def get(self, job_id: str) -> Optional[ProgressRecord]:
        with self._lock:
            record = self._records.get(job_id)
            return record.model_copy() if record else None

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._records.pop(job_id, None)
