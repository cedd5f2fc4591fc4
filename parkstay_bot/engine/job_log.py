"""
Append-only execution log for scheduled jobs
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict

from ..common.models import JobLog, JobStatus, JobType
from ..common.timing import utcnow

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    JobStatus.SUCCESS: logging.INFO,
    JobStatus.FAILURE: logging.DEBUG,
    JobStatus.ERROR: logging.WARNING,
}


class JobLogger:
    """Writes one immutable JobLog row per job execution"""

    def __init__(self, storage):
        self.storage = storage

    def record(
        self,
        job_type: JobType,
        job_id: int,
        status: JobStatus,
        outcome: Optional[str] = None,
        message: Optional[str] = None,
        error_details: Optional[str] = None,
        duration_ms: int = 0,
    ) -> JobLog:
        entry = self.storage.add_job_log(JobLog(
            job_type=job_type,
            job_id=job_id,
            status=status,
            outcome=outcome,
            message=message,
            error_details=error_details,
            duration_ms=duration_ms,
        ))
        logger.log(
            LOG_LEVELS[status],
            f"[{job_type.value} #{job_id}] {status.value}"
            f"{f' ({outcome})' if outcome else ''}: {message or ''} [{duration_ms}ms]"
        )
        return entry

    def list(
        self,
        job_type: Optional[JobType] = None,
        job_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[JobLog]:
        """Most recent first"""
        return self.storage.list_job_logs(job_type=job_type, job_id=job_id, limit=limit)

    def stats(self, job_type: Optional[JobType] = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for entry in self.storage.list_job_logs(job_type=job_type):
            counts[entry.status.value] += 1
        return counts

    def prune(self, retention_days: int = 30, now: Optional[datetime] = None) -> int:
        """Delete logs older than the retention period"""
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        removed = self.storage.prune_job_logs(cutoff)
        if removed:
            logger.info(f"Pruned {removed} job logs older than {retention_days} days")
        return removed
