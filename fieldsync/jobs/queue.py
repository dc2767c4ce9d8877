"""Download job queue backed by the ``kizeo_jobs`` table.

State machine::

    pending -> processing -> done | failed
    processing -> pending        (reset_stuck only)
    failed -> pending            (retry_failed, operator action only)

Runs are short batch passes started by a scheduler. ``claim_batch`` is a plain
read; the runner moves each claimed job with ``mark_processing``. When several
runners share the table, ``claim_and_mark`` claims and transitions inside one
transaction using ``FOR UPDATE SKIP LOCKED`` where the engine supports it.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldsync.core.config import settings
from fieldsync.core.errors import DuplicateJob, InvalidTransition
from fieldsync.db import models
from fieldsync.db.guard import storage_guard
from fieldsync.services.dedup import DedupIndex
from fieldsync.tenancy.router import normalize_code

logger = logging.getLogger("fieldsync.jobs")

TABLE = models.KizeoJob.__tablename__
FAILURE_REASON_MAX = 500

_TRANSITIONS = {
    models.STATUS_PROCESSING: {models.STATUS_PENDING},
    models.STATUS_DONE: {models.STATUS_PROCESSING},
    models.STATUS_FAILED: {models.STATUS_PROCESSING},
}


def empty_counts() -> Dict[str, int]:
    return {status: 0 for status in models.JOB_STATUSES}


def _check_type(job_type: str) -> str:
    if job_type not in models.JOB_TYPES:
        raise ValueError(f"Type de job inconnu : {job_type}")
    return job_type


def _within(stmt, agencies: Optional[List[str]]):
    """``agencies=None`` means every agency; an empty list matches nothing."""
    if agencies is None:
        return stmt
    return stmt.where(models.KizeoJob.agency_code.in_([normalize_code(code) for code in agencies]))


class JobQueue:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.dedup = DedupIndex(db)

    def _guard(self, operation: str, agency: Optional[str] = None):
        return storage_guard(self.db, operation, agency=agency, table=TABLE)

    # enqueue

    def _prepare(self, job: models.KizeoJob) -> Optional[str]:
        _check_type(job.job_type)
        job.agency_code = normalize_code(job.agency_code)
        media_name = job.media_name if job.is_photo else None
        if job.is_photo and not media_name:
            raise ValueError("media_name obligatoire pour un job photo")
        job.status = models.STATUS_PENDING
        job.created_at = datetime.utcnow()
        job.started_at = None
        job.completed_at = None
        job.attempts = job.attempts or 0
        if job.priority is None:
            job.priority = models.PRIORITY_URGENT if job.is_pdf else models.PRIORITY_NORMAL
        return media_name

    def enqueue(self, job: models.KizeoJob) -> models.KizeoJob:
        media_name = self._prepare(job)
        if self.dedup.job_exists(job.form_id, job.data_id, media_name):
            raise DuplicateJob(job.job_type, job.form_id, job.data_id, media_name)

        with self._guard("enqueue", job.agency_code):
            try:
                self.db.add(job)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                # a concurrent ingestion pass won the race on the same key
                if self.dedup.job_exists(job.form_id, job.data_id, media_name):
                    raise DuplicateJob(job.job_type, job.form_id, job.data_id, media_name)
                raise
            self.db.refresh(job)
        logger.debug(
            "job enqueued id=%s type=%s agency=%s form_id=%s data_id=%s media=%s",
            job.id,
            job.job_type,
            job.agency_code,
            job.form_id,
            job.data_id,
            media_name,
        )
        return job

    def enqueue_many(self, jobs: List[models.KizeoJob]) -> List[models.KizeoJob]:
        """Enqueue jobs already filtered against ``existing_keys`` in one commit."""
        if not jobs:
            return []
        for job in jobs:
            self._prepare(job)
        with self._guard("enqueue_many", jobs[0].agency_code):
            self.db.add_all(jobs)
            self.db.commit()
        logger.debug("jobs enqueued count=%s agency=%s", len(jobs), jobs[0].agency_code)
        return jobs

    # claim

    def _pending_query(self, job_type: str, agency: Optional[str], limit: int, offset: int = 0):
        stmt = select(models.KizeoJob).where(
            models.KizeoJob.status == models.STATUS_PENDING,
            models.KizeoJob.job_type == _check_type(job_type),
        )
        if agency:
            stmt = stmt.where(models.KizeoJob.agency_code == normalize_code(agency))
        stmt = stmt.order_by(models.KizeoJob.priority.asc(), models.KizeoJob.created_at.asc(), models.KizeoJob.id.asc())
        if offset:
            stmt = stmt.offset(offset)
        return stmt.limit(max(0, int(limit)))

    def claim_batch(
        self, job_type: str, agency: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> List[models.KizeoJob]:
        if limit <= 0:
            return []
        with self._guard("claim_batch", agency):
            return list(self.db.execute(self._pending_query(job_type, agency, limit, offset)).scalars().all())

    def claim_and_mark(self, job_type: str, agency: Optional[str] = None, limit: int = 20) -> List[models.KizeoJob]:
        if limit <= 0:
            return []
        stmt = self._pending_query(job_type, agency, limit)
        if self.db.get_bind().dialect.name != "sqlite":
            stmt = stmt.with_for_update(skip_locked=True)
        now = datetime.utcnow()
        with self._guard("claim_and_mark", agency):
            jobs = list(self.db.execute(stmt).scalars().all())
            for job in jobs:
                job.status = models.STATUS_PROCESSING
                job.started_at = now
                job.attempts = (job.attempts or 0) + 1
            self.db.commit()
        return jobs

    def count_pending(self, job_type: str, agency: Optional[str] = None) -> int:
        stmt = select(func.count(models.KizeoJob.id)).where(
            models.KizeoJob.status == models.STATUS_PENDING,
            models.KizeoJob.job_type == _check_type(job_type),
        )
        if agency:
            stmt = stmt.where(models.KizeoJob.agency_code == normalize_code(agency))
        with self._guard("count_pending", agency):
            return int(self.db.execute(stmt).scalar() or 0)

    # transitions

    def _transition(self, job: models.KizeoJob, target: str) -> None:
        allowed = _TRANSITIONS[target]
        if job.status not in allowed:
            raise InvalidTransition(job.id, job.status, target)

    def mark_processing(self, job: models.KizeoJob) -> models.KizeoJob:
        self._transition(job, models.STATUS_PROCESSING)
        job.status = models.STATUS_PROCESSING
        job.started_at = datetime.utcnow()
        job.attempts = (job.attempts or 0) + 1
        with self._guard("mark_processing", job.agency_code):
            self.db.commit()
        return job

    def mark_done(
        self, job: models.KizeoJob, local_path: Optional[str] = None, file_size: Optional[int] = None
    ) -> models.KizeoJob:
        self._transition(job, models.STATUS_DONE)
        job.status = models.STATUS_DONE
        job.completed_at = datetime.utcnow()
        job.failure_reason = None
        if local_path is not None:
            job.local_path = local_path
        if file_size is not None:
            job.file_size = file_size
        with self._guard("mark_done", job.agency_code):
            self.db.commit()
        return job

    def mark_failed(self, job: models.KizeoJob, reason: str) -> models.KizeoJob:
        self._transition(job, models.STATUS_FAILED)
        job.status = models.STATUS_FAILED
        job.completed_at = datetime.utcnow()
        job.failure_reason = (reason or "")[:FAILURE_REASON_MAX]
        with self._guard("mark_failed", job.agency_code):
            self.db.commit()
        logger.warning(
            "job failed id=%s type=%s agency=%s attempts=%s reason=%s",
            job.id,
            job.job_type,
            job.agency_code,
            job.attempts,
            job.failure_reason,
        )
        return job

    # recovery

    def _stuck_filter(self, threshold_minutes: int):
        threshold = datetime.utcnow() - timedelta(minutes=threshold_minutes)
        return (
            models.KizeoJob.status == models.STATUS_PROCESSING,
            models.KizeoJob.started_at < threshold,
        )

    def find_stuck(self, threshold_minutes: int = 60, agencies: Optional[List[str]] = None) -> List[models.KizeoJob]:
        stmt = _within(select(models.KizeoJob).where(*self._stuck_filter(threshold_minutes)), agencies)
        stmt = stmt.order_by(models.KizeoJob.started_at.asc())
        with self._guard("find_stuck"):
            return list(self.db.execute(stmt).scalars().all())

    def reset_stuck(self, threshold_minutes: int = 60) -> int:
        # no retry cap: a job that keeps stalling is retried on every pass
        for job in self.find_stuck(threshold_minutes):
            if (job.attempts or 0) >= settings.JOBS_RETRY_WARN_ATTEMPTS:
                logger.warning(
                    "stuck job reset again id=%s type=%s agency=%s attempts=%s",
                    job.id,
                    job.job_type,
                    job.agency_code,
                    job.attempts,
                )
        stmt = (
            update(models.KizeoJob)
            .where(*self._stuck_filter(threshold_minutes))
            .values(status=models.STATUS_PENDING, started_at=None)
            .execution_options(synchronize_session=False)
        )
        with self._guard("reset_stuck"):
            result = self.db.execute(stmt)
            self.db.commit()
        count = result.rowcount or 0
        self.db.expire_all()
        if count:
            logger.info("stuck jobs reset count=%s threshold_minutes=%s", count, threshold_minutes)
        return count

    def retry_failed(self, agency: Optional[str] = None, job_type: Optional[str] = None) -> int:
        stmt = update(models.KizeoJob).where(models.KizeoJob.status == models.STATUS_FAILED)
        if agency:
            stmt = stmt.where(models.KizeoJob.agency_code == normalize_code(agency))
        if job_type:
            stmt = stmt.where(models.KizeoJob.job_type == _check_type(job_type))
        stmt = stmt.values(
            status=models.STATUS_PENDING, started_at=None, completed_at=None, failure_reason=None
        ).execution_options(synchronize_session=False)
        with self._guard("retry_failed", agency):
            result = self.db.execute(stmt)
            self.db.commit()
        self.db.expire_all()
        count = result.rowcount or 0
        logger.info("failed jobs re-enqueued count=%s agency=%s type=%s", count, agency, job_type)
        return count

    # purge

    def _purge_filter(self, status: str, retention_days: int):
        if status not in models.TERMINAL_STATUSES:
            raise ValueError(f"Seuls les jobs termines peuvent etre purges : {status}")
        threshold = datetime.utcnow() - timedelta(days=retention_days)
        return (models.KizeoJob.status == status, models.KizeoJob.completed_at < threshold)

    def count_purgeable(self, status: str, retention_days: int) -> Dict[str, int]:
        stmt = (
            select(models.KizeoJob.job_type, func.count(models.KizeoJob.id))
            .where(*self._purge_filter(status, retention_days))
            .group_by(models.KizeoJob.job_type)
        )
        counts = {job_type: 0 for job_type in models.JOB_TYPES}
        with self._guard("count_purgeable"):
            for job_type, count in self.db.execute(stmt).all():
                counts[job_type] = int(count)
        return counts

    def purge(self, status: str, retention_days: Optional[int] = None) -> int:
        if retention_days is None:
            retention_days = (
                settings.JOBS_PURGE_DONE_DAYS if status == models.STATUS_DONE else settings.JOBS_PURGE_FAILED_DAYS
            )
        stmt = delete(models.KizeoJob).where(*self._purge_filter(status, retention_days)).execution_options(
            synchronize_session=False
        )
        with self._guard("purge"):
            result = self.db.execute(stmt)
            self.db.commit()
        count = result.rowcount or 0
        logger.info("jobs purged status=%s retention_days=%s count=%s", status, retention_days, count)
        return count

    # statistics

    def stats_by_type(self, job_type: str, agency: Optional[str] = None) -> Dict[str, int]:
        stmt = (
            select(models.KizeoJob.status, func.count(models.KizeoJob.id))
            .where(models.KizeoJob.job_type == _check_type(job_type))
            .group_by(models.KizeoJob.status)
        )
        if agency:
            stmt = stmt.where(models.KizeoJob.agency_code == normalize_code(agency))
        stats = empty_counts()
        with self._guard("stats_by_type", agency):
            for status, count in self.db.execute(stmt).all():
                stats[status] = int(count)
        return stats

    def stats_by_type_and_agency(self, job_type: str, agency: str) -> Dict[str, int]:
        return self.stats_by_type(job_type, agency)

    def stats_by_agency(self, agencies: Optional[List[str]] = None) -> Dict[str, Dict[str, int]]:
        stmt = (
            _within(select(models.KizeoJob.agency_code, models.KizeoJob.status, func.count(models.KizeoJob.id)), agencies)
            .group_by(models.KizeoJob.agency_code, models.KizeoJob.status)
            .order_by(models.KizeoJob.agency_code.asc())
        )
        stats: Dict[str, Dict[str, int]] = {}
        with self._guard("stats_by_agency"):
            for agency, status, count in self.db.execute(stmt).all():
                stats.setdefault(agency, empty_counts())[status] = int(count)
        return stats

    def global_stats(self, agencies: Optional[List[str]] = None) -> Dict[str, Dict[str, int]]:
        stmt = _within(select(models.KizeoJob.job_type, models.KizeoJob.status, func.count(models.KizeoJob.id)), agencies)
        stmt = stmt.group_by(models.KizeoJob.job_type, models.KizeoJob.status)
        stats = {job_type: empty_counts() for job_type in models.JOB_TYPES}
        stats["total"] = empty_counts()
        with self._guard("global_stats"):
            for job_type, status, count in self.db.execute(stmt).all():
                stats.setdefault(job_type, empty_counts())[status] = int(count)
                stats["total"][status] += int(count)
        return stats

    def recent_failures(
        self, limit: int = 20, agency: Optional[str] = None, agencies: Optional[List[str]] = None
    ) -> List[models.KizeoJob]:
        stmt = _within(select(models.KizeoJob).where(models.KizeoJob.status == models.STATUS_FAILED), agencies)
        if agency:
            stmt = stmt.where(models.KizeoJob.agency_code == normalize_code(agency))
        stmt = stmt.order_by(models.KizeoJob.completed_at.desc()).limit(limit)
        with self._guard("recent_failures", agency):
            return list(self.db.execute(stmt).scalars().all())

    def count_recently_created(self, hours: int = 24, agencies: Optional[List[str]] = None) -> int:
        threshold = datetime.utcnow() - timedelta(hours=hours)
        stmt = _within(select(func.count(models.KizeoJob.id)).where(models.KizeoJob.created_at > threshold), agencies)
        with self._guard("count_recently_created"):
            return int(self.db.execute(stmt).scalar() or 0)

    def count_recently_completed(self, hours: int = 24, agencies: Optional[List[str]] = None) -> int:
        threshold = datetime.utcnow() - timedelta(hours=hours)
        stmt = select(func.count(models.KizeoJob.id)).where(
            models.KizeoJob.status == models.STATUS_DONE,
            models.KizeoJob.completed_at > threshold,
        )
        stmt = _within(stmt, agencies)
        with self._guard("count_recently_completed"):
            return int(self.db.execute(stmt).scalar() or 0)

    # lookups

    def existing_keys(self, form_id: int, data_id: int) -> Set[Tuple[str, Optional[str]]]:
        return self.dedup.existing_job_keys(form_id, data_id)

    def get(self, job_id: int) -> Optional[models.KizeoJob]:
        with self._guard("get"):
            return self.db.get(models.KizeoJob, job_id)

    def find_by_form_data(self, form_id: int, data_id: int) -> List[models.KizeoJob]:
        stmt = (
            select(models.KizeoJob)
            .where(models.KizeoJob.form_id == int(form_id), models.KizeoJob.data_id == int(data_id))
            .order_by(models.KizeoJob.job_type.asc(), models.KizeoJob.created_at.asc())
        )
        with self._guard("find_by_form_data"):
            return list(self.db.execute(stmt).scalars().all())

    def find_by_contact(self, id_contact: int, status: Optional[str] = None) -> List[models.KizeoJob]:
        stmt = select(models.KizeoJob).where(models.KizeoJob.id_contact == int(id_contact))
        if status is not None:
            stmt = stmt.where(models.KizeoJob.status == status)
        stmt = stmt.order_by(models.KizeoJob.created_at.desc())
        with self._guard("find_by_contact"):
            return list(self.db.execute(stmt).scalars().all())
