import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from fieldsync.core.config import settings
from fieldsync.core.errors import FetchError, InvalidTransition
from fieldsync.db import models
from fieldsync.jobs.queue import FAILURE_REASON_MAX, JobQueue, _check_type
from fieldsync.kizeo.client import MediaFetcher
from fieldsync.services.storage import ArtifactStorageError, StorageClient
from fieldsync.tenancy.router import normalize_code

logger = logging.getLogger("fieldsync.runner")

PHOTO_ROOT = "photos"
PDF_ROOT = "pdf"


@dataclass
class DrainReport:
    job_type: str
    agency: Optional[str] = None
    dry_run: bool = False
    total: int = 0
    downloaded: int = 0
    failed: int = 0
    skipped: int = 0
    total_bytes: int = 0
    duration_sec: float = 0.0
    reset: int = 0
    retried: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _split_media(media_name: str) -> List[str]:
    return [part.strip() for part in (media_name or "").split(",")]


def _visit_day(job: models.KizeoJob) -> datetime:
    if job.date_visite:
        try:
            return datetime.strptime(str(job.date_visite)[:10], "%Y-%m-%d")
        except ValueError:
            logger.debug("unparseable date_visite job_id=%s value=%s", job.id, job.date_visite)
    return job.created_at or datetime.utcnow()


class JobRunner:
    """Drains pending jobs of one type: claim, fetch, store, mark.

    Each job is its own unit of work. A fetch or storage failure marks that job
    failed and the pass moves on to the next one.
    """

    def __init__(
        self,
        db: Session,
        fetcher: MediaFetcher,
        storage: Optional[StorageClient] = None,
        api_delay_ms: Optional[int] = None,
        photo_type: Optional[Callable[[models.KizeoJob], str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.queue = JobQueue(db)
        self.fetcher = fetcher
        self.storage = storage or StorageClient()
        self.api_delay_ms = settings.JOBS_API_DELAY_MS if api_delay_ms is None else api_delay_ms
        self.photo_type = photo_type or (lambda job: job.photo_type or models.DEFAULT_PHOTO_TYPE)
        self._sleep = sleep

    def _pause(self) -> None:
        if self.api_delay_ms > 0:
            self._sleep(self.api_delay_ms / 1000.0)

    def drain(
        self,
        job_type: str,
        agency: Optional[str] = None,
        limit: Optional[int] = None,
        chunk_size: Optional[int] = None,
        dry_run: bool = False,
        reset_stuck_first: bool = True,
        retry_failed: bool = False,
    ) -> DrainReport:
        _check_type(job_type)
        agency = normalize_code(agency) if agency else None
        limit = settings.JOBS_DRAIN_LIMIT if limit is None else limit
        chunk_size = settings.JOBS_CHUNK_SIZE if chunk_size is None else chunk_size
        report = DrainReport(job_type=job_type, agency=agency, dry_run=dry_run)
        started = time.monotonic()

        if not dry_run:
            if reset_stuck_first:
                report.reset = self.queue.reset_stuck(settings.JOBS_STUCK_THRESHOLD_MINUTES)
            if retry_failed:
                report.retried = self.queue.retry_failed(agency=agency, job_type=job_type)

        logger.info(
            "drain start type=%s agency=%s limit=%s chunk=%s dry_run=%s pending=%s",
            job_type,
            agency or "ALL",
            limit,
            chunk_size,
            dry_run,
            self.queue.count_pending(job_type, agency),
        )

        offset = 0
        while report.total < limit:
            size = max(1, min(chunk_size, limit - report.total))
            # claimed jobs leave pending, so only a dry run needs to page forward
            chunk = self.queue.claim_batch(job_type, agency, size, offset=offset if dry_run else 0)
            if not chunk:
                break
            if dry_run:
                offset += len(chunk)
            for job in chunk:
                report.total += 1
                if dry_run:
                    report.skipped += 1
                    logger.info(
                        "dry-run job id=%s type=%s agency=%s form_id=%s data_id=%s media=%s",
                        job.id,
                        job.job_type,
                        job.agency_code,
                        job.form_id,
                        job.data_id,
                        job.media_name,
                    )
                    continue
                self._run_one(job, report)

        report.duration_sec = round(time.monotonic() - started, 2)
        logger.info(
            "drain done type=%s agency=%s total=%s downloaded=%s failed=%s skipped=%s bytes=%s duration_sec=%s",
            job_type,
            agency or "ALL",
            report.total,
            report.downloaded,
            report.failed,
            report.skipped,
            report.total_bytes,
            report.duration_sec,
        )
        return report

    def _run_one(self, job: models.KizeoJob, report: DrainReport) -> None:
        try:
            self.queue.mark_processing(job)
        except InvalidTransition:
            # another runner took it between the read and the transition
            self.db.refresh(job)
            report.skipped += 1
            return

        try:
            if job.is_pdf:
                path, size = self._download_pdf(job)
            else:
                path, size = self._download_photo(job)
        except (FetchError, ArtifactStorageError) as exc:
            self.queue.mark_failed(job, str(exc)[:FAILURE_REASON_MAX])
            report.failed += 1
            return

        self.queue.mark_done(job, local_path=path, file_size=size)
        report.downloaded += 1
        report.total_bytes += size
        logger.debug("job done id=%s type=%s path=%s size=%s", job.id, job.job_type, path, size)

    def _download_pdf(self, job: models.KizeoJob) -> Tuple[str, int]:
        try:
            content = self.fetcher.fetch_pdf(job.form_id, job.data_id)
        finally:
            self._pause()
        if not content:
            raise FetchError("API a retourne un contenu vide")
        dest = f"{PDF_ROOT}/{job.storage_dir()}/{job.pdf_filename(_visit_day(job))}"
        path = self.storage.upload_bytes(content, dest, "application/pdf")
        return path, len(content)

    def _download_photo(self, job: models.KizeoJob) -> Tuple[str, int]:
        parts = _split_media(job.media_name)
        multi = len(parts) > 1
        photo_type = self.photo_type(job) or models.DEFAULT_PHOTO_TYPE
        last_path = ""
        total = 0
        errors = []

        for index, media in enumerate(parts, start=1):
            if not media:
                logger.warning("empty media part job_id=%s part=%s/%s", job.id, index, len(parts))
                continue
            try:
                content = self.fetcher.fetch(job.form_id, job.data_id, media)
            except FetchError as exc:
                if not multi:
                    raise
                logger.warning(
                    "media part failed job_id=%s part=%s/%s media=%s error=%s", job.id, index, len(parts), media, exc
                )
                errors.append(f"{media}: {exc}")
                continue
            finally:
                self._pause()
            if not content:
                if not multi:
                    raise FetchError("API a retourne un contenu vide")
                logger.warning("empty media payload job_id=%s part=%s/%s media=%s", job.id, index, len(parts), media)
                continue

            part_type = f"{photo_type}_p{index}" if multi else photo_type
            dest = f"{PHOTO_ROOT}/{job.storage_dir()}/{job.photo_filename(part_type)}"
            last_path = self.storage.upload_bytes(content, dest, "image/jpeg")
            total += len(content)

        if total == 0:
            detail = "; ".join(errors) if errors else f"{len(parts)} parties"
            raise FetchError(f"Aucune partie telechargee ({detail})")
        return last_path, total
