import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fieldsync.api.v1.deps import parse_agencies, resolve_or_400
from fieldsync.core.config import settings
from fieldsync.core.errors import DuplicateJob, InvalidTransition
from fieldsync.db import models
from fieldsync.db.session import get_db
from fieldsync.jobs.queue import JobQueue

router = APIRouter(prefix="/jobs", tags=["Jobs"])
logger = logging.getLogger("fieldsync.api")


class JobCreate(BaseModel):
    job_type: str
    agency: str
    form_id: int
    data_id: int
    id_contact: int
    annee: str
    visite: str = "CE1"
    media_name: str | None = None
    equipment_numero: str | None = None
    photo_type: str | None = None
    client_name: str | None = None
    date_visite: str | None = None


class ResetStuckRequest(BaseModel):
    minutes: int | None = None


class PurgeRequest(BaseModel):
    status: str = models.STATUS_DONE
    days: int | None = None
    dry_run: bool = False


class RetryFailedRequest(BaseModel):
    agency: str | None = None
    job_type: str | None = None


class FailJobRequest(BaseModel):
    reason: str = "Abandonne par un operateur"


def _visible(job: models.KizeoJob, permitted: Optional[List[str]]) -> bool:
    return permitted is None or job.agency_code in permitted


def _get_job_or_404(queue: JobQueue, job_id: int, permitted: Optional[List[str]]) -> models.KizeoJob:
    job = queue.get(job_id)
    if not job or not _visible(job, permitted):
        raise HTTPException(status_code=404, detail="Job introuvable")
    return job


@router.get("/status")
def jobs_status(
    agency: str | None = None,
    agencies: str | None = None,
    failures: int = 20,
    db: Session = Depends(get_db),
):
    permitted = parse_agencies(agencies)
    queue = JobQueue(db)
    if agency:
        tenant = resolve_or_400(agency, permitted).agency
        return {
            "agency": tenant,
            "photo": queue.stats_by_type_and_agency(models.JOB_TYPE_PHOTO, tenant),
            "pdf": queue.stats_by_type_and_agency(models.JOB_TYPE_PDF, tenant),
            "recent_failures": [job.to_dict() for job in queue.recent_failures(failures, agency=tenant)],
        }

    return {
        "global": queue.global_stats(permitted),
        "by_agency": queue.stats_by_agency(permitted),
        "recent_failures": [job.to_dict() for job in queue.recent_failures(failures, agencies=permitted)],
        "stuck": len(queue.find_stuck(settings.JOBS_STUCK_THRESHOLD_MINUTES, permitted)),
        "created_24h": queue.count_recently_created(24, permitted),
        "completed_24h": queue.count_recently_completed(24, permitted),
    }


@router.post("", status_code=201)
def create_job(payload: JobCreate, agencies: str | None = None, db: Session = Depends(get_db)):
    tenant = resolve_or_400(payload.agency, parse_agencies(agencies)).agency
    if payload.job_type == models.JOB_TYPE_PHOTO:
        if not payload.media_name:
            raise HTTPException(status_code=400, detail="media_name obligatoire pour un job photo")
        job = models.new_photo_job(
            tenant,
            payload.form_id,
            payload.data_id,
            payload.media_name,
            payload.id_contact,
            payload.annee,
            payload.visite,
            equipment_numero=payload.equipment_numero,
            photo_type=payload.photo_type,
        )
    elif payload.job_type == models.JOB_TYPE_PDF:
        job = models.new_pdf_job(
            tenant,
            payload.form_id,
            payload.data_id,
            payload.id_contact,
            payload.annee,
            payload.visite,
            client_name=payload.client_name,
            date_visite=payload.date_visite,
        )
    else:
        raise HTTPException(status_code=400, detail="Type de job invalide")
    try:
        job = JobQueue(db).enqueue(job)
    except DuplicateJob as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return job.to_dict()


@router.get("/{job_id}")
def get_job(job_id: int, agencies: str | None = None, db: Session = Depends(get_db)):
    return _get_job_or_404(JobQueue(db), job_id, parse_agencies(agencies)).to_dict()


@router.post("/{job_id}/fail")
def fail_job(job_id: int, payload: FailJobRequest, agencies: str | None = None, db: Session = Depends(get_db)):
    queue = JobQueue(db)
    job = _get_job_or_404(queue, job_id, parse_agencies(agencies))
    try:
        queue.mark_failed(job, payload.reason)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return job.to_dict()


@router.post("/reset-stuck")
def reset_stuck(payload: ResetStuckRequest, db: Session = Depends(get_db)):
    minutes = settings.JOBS_STUCK_THRESHOLD_MINUTES if payload.minutes is None else payload.minutes
    if minutes <= 0:
        raise HTTPException(status_code=400, detail="minutes doit etre positif")
    count = JobQueue(db).reset_stuck(minutes)
    return {"reset": count, "threshold_minutes": minutes}


@router.post("/purge")
def purge_jobs(payload: PurgeRequest, db: Session = Depends(get_db)):
    if payload.status not in models.TERMINAL_STATUSES:
        raise HTTPException(status_code=400, detail="Statut invalide (done ou failed)")
    days = payload.days
    if days is None:
        days = settings.JOBS_PURGE_DONE_DAYS if payload.status == models.STATUS_DONE else settings.JOBS_PURGE_FAILED_DAYS
    queue = JobQueue(db)
    if payload.dry_run:
        counts = queue.count_purgeable(payload.status, days)
        return {"dry_run": True, "status": payload.status, "days": days, "would_delete": counts}
    deleted = queue.purge(payload.status, days)
    return {"dry_run": False, "status": payload.status, "days": days, "deleted": deleted}


@router.post("/retry-failed")
def retry_failed(payload: RetryFailedRequest, agencies: str | None = None, db: Session = Depends(get_db)):
    permitted = parse_agencies(agencies)
    tenant = resolve_or_400(payload.agency, permitted).agency if payload.agency else None
    if tenant is None and permitted is not None:
        raise HTTPException(status_code=400, detail="agency obligatoire avec une liste d'agences restreinte")
    if payload.job_type and payload.job_type not in models.JOB_TYPES:
        raise HTTPException(status_code=400, detail="Type de job invalide")
    count = JobQueue(db).retry_failed(agency=tenant, job_type=payload.job_type)
    logger.info("retry-failed requested agency=%s type=%s count=%s", tenant, payload.job_type, count)
    return {"retried": count}
