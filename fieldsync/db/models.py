import re
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JOB_TYPE_PHOTO = "photo"
JOB_TYPE_PDF = "pdf"
JOB_TYPES = (JOB_TYPE_PHOTO, JOB_TYPE_PDF)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
JOB_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_DONE, STATUS_FAILED)
TERMINAL_STATUSES = (STATUS_DONE, STATUS_FAILED)

PRIORITY_URGENT = 1
PRIORITY_NORMAL = 5
PRIORITY_LOW = 10

DEFAULT_PHOTO_TYPE = "generale"


class KizeoJob(Base):
    __tablename__ = "kizeo_jobs"
    __table_args__ = (
        UniqueConstraint("form_id", "data_id", "media_name", name="uk_photo"),
        Index("idx_pending_type_priority", "status", "job_type", "priority", "created_at"),
        Index("idx_form_data", "form_id", "data_id"),
        Index("idx_cleanup", "status", "completed_at"),
        Index("idx_agency", "agency_code", "status"),
        Index("idx_stuck", "status", "started_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(10), nullable=False)
    agency_code = Column(String(10), nullable=False)
    form_id = Column(Integer, nullable=False)
    data_id = Column(Integer, nullable=False)
    media_name = Column(String(255), nullable=True)
    equipment_numero = Column(String(50), nullable=True)
    photo_type = Column(String(50), nullable=True)
    id_contact = Column(Integer, nullable=False)
    annee = Column(String(4), nullable=False)
    visite = Column(String(10), nullable=False)
    client_name = Column(String(255), nullable=True)
    date_visite = Column(String(10), nullable=True)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    priority = Column(Integer, nullable=False, default=PRIORITY_NORMAL)
    attempts = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)
    local_path = Column(String(500), nullable=True)
    file_size = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_photo(self) -> bool:
        return self.job_type == JOB_TYPE_PHOTO

    @property
    def is_pdf(self) -> bool:
        return self.job_type == JOB_TYPE_PDF

    def storage_dir(self) -> str:
        return f"{self.agency_code}/{self.id_contact}/{self.annee}/{self.visite}"

    def photo_filename(self, photo_type: str | None = None) -> str | None:
        if not self.is_photo:
            return None
        photo_type = sanitize_filename(photo_type or self.photo_type or DEFAULT_PHOTO_TYPE)
        numero = sanitize_filename(self.equipment_numero or "UNKNOWN")
        return f"{numero}_{photo_type}_{self.data_id}.jpg"

    def pdf_filename(self, on: datetime | None = None) -> str | None:
        if not self.is_pdf:
            return None
        if self.client_name:
            client_slug = re.sub(r"[^a-zA-Z0-9]+", "_", self.client_name)
        else:
            client_slug = f"client_{self.id_contact}"
        day = (on or datetime.utcnow()).strftime("%Y-%m-%d")
        return f"{client_slug}-{day}-{self.visite}.pdf"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "tenant": self.agency_code,
            "form_id": self.form_id,
            "data_id": self.data_id,
            "media_name": self.media_name,
            "photo_type": self.photo_type,
            "id_contact": self.id_contact,
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "failure_reason": self.failure_reason,
            "local_path": self.local_path,
            "file_size": self.file_size,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def sanitize_filename(name: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "_", name)
    return re.sub(r"_+", "_", sanitized.strip("_"))


def new_photo_job(
    agency_code: str,
    form_id: int,
    data_id: int,
    media_name: str,
    id_contact: int,
    annee: str,
    visite: str,
    equipment_numero: str | None = None,
    priority: int = PRIORITY_NORMAL,
    photo_type: str | None = None,
) -> KizeoJob:
    return KizeoJob(
        job_type=JOB_TYPE_PHOTO,
        agency_code=agency_code.strip().upper(),
        form_id=form_id,
        data_id=data_id,
        media_name=media_name,
        equipment_numero=equipment_numero,
        photo_type=photo_type,
        id_contact=id_contact,
        annee=annee,
        visite=visite.strip().upper(),
        priority=priority,
        status=STATUS_PENDING,
        attempts=0,
    )


def new_pdf_job(
    agency_code: str,
    form_id: int,
    data_id: int,
    id_contact: int,
    annee: str,
    visite: str,
    client_name: str | None = None,
    date_visite: str | None = None,
    priority: int = PRIORITY_URGENT,
) -> KizeoJob:
    return KizeoJob(
        job_type=JOB_TYPE_PDF,
        agency_code=agency_code.strip().upper(),
        form_id=form_id,
        data_id=data_id,
        id_contact=id_contact,
        annee=annee,
        visite=visite.strip().upper(),
        client_name=client_name,
        date_visite=date_visite,
        priority=priority,
        status=STATUS_PENDING,
        attempts=0,
    )
