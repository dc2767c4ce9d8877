"""Natural-key deduplication for equipment rows and download jobs.

Existing keys are always preloaded in one query per scope and incoming units
are partitioned in memory, so a bulk import of several hundred rows costs a
single lookup instead of one per row.

Two disjoint keys are in use:

* upstream-origin key: ``(form_id, data_id, index)`` for equipment,
  ``(form_id, data_id, media_name)`` for photo jobs, ``(form_id, data_id)``
  for pdf jobs;
* domain key: ``(id_contact, numero_equipement, visite, annee)`` for rows
  entered without an upstream origin.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldsync.db import models
from fieldsync.db.guard import storage_guard
from fieldsync.equipment.rows import describe, domain_key
from fieldsync.equipment.store import EquipmentStore
from fieldsync.tenancy.router import normalize_code

logger = logging.getLogger("fieldsync.equipment")

JobKey = Tuple[str, Optional[str]]


@dataclass
class DuplicateReport:
    duplicates: List[dict] = field(default_factory=list)
    clean: List[dict] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"duplicates": self.duplicates, "clean": self.clean, "messages": self.messages}


class DedupIndex:
    def __init__(self, db: Session) -> None:
        self.db = db

    # equipment, domain key

    def check_duplicates(self, agency: str, id_contact, annee: str, rows: Iterable[dict]) -> DuplicateReport:
        store = EquipmentStore(self.db, agency)
        existing = {f"{numero}|{visite}" for numero, visite in store.existing_domain_keys(int(id_contact), annee)}

        report = DuplicateReport()
        seen: Set[str] = set()
        for row in rows:
            key = domain_key(row)
            if key in existing:
                report.duplicates.append(row)
                report.messages.append(f"{describe(row)} existe deja pour le contact {id_contact} en {annee}")
            elif key in seen:
                report.duplicates.append(row)
                report.messages.append(f"{describe(row)} est present plusieurs fois dans l'import")
            else:
                seen.add(key)
                report.clean.append(row)

        if report.duplicates:
            logger.warning(
                "duplicates detected agency=%s id_contact=%s annee=%s count=%s",
                store.agency,
                id_contact,
                annee,
                len(report.duplicates),
            )
        return report

    def check_duplicates_by_scope(self, agency: str, rows: Iterable[dict]) -> DuplicateReport:
        """Rows carrying their own ``id_contact``/``annee`` are checked against that scope.

        One preload per distinct ``(id_contact, annee)`` pair.
        """
        groups: Dict[Tuple[int, str], List[dict]] = {}
        for row in rows:
            key = (int(str(row["id_contact"]).strip()), str(row["annee"]).strip())
            groups.setdefault(key, []).append(row)

        merged = DuplicateReport()
        for (id_contact, annee), group in groups.items():
            report = self.check_duplicates(agency, id_contact, annee, group)
            merged.duplicates.extend(report.duplicates)
            merged.clean.extend(report.clean)
            merged.messages.extend(report.messages)
        return merged

    # equipment, upstream-origin key

    def partition_by_origin(self, agency: str, form_id: int, data_id: int, rows: Iterable[dict]) -> DuplicateReport:
        store = EquipmentStore(self.db, agency)
        existing = store.existing_origin_keys(form_id, data_id)
        report = DuplicateReport()
        seen: Set[int] = set()
        for row in rows:
            index = int(row["kizeo_index"])
            if index in existing or index in seen:
                report.duplicates.append(row)
                report.messages.append(f"equipement {form_id}/{data_id}/{index} deja enregistre")
            else:
                seen.add(index)
                report.clean.append(row)
        return report

    # jobs

    def existing_job_keys(self, form_id: int, data_id: int, agency: Optional[str] = None) -> Set[JobKey]:
        stmt = select(models.KizeoJob.job_type, models.KizeoJob.media_name).where(
            models.KizeoJob.form_id == int(form_id),
            models.KizeoJob.data_id == int(data_id),
        )
        if agency:
            stmt = stmt.where(models.KizeoJob.agency_code == normalize_code(agency))
        with storage_guard(self.db, "existing_job_keys", table=models.KizeoJob.__tablename__):
            rows = self.db.execute(stmt).all()
        keys: Set[JobKey] = set()
        for job_type, media_name in rows:
            if job_type == models.JOB_TYPE_PDF:
                keys.add((models.JOB_TYPE_PDF, None))
            if media_name:
                keys.add((models.JOB_TYPE_PHOTO, media_name))
        return keys

    def job_exists(self, form_id: int, data_id: int, media_name: Optional[str] = None, agency: Optional[str] = None) -> bool:
        """``media_name=None`` checks for the pdf job of the submission."""
        return job_key(media_name) in self.existing_job_keys(form_id, data_id, agency)


def job_key(media_name: Optional[str]) -> JobKey:
    if media_name:
        return (models.JOB_TYPE_PHOTO, media_name)
    return (models.JOB_TYPE_PDF, None)

