"""Turns one submitted mobile form into equipment rows and download jobs.

A submission can be delivered more than once. Every step is keyed so that a
replay creates nothing new: jobs on ``(form_id, data_id, media_name)``,
off-contract equipment on ``(form_id, data_id, index)`` and contract equipment
on ``(id_contact, numero, visite, annee)``.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from fieldsync.db import models
from fieldsync.equipment.numbering import OffContractNumberGenerator
from fieldsync.equipment.rows import VALID_VISITES
from fieldsync.equipment.writer import BatchWriter
from fieldsync.jobs.queue import JobQueue
from fieldsync.services.dedup import DedupIndex, job_key
from fieldsync.tenancy.router import normalize_code

logger = logging.getLogger("fieldsync.jobs")

DEFAULT_FORM_VISITE = "CE1"
OFF_CONTRACT_PLACEHOLDER = "HC_"


@dataclass
class FormEquipment:
    numero_equipement: Optional[str] = None
    visite: Optional[str] = None
    libelle_equipement: str = ""
    type_equipement: Optional[str] = None
    marque: Optional[str] = None
    mode_fonctionnement: Optional[str] = None
    repere_site_client: Optional[str] = None
    kizeo_index: Optional[int] = None

    def has_valid_numero(self) -> bool:
        return bool((self.numero_equipement or "").strip())

    def normalized_visite(self) -> Optional[str]:
        if self.visite is None:
            return None
        return self.visite.strip().upper()

    def has_valid_visite(self) -> bool:
        return self.normalized_visite() in VALID_VISITES


@dataclass
class FormMedia:
    media_name: str
    equipment_numero: Optional[str] = None
    photo_type: str = "autre"
    is_contract: bool = True
    equipment_index: Optional[int] = None


@dataclass
class FormSubmission:
    form_id: int
    data_id: int
    id_contact: Optional[int]
    annee: Optional[str]
    client_name: Optional[str] = None
    date_visite: Optional[date] = None
    contract_equipments: List[FormEquipment] = field(default_factory=list)
    off_contract_equipments: List[FormEquipment] = field(default_factory=list)
    medias: List[FormMedia] = field(default_factory=list)

    def is_valid(self) -> bool:
        return self.id_contact is not None and bool(self.annee)

    def sanitized_client_name(self) -> str:
        if not self.client_name:
            return "INCONNU"
        sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", self.client_name)
        sanitized = re.sub(r"_+", "_", sanitized)
        return sanitized.strip("_")[:50].upper()

    def main_visite(self) -> str:
        for equipment in self.contract_equipments:
            if equipment.has_valid_visite():
                return equipment.normalized_visite()
        return DEFAULT_FORM_VISITE


def _resolve_numero(media: FormMedia, generated_numbers: Dict[int, str]) -> Optional[str]:
    numero = media.equipment_numero
    if numero and numero.startswith(OFF_CONTRACT_PLACEHOLDER):
        try:
            index = int(numero[len(OFF_CONTRACT_PLACEHOLDER):])
        except ValueError:
            return numero
        return generated_numbers.get(index, numero)
    return numero


def _unique_photo_type(numero: Optional[str], photo_type: Optional[str], taken: Set[Tuple[Optional[str], str]]) -> str:
    """Two photos of one equipment never share a file: the second "plaque" becomes "plaque_2"."""
    base = photo_type or models.DEFAULT_PHOTO_TYPE
    candidate, count = base, 1
    while (numero, candidate) in taken:
        count += 1
        candidate = f"{base}_{count}"
    taken.add((numero, candidate))
    return candidate


def create_jobs(
    db: Session,
    submission: FormSubmission,
    agency: str,
    generated_numbers: Optional[Dict[int, str]] = None,
) -> dict:
    agency = normalize_code(agency)
    stats = {"pdf_created": False, "photos_created": 0, "photos_skipped": 0}
    if not submission.is_valid():
        logger.warning(
            "cannot create jobs without id_contact or annee form_id=%s data_id=%s",
            submission.form_id,
            submission.data_id,
        )
        return stats

    queue = JobQueue(db)
    known = queue.existing_keys(submission.form_id, submission.data_id)
    taken = {
        (job.equipment_numero, job.photo_type or models.DEFAULT_PHOTO_TYPE)
        for job in queue.find_by_form_data(submission.form_id, submission.data_id)
        if job.is_photo
    }
    visite = submission.main_visite()
    generated_numbers = generated_numbers or {}
    pending: List[models.KizeoJob] = []

    pdf_key = job_key(None)
    if pdf_key not in known:
        known.add(pdf_key)
        pending.append(
            models.new_pdf_job(
                agency,
                submission.form_id,
                submission.data_id,
                submission.id_contact,
                submission.annee,
                visite,
                client_name=submission.sanitized_client_name(),
                date_visite=submission.date_visite.isoformat() if submission.date_visite else None,
            )
        )
        stats["pdf_created"] = True

    for media in submission.medias:
        key = job_key(media.media_name)
        if not media.media_name or key in known:
            stats["photos_skipped"] += 1
            continue
        known.add(key)
        numero = _resolve_numero(media, generated_numbers)
        pending.append(
            models.new_photo_job(
                agency,
                submission.form_id,
                submission.data_id,
                media.media_name,
                submission.id_contact,
                submission.annee,
                visite,
                equipment_numero=numero,
                photo_type=_unique_photo_type(numero, media.photo_type, taken),
            )
        )
        stats["photos_created"] += 1

    queue.enqueue_many(pending)
    logger.info(
        "jobs created form_id=%s data_id=%s agency=%s pdf_created=%s photos_created=%s photos_skipped=%s",
        submission.form_id,
        submission.data_id,
        agency,
        stats["pdf_created"],
        stats["photos_created"],
        stats["photos_skipped"],
    )
    return stats


def _equipment_row(submission: FormSubmission, equipment: FormEquipment, numero: str, visite: str, off_contract: bool) -> dict:
    return {
        "id_contact": submission.id_contact,
        "numero_equipement": numero,
        "libelle_equipement": equipment.libelle_equipement or equipment.type_equipement or "",
        "visite": visite,
        "annee": submission.annee,
        "marque": equipment.marque,
        "mode_fonctionnement": equipment.mode_fonctionnement,
        "repere_site_client": equipment.repere_site_client,
        "is_hors_contrat": off_contract,
        "is_archive": False,
        "date_derniere_visite": submission.date_visite,
        "kizeo_form_id": submission.form_id,
        "kizeo_data_id": submission.data_id,
        "kizeo_index": equipment.kizeo_index if off_contract else None,
    }


def persist_equipments(db: Session, submission: FormSubmission, agency: str) -> dict:
    agency = normalize_code(agency)
    result = {
        "contract_created": 0,
        "contract_skipped": 0,
        "offcontract_created": 0,
        "offcontract_skipped": 0,
        "generated_numbers": {},
        "errors": [],
    }
    if not submission.is_valid():
        logger.warning(
            "cannot persist equipments without id_contact or annee form_id=%s data_id=%s",
            submission.form_id,
            submission.data_id,
        )
        return result

    dedup = DedupIndex(db)

    contract_rows = []
    for equipment in submission.contract_equipments:
        if not equipment.has_valid_numero():
            result["contract_skipped"] += 1
            continue
        visite = equipment.normalized_visite() if equipment.has_valid_visite() else DEFAULT_FORM_VISITE
        contract_rows.append(
            _equipment_row(submission, equipment, equipment.numero_equipement.strip(), visite, off_contract=False)
        )
    contract_report = dedup.check_duplicates(agency, submission.id_contact, submission.annee, contract_rows)
    result["contract_skipped"] += len(contract_report.duplicates)

    candidates = [
        {"kizeo_index": position if equipment.kizeo_index is None else equipment.kizeo_index, "equipment": equipment}
        for position, equipment in enumerate(submission.off_contract_equipments)
    ]
    origin_report = dedup.partition_by_origin(agency, submission.form_id, submission.data_id, candidates)
    result["offcontract_skipped"] = len(origin_report.duplicates)

    generator = OffContractNumberGenerator(db, agency)
    generator.reserve(submission.id_contact, [row["numero_equipement"] for row in contract_report.clean])
    off_contract_rows = []
    for item in origin_report.clean:
        equipment, index = item["equipment"], item["kizeo_index"]
        libelle = equipment.libelle_equipement or equipment.type_equipement or ""
        numero = generator.generate(submission.id_contact, libelle)
        result["generated_numbers"][index] = numero
        visite = equipment.normalized_visite() or DEFAULT_FORM_VISITE
        row = _equipment_row(submission, equipment, numero, visite, off_contract=True)
        row["kizeo_index"] = index
        off_contract_rows.append(row)

    rows = contract_report.clean + off_contract_rows
    if not rows:
        return result

    batch = BatchWriter(db).insert_batch(agency, rows)
    if not batch.ok:
        result["errors"] = batch.errors
        result["generated_numbers"] = {}
        return result

    result["contract_created"] = len(contract_report.clean)
    result["offcontract_created"] = len(off_contract_rows)
    logger.info(
        "equipments persisted form_id=%s data_id=%s agency=%s contract=%s offcontract=%s skipped=%s",
        submission.form_id,
        submission.data_id,
        agency,
        result["contract_created"],
        result["offcontract_created"],
        result["contract_skipped"] + result["offcontract_skipped"],
    )
    return result


def ingest_submission(db: Session, submission: FormSubmission, agency: str) -> dict:
    """Equipment first, so photo jobs of off-contract items get their real numbers."""
    equipments = persist_equipments(db, submission, agency)
    jobs = create_jobs(db, submission, agency, equipments["generated_numbers"])
    return {"equipments": equipments, "jobs": jobs}
