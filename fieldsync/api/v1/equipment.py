import logging
import os
import uuid
from typing import List

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fieldsync.api.v1.deps import parse_agencies, resolve_or_400
from fieldsync.bulk.importer import import_equipment, import_equipment_file
from fieldsync.bulk.parser import SUPPORTED_EXTENSIONS
from fieldsync.db.session import get_db
from fieldsync.equipment.store import EquipmentStore
from fieldsync.services.dedup import DedupIndex
from fieldsync.services.storage import ArtifactStorageError, StorageClient

router = APIRouter(prefix="/equipment", tags=["Equipment"])
logger = logging.getLogger("fieldsync.api")

MAX_UPLOAD_MB = int(os.getenv("IMPORT_MAX_FILE_MB", "20"))


class EquipmentRow(BaseModel):
    numero_equipement: str
    libelle_equipement: str = ""
    visite: str | None = None
    annee: str | None = None
    marque: str | None = None
    mode_fonctionnement: str | None = None
    repere_site_client: str | None = None
    is_hors_contrat: bool | str | None = None
    is_archive: bool | str | None = None
    id_contact: int | None = None


class DuplicateCheckRequest(BaseModel):
    id_contact: int
    annee: str
    rows: List[EquipmentRow]


class ImportRequest(DuplicateCheckRequest):
    force: bool = False


class ArchiveRequest(BaseModel):
    ids: List[int]


def _row_dicts(payload: DuplicateCheckRequest) -> List[dict]:
    rows = []
    for row in payload.rows:
        data = row.model_dump(exclude_none=True)
        data.setdefault("id_contact", payload.id_contact)
        data.setdefault("annee", payload.annee)
        rows.append(data)
    return rows


@router.post("/{agency}/check-duplicates")
def check_duplicates(
    agency: str,
    payload: DuplicateCheckRequest,
    agencies: str | None = None,
    db: Session = Depends(get_db),
):
    tenant = resolve_or_400(agency, parse_agencies(agencies)).agency
    report = DedupIndex(db).check_duplicates_by_scope(tenant, _row_dicts(payload))
    return {
        "agency": tenant,
        "duplicates": report.messages,
        "duplicate_count": len(report.duplicates),
        "clean_count": len(report.clean),
    }


@router.post("/{agency}/import")
def import_rows(
    agency: str,
    payload: ImportRequest,
    agencies: str | None = None,
    db: Session = Depends(get_db),
):
    tenant = resolve_or_400(agency, parse_agencies(agencies)).agency
    result = import_equipment(db, tenant, payload.id_contact, payload.annee, _row_dicts(payload), force=payload.force)
    return {"agency": tenant, **result.to_dict()}


@router.post("/{agency}/import/upload")
def import_upload(
    agency: str,
    file: UploadFile = File(...),
    id_contact: int = Form(...),
    annee: str = Form(...),
    force: bool = Form(False),
    agencies: str | None = None,
    db: Session = Depends(get_db),
):
    tenant = resolve_or_400(agency, parse_agencies(agencies)).agency
    if not file.filename:
        raise HTTPException(status_code=400, detail="Fichier non fourni")
    ext = os.path.splitext(file.filename)[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Format non supporte")

    storage = StorageClient()
    dest_path = f"imports/{tenant}/{id_contact}/{uuid.uuid4().hex}{ext}"
    try:
        file_url, file_size, _ = storage.upload_file(
            file.file,
            dest_path,
            file.content_type or "application/octet-stream",
            max_bytes=MAX_UPLOAD_MB * 1024 * 1024,
        )
        local_path = storage.download_to_temp(file_url)
    except ArtifactStorageError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if file_size <= 0:
        raise HTTPException(status_code=400, detail="Fichier vide")

    try:
        result = import_equipment_file(db, tenant, id_contact, annee, local_path, force=force)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    finally:
        if file_url.startswith("gs://") and os.path.exists(local_path):
            os.remove(local_path)
    logger.info(
        "import upload agency=%s id_contact=%s file=%s size=%s inserted=%s",
        tenant,
        id_contact,
        file.filename,
        file_size,
        result.inserted_count,
    )
    return {"agency": tenant, "file_name": file.filename, **result.to_dict()}


@router.get("/{agency}/{id_contact}")
def list_equipment(
    agency: str,
    id_contact: int,
    annee: str | None = None,
    agencies: str | None = None,
    db: Session = Depends(get_db),
):
    tenant = resolve_or_400(agency, parse_agencies(agencies)).agency
    store = EquipmentStore(db, tenant)
    return {
        "agency": tenant,
        "years": store.available_years(id_contact),
        "last_visit": store.find_last_visit(id_contact),
        "items": store.list_existing(id_contact, annee),
    }


@router.get("/{agency}/{id_contact}/duplicates")
def duplicate_groups(agency: str, id_contact: int, agencies: str | None = None, db: Session = Depends(get_db)):
    tenant = resolve_or_400(agency, parse_agencies(agencies)).agency
    return {"agency": tenant, "groups": EquipmentStore(db, tenant).find_duplicate_groups(id_contact)}


@router.post("/{agency}/archive")
def archive_equipment(agency: str, payload: ArchiveRequest, agencies: str | None = None, db: Session = Depends(get_db)):
    tenant = resolve_or_400(agency, parse_agencies(agencies)).agency
    return {"agency": tenant, "archived": EquipmentStore(db, tenant).archive(payload.ids)}
