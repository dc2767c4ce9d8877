import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from sqlalchemy.orm import Session

from fieldsync.bulk.config import rows_to_dicts
from fieldsync.bulk.parser import iter_rows
from fieldsync.equipment.rows import RowError, normalize_row
from fieldsync.equipment.writer import BatchWriter
from fieldsync.services.dedup import DedupIndex
from fieldsync.tenancy.router import normalize_code

logger = logging.getLogger("fieldsync.equipment")

REQUIRED_KEYS = ("numero_equipement", "libelle_equipement")


@dataclass
class ImportResult:
    inserted_count: int = 0
    duplicates: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "inserted_count": self.inserted_count,
            "duplicates": self.duplicates,
            "errors": self.errors,
        }


def _prepare_rows(rows: List[Dict[str, object]], id_contact: int, annee: str) -> Tuple[List[dict], List[str]]:
    prepared = []
    errors = []
    for position, row in enumerate(rows, start=1):
        row = dict(row)
        if row.get("id_contact") in (None, ""):
            row["id_contact"] = id_contact
        if row.get("annee") in (None, ""):
            row["annee"] = annee
        missing = [key for key in REQUIRED_KEYS if not str(row.get(key) or "").strip()]
        if missing:
            errors.append(f"ligne {position}: champ(s) obligatoire(s) manquant(s) : {', '.join(missing)}")
            continue
        try:
            normalize_row(row)
        except RowError as exc:
            errors.append(f"ligne {position}: {exc}")
            continue
        prepared.append(row)
    return prepared, errors


def import_equipment(
    db: Session,
    agency: str,
    id_contact: int,
    annee: str,
    rows: List[Dict[str, object]],
    force: bool = False,
) -> ImportResult:
    """Duplicate check then one transactional insert.

    Duplicates are reported and left out unless ``force`` is set. Any invalid
    row aborts the whole import so a list is never half written.
    """
    agency = normalize_code(agency)
    result = ImportResult()
    prepared, errors = _prepare_rows(rows, id_contact, annee)
    if errors:
        result.errors = errors
        logger.warning("import rejected agency=%s id_contact=%s invalid_rows=%s", agency, id_contact, len(errors))
        return result
    if not prepared:
        result.errors = ["no rows to insert"]
        return result

    report = DedupIndex(db).check_duplicates_by_scope(agency, prepared)
    result.duplicates = report.messages
    duplicate_count = len(report.duplicates)
    to_insert = prepared if force else report.clean
    if not to_insert:
        logger.info("import skipped agency=%s id_contact=%s duplicates=%s", agency, id_contact, duplicate_count)
        return result

    batch = BatchWriter(db).insert_batch(agency, to_insert)
    result.inserted_count = batch.inserted_count
    result.errors = batch.errors
    logger.info(
        "import done agency=%s id_contact=%s annee=%s inserted=%s duplicates=%s forced=%s",
        agency,
        id_contact,
        annee,
        result.inserted_count,
        duplicate_count,
        force,
    )
    return result


def import_equipment_file(
    db: Session,
    agency: str,
    id_contact: int,
    annee: str,
    file_path: str,
    force: bool = False,
) -> ImportResult:
    header, raw_rows = iter_rows(file_path)
    rows = rows_to_dicts(header, raw_rows)
    return import_equipment(db, agency, id_contact, annee, rows, force=force)
