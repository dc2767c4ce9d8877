import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fieldsync.core.errors import BatchInsertError
from fieldsync.db.tables import equipment_table
from fieldsync.equipment.rows import RowError, chunked, normalize_row
from fieldsync.tenancy.router import normalize_code

logger = logging.getLogger("fieldsync.equipment")

CHUNK_SIZE = 100


@dataclass
class BatchResult:
    inserted_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"inserted_count": self.inserted_count, "errors": self.errors}


class BatchWriter:
    """Chunked multi-row inserts into an agency equipment table.

    All chunks of one call share a single transaction: either every row is
    committed or none is. The session is committed on success and rolled back
    on failure, so callers should not leave unrelated pending work on it.
    """

    def __init__(self, db: Session, chunk_size: int = CHUNK_SIZE) -> None:
        self.db = db
        self.chunk_size = chunk_size

    def insert_batch(self, agency: str, rows: Iterable[dict], raise_on_error: bool = False) -> BatchResult:
        agency = normalize_code(agency)
        table = equipment_table(agency)
        rows = list(rows)

        if not rows:
            return BatchResult(0, ["no rows to insert"])

        now = datetime.utcnow()
        params = []
        row_errors = []
        for position, row in enumerate(rows, start=1):
            try:
                params.append(normalize_row(row, now=now))
            except RowError as exc:
                row_errors.append(f"ligne {position}: {exc}")
        if row_errors:
            logger.warning("batch rejected agency=%s rows=%s invalid=%s", agency, len(rows), len(row_errors))
            if raise_on_error:
                raise BatchInsertError(agency, len(rows), "; ".join(row_errors))
            return BatchResult(0, row_errors)

        chunks = chunked(params, self.chunk_size)
        logger.info(
            "batch insert start agency=%s table=%s total=%s chunks=%s",
            agency,
            table.name,
            len(params),
            len(chunks),
        )

        inserted = 0
        try:
            for index, chunk in enumerate(chunks, start=1):
                self.db.execute(insert(table).values(chunk))
                inserted += len(chunk)
                logger.debug("chunk inserted agency=%s chunk=%s/%s rows=%s", agency, index, len(chunks), len(chunk))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            message = f"Erreur insertion batch : {getattr(exc, 'orig', None) or exc}"
            logger.error(
                "batch insert rolled back agency=%s table=%s rows=%s error=%s",
                agency,
                table.name,
                len(params),
                message,
            )
            if raise_on_error:
                raise BatchInsertError(agency, len(params), message) from exc
            return BatchResult(0, [message])

        logger.info("batch insert done agency=%s inserted=%s", agency, inserted)
        return BatchResult(inserted, [])
