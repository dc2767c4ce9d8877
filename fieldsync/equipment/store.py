from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import distinct, func, select, update
from sqlalchemy.orm import Session

from fieldsync.db.guard import storage_guard
from fieldsync.db.tables import equipment_table
from fieldsync.tenancy.router import normalize_code


class EquipmentStore:
    """Queries over one agency's equipment table."""

    def __init__(self, db: Session, agency: str) -> None:
        self.db = db
        self.agency = normalize_code(agency)
        self.table = equipment_table(self.agency)

    def _guard(self, operation: str):
        return storage_guard(self.db, operation, agency=self.agency, table=self.table.name)

    def _fetch(self, stmt, operation: str) -> List[dict]:
        with self._guard(operation):
            return [dict(row) for row in self.db.execute(stmt).mappings().all()]

    def _active(self, id_contact: int):
        t = self.table
        return [t.c.id_contact == int(id_contact), t.c.is_archive.is_(False)]

    def find_by_contact_visit_year(self, id_contact: int, visite: str, annee: str) -> List[dict]:
        t = self.table
        stmt = (
            select(t)
            .where(*self._active(id_contact), t.c.visite == visite.upper(), t.c.annee == annee)
            .order_by(t.c.numero_equipement.asc())
        )
        return self._fetch(stmt, "find_by_contact_visit_year")

    def find_contract_equipments(self, id_contact: int, visite: str, annee: str) -> List[dict]:
        t = self.table
        stmt = (
            select(t)
            .where(
                *self._active(id_contact),
                t.c.visite == visite.upper(),
                t.c.annee == annee,
                t.c.is_hors_contrat.is_(False),
            )
            .order_by(t.c.numero_equipement.asc())
        )
        return self._fetch(stmt, "find_contract_equipments")

    def find_off_contract_equipments(self, id_contact: int, visite: str, annee: str) -> List[dict]:
        t = self.table
        stmt = (
            select(t)
            .where(
                *self._active(id_contact),
                t.c.visite == visite.upper(),
                t.c.annee == annee,
                t.c.is_hors_contrat.is_(True),
            )
            .order_by(t.c.numero_equipement.asc())
        )
        return self._fetch(stmt, "find_off_contract_equipments")

    def find_last_visit(self, id_contact: int) -> Optional[dict]:
        t = self.table
        stmt = (
            select(t.c.annee, t.c.visite, t.c.date_derniere_visite)
            .where(*self._active(id_contact), t.c.date_derniere_visite.is_not(None))
            .order_by(t.c.date_derniere_visite.desc())
            .limit(1)
        )
        rows = self._fetch(stmt, "find_last_visit")
        if not rows:
            return None
        row = rows[0]
        return {"annee": row["annee"], "visite": row["visite"], "date": row["date_derniere_visite"]}

    def available_years(self, id_contact: int) -> List[str]:
        t = self.table
        stmt = select(distinct(t.c.annee)).where(*self._active(id_contact)).order_by(t.c.annee.desc())
        with self._guard("available_years"):
            return [value for value in self.db.execute(stmt).scalars().all() if value]

    def available_visits(self, id_contact: int, annee: str) -> List[str]:
        t = self.table
        stmt = (
            select(distinct(t.c.visite))
            .where(*self._active(id_contact), t.c.annee == annee)
            .order_by(t.c.visite.asc())
        )
        with self._guard("available_visits"):
            return list(self.db.execute(stmt).scalars().all())

    def count_existing(self, id_contact: int, annee: str) -> int:
        t = self.table
        stmt = select(func.count(t.c.id)).where(*self._active(id_contact), t.c.annee == annee)
        with self._guard("count_existing"):
            return int(self.db.execute(stmt).scalar() or 0)

    def list_existing(self, id_contact: int, annee: Optional[str] = None) -> List[dict]:
        t = self.table
        stmt = select(
            t.c.numero_equipement,
            t.c.libelle_equipement,
            t.c.visite,
            t.c.annee,
            t.c.marque,
            t.c.mode_fonctionnement,
        ).where(*self._active(id_contact))
        if annee:
            stmt = stmt.where(t.c.annee == annee)
        stmt = stmt.order_by(t.c.numero_equipement, t.c.visite)
        return self._fetch(stmt, "list_existing")

    def existing_domain_keys(self, id_contact: int, annee: str) -> Set[Tuple[str, str]]:
        t = self.table
        stmt = select(t.c.numero_equipement, t.c.visite).where(*self._active(id_contact), t.c.annee == annee)
        with self._guard("existing_domain_keys"):
            rows = self.db.execute(stmt).all()
        return {(numero, visite) for numero, visite in rows}

    def existing_origin_keys(self, form_id: int, data_id: int) -> Set[int]:
        t = self.table
        stmt = select(t.c.kizeo_index).where(
            t.c.kizeo_form_id == int(form_id),
            t.c.kizeo_data_id == int(data_id),
            t.c.kizeo_index.is_not(None),
        )
        with self._guard("existing_origin_keys"):
            return set(self.db.execute(stmt).scalars().all())

    def numbers_for_prefix(self, id_contact: int, prefix: str) -> List[str]:
        t = self.table
        stmt = select(t.c.numero_equipement).where(
            t.c.id_contact == int(id_contact), t.c.numero_equipement.like(f"{prefix}%")
        )
        with self._guard("numbers_for_prefix"):
            return list(self.db.execute(stmt).scalars().all())

    def archive(self, ids: Iterable[int]) -> int:
        ids = [int(i) for i in ids]
        if not ids:
            return 0
        t = self.table
        stmt = (
            update(t)
            .where(t.c.id.in_(ids), t.c.is_archive.is_(False))
            .values(is_archive=True, date_modification=datetime.utcnow())
        )
        with self._guard("archive"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount or 0

    def find_duplicate_groups(self, id_contact: int) -> List[Dict[str, object]]:
        """Group rows sharing a dedup key; the most recent row of each group is kept."""
        t = self.table
        stmt = select(t).where(*self._active(id_contact)).order_by(t.c.id.asc())
        groups: Dict[Tuple, List[dict]] = {}
        for row in self._fetch(stmt, "find_duplicate_groups"):
            if row["is_hors_contrat"] and row["kizeo_form_id"] is not None:
                key = ("origin", row["kizeo_form_id"], row["kizeo_data_id"], row["kizeo_index"])
            else:
                key = ("domain", row["numero_equipement"], row["visite"], row["annee"])
            groups.setdefault(key, []).append(row)

        report = []
        for key, rows in groups.items():
            if len(rows) < 2:
                continue
            ordered = sorted(rows, key=lambda r: (r["date_enregistrement"] or datetime.min, r["id"]))
            report.append(
                {
                    "key": "|".join(str(part) for part in key[1:]),
                    "kind": key[0],
                    "keep_id": ordered[-1]["id"],
                    "duplicate_ids": [r["id"] for r in ordered[:-1]],
                }
            )
        return report
