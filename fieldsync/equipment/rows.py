from datetime import date, datetime
from typing import Dict, List, Optional

DEFAULT_VISITE = "CEA"
VALID_VISITES = ("CEA", "CE1", "CE2", "CE3", "CE4")

IMPORT_COLUMNS = [
    "id_contact",
    "numero_equipement",
    "libelle_equipement",
    "visite",
    "annee",
    "marque",
    "mode_fonctionnement",
    "repere_site_client",
    "is_hors_contrat",
    "is_archive",
]

INSERT_COLUMNS = IMPORT_COLUMNS + [
    "date_derniere_visite",
    "kizeo_form_id",
    "kizeo_data_id",
    "kizeo_index",
    "date_enregistrement",
]

_TRUE_VALUES = {"1", "true", "oui", "yes", "sim", "x", "vrai"}


class RowError(ValueError):
    pass


def parse_bool(value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_VALUES


def normalize_visite(value) -> str:
    raw = str(value or "").strip().upper()
    return raw or DEFAULT_VISITE


def current_year() -> str:
    return str(datetime.utcnow().year)


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_int(value) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


def _optional_date(value) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()


def domain_key(row: Dict[str, object]) -> str:
    return f"{_text(row.get('numero_equipement'))}|{normalize_visite(row.get('visite'))}"


def normalize_row(row: Dict[str, object], now: Optional[datetime] = None) -> Dict[str, object]:
    """Apply import defaults so every bound parameter is explicit."""
    try:
        id_contact = int(str(row.get("id_contact", "")).strip())
    except (TypeError, ValueError):
        raise RowError(f"id_contact invalide: {row.get('id_contact')!r}")
    numero = _text(row.get("numero_equipement"))
    if not numero:
        raise RowError("numero_equipement obligatoire")
    try:
        origin = (
            _optional_int(row.get("kizeo_form_id")),
            _optional_int(row.get("kizeo_data_id")),
            _optional_int(row.get("kizeo_index")),
        )
        last_visit = _optional_date(row.get("date_derniere_visite"))
    except (TypeError, ValueError) as exc:
        raise RowError(f"valeur invalide pour {numero}: {exc}")
    annee = _text(row.get("annee")) or current_year()
    return {
        "id_contact": id_contact,
        "numero_equipement": numero,
        "libelle_equipement": _text(row.get("libelle_equipement")),
        "visite": normalize_visite(row.get("visite")),
        "annee": annee,
        "marque": _text(row.get("marque")),
        "mode_fonctionnement": _text(row.get("mode_fonctionnement")),
        "repere_site_client": _text(row.get("repere_site_client")),
        "is_hors_contrat": parse_bool(row.get("is_hors_contrat")),
        "is_archive": parse_bool(row.get("is_archive")),
        "date_derniere_visite": last_visit,
        "kizeo_form_id": origin[0],
        "kizeo_data_id": origin[1],
        "kizeo_index": origin[2],
        "date_enregistrement": now or datetime.utcnow(),
    }


def describe(row: Dict[str, object]) -> str:
    return f"{_text(row.get('numero_equipement')) or '?'} ({normalize_visite(row.get('visite'))})"


def chunked(rows: List[dict], size: int) -> List[List[dict]]:
    return [rows[i : i + size] for i in range(0, len(rows), size)]
