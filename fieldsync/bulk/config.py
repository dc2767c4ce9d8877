import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List


@dataclass
class TemplateColumn:
    label: str
    key: str
    instruction: str
    required: bool = False


EQUIPMENT_COLUMNS: List[TemplateColumn] = [
    TemplateColumn("Numero equipement", "numero_equipement", "Obligatoire. Ex: SEC01", True),
    TemplateColumn("Libelle", "libelle_equipement", "Obligatoire. Ex: Porte sectionnelle", True),
    TemplateColumn("Visite", "visite", "Facultatif. CEA par defaut (CEA, CE1..CE4)"),
    TemplateColumn("Annee", "annee", "Facultatif. Annee en cours par defaut"),
    TemplateColumn("Marque", "marque", "Facultatif"),
    TemplateColumn("Mode de fonctionnement", "mode_fonctionnement", "Facultatif"),
    TemplateColumn("Repere site client", "repere_site_client", "Facultatif"),
    TemplateColumn("Hors contrat", "is_hors_contrat", "Facultatif. Oui/Non"),
    TemplateColumn("Archive", "is_archive", "Facultatif. Oui/Non"),
    TemplateColumn("Id contact", "id_contact", "Facultatif. Contact de l'import par defaut"),
]

_ALIASES = {
    "numero": "numero_equipement",
    "n_equipement": "numero_equipement",
    "libelle_equipement": "libelle_equipement",
    "designation": "libelle_equipement",
    "type": "libelle_equipement",
    "mode": "mode_fonctionnement",
    "repere": "repere_site_client",
    "hc": "is_hors_contrat",
}


def normalize_header(value: str) -> str:
    if not value:
        return ""
    raw = unicodedata.normalize("NFKD", value)
    raw = "".join(ch for ch in raw if not unicodedata.combining(ch))
    raw = raw.lower().strip()
    raw = re.sub(r"[\s\-]+", "_", raw)
    raw = re.sub(r"[^a-z0-9_]", "", raw)
    return raw


def make_header_map(columns: List[TemplateColumn]) -> Dict[str, str]:
    mapping = dict(_ALIASES)
    for col in columns:
        mapping[normalize_header(col.label)] = col.key
        mapping[normalize_header(col.key)] = col.key
    return mapping


def rows_to_dicts(header: List[str], rows: Iterable[List[str]]) -> List[Dict[str, str]]:
    """Map raw cells to canonical keys; unknown columns and blank lines are dropped."""
    header_map = make_header_map(EQUIPMENT_COLUMNS)
    keys = [header_map.get(normalize_header(h)) for h in header]
    records = []
    for row in rows:
        if not any((cell or "").strip() for cell in row):
            continue
        record = {}
        for key, cell in zip(keys, row):
            if key and cell not in (None, ""):
                record[key] = cell
        records.append(record)
    return records
