import logging
import re
import unicodedata
from typing import Dict

from sqlalchemy.orm import Session

from fieldsync.equipment.store import EquipmentStore

logger = logging.getLogger("fieldsync.equipment")

TYPE_PREFIXES: Dict[str, str] = {
    "porte rapide": "RAP",
    "porte sectionnelle": "SEC",
    "porte coupe-feu": "CFE",
    "porte souple": "SOU",
    "porte basculante": "BAS",
    "porte coulissante": "COU",
    "porte pivotante": "PIV",
    "porte pietonne": "PIE",
    "portail": "POR",
    "portail coulissant": "POC",
    "portail battant": "POB",
    "barriere": "BAR",
    "barriere levante": "BAL",
    "niveleur": "NIV",
    "niveleur de quai": "NIV",
    "quai": "QUA",
    "rampe": "RAM",
    "rideau metallique": "RID",
    "rideau": "RID",
    "grille": "GRI",
    "store": "STO",
    "volet": "VOL",
    "sas": "SAS",
}
FALLBACK_PREFIX = "EQP"


def _fold(value: str) -> str:
    raw = unicodedata.normalize("NFKD", value or "")
    raw = "".join(ch for ch in raw if not unicodedata.combining(ch))
    return raw.lower().strip()


def prefix_for_type(libelle: str) -> str:
    folded = _fold(libelle)
    # longest label first so "portail coulissant" wins over "portail"
    for label in sorted(TYPE_PREFIXES, key=len, reverse=True):
        if label in folded:
            return TYPE_PREFIXES[label]
    letters = re.sub(r"[^a-z]", "", folded)
    if len(letters) >= 3:
        return letters[:3].upper()
    return FALLBACK_PREFIX


class OffContractNumberGenerator:
    """Next free number per equipment prefix: SEC03 exists, SEC04 is issued."""

    def __init__(self, db: Session, agency: str) -> None:
        self.store = EquipmentStore(db, agency)
        self._last: Dict[tuple, int] = {}

    def _highest(self, id_contact: int, prefix: str) -> int:
        highest = 0
        for numero in self.store.numbers_for_prefix(id_contact, prefix):
            match = re.fullmatch(rf"{re.escape(prefix)}(\d+)", numero or "")
            if match:
                highest = max(highest, int(match.group(1)))
        return highest

    def _start(self, id_contact: int, prefix: str) -> tuple:
        key = (int(id_contact), prefix)
        if key not in self._last:
            self._last[key] = self._highest(int(id_contact), prefix)
        return key

    def reserve(self, id_contact: int, numeros) -> None:
        """Count numbers about to be inserted in the same batch as already taken."""
        for numero in numeros:
            match = re.fullmatch(r"([A-Z]+)(\d+)", numero or "")
            if not match:
                continue
            key = self._start(id_contact, match.group(1))
            self._last[key] = max(self._last[key], int(match.group(2)))

    def generate(self, id_contact: int, libelle: str) -> str:
        prefix = prefix_for_type(libelle)
        key = self._start(id_contact, prefix)
        self._last[key] += 1
        numero = f"{prefix}{self._last[key]:02d}"
        logger.debug("off-contract number issued agency=%s libelle=%s numero=%s", self.store.agency, libelle, numero)
        return numero
