"""Agency code routing.

Each agency owns a physically separate set of tables sharing one logical
schema. Agency codes end up as SQL identifiers, so every code goes through
``resolve`` before a statement is composed from it.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional

from fieldsync.core.errors import InvalidTenant

AGENCY_CODES = (
    "S10",
    "S40",
    "S50",
    "S60",
    "S70",
    "S80",
    "S100",
    "S120",
    "S130",
    "S140",
    "S150",
    "S160",
    "S170",
)

CONTRACT_PREFIX = "contrat"
CONTACT_PREFIX = "contact"
AMENDMENT_PREFIX = "contrat_avenant"
EQUIPMENT_PREFIX = "equipement"


@dataclass(frozen=True)
class TenantTables:
    agency: str
    contract_table: str
    contact_table: str
    amendment_table: str
    equipment_table: str


def normalize_code(code) -> str:
    if not isinstance(code, str):
        raise InvalidTenant(code)
    normalized = code.strip().upper()
    if normalized not in AGENCY_CODES:
        raise InvalidTenant(code)
    return normalized


def resolve(code, permitted: Optional[Iterable[str]] = None) -> TenantTables:
    agency = normalize_code(code)
    if permitted is not None and agency not in {p.strip().upper() for p in permitted}:
        raise InvalidTenant(code)
    suffix = agency.lower()
    return TenantTables(
        agency=agency,
        contract_table=f"{CONTRACT_PREFIX}_{suffix}",
        contact_table=f"{CONTACT_PREFIX}_{suffix}",
        amendment_table=f"{AMENDMENT_PREFIX}_{suffix}",
        equipment_table=f"{EQUIPMENT_PREFIX}_{suffix}",
    )


def resolve_many(codes: Iterable[str], permitted: Optional[Iterable[str]] = None) -> List[TenantTables]:
    return [resolve(code, permitted) for code in codes]
