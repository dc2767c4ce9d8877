from typing import List, Optional

from fastapi import HTTPException

from fieldsync.core.errors import InvalidTenant
from fieldsync.tenancy.router import TenantTables, normalize_code, resolve


def parse_agencies(agencies: Optional[str]) -> Optional[List[str]]:
    """``agencies=S10,S40`` query value -> normalized list, ``None`` when absent."""
    if agencies is None:
        return None
    codes = [code.strip() for code in agencies.split(",") if code.strip()]
    try:
        return [normalize_code(code) for code in codes]
    except InvalidTenant as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def resolve_or_400(agency: str, permitted: Optional[List[str]] = None) -> TenantTables:
    try:
        return resolve(agency, permitted)
    except InvalidTenant as exc:
        raise HTTPException(status_code=400, detail=str(exc))
