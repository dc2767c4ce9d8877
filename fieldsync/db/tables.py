"""Per-agency tables.

The thirteen agencies share one logical schema spread over physically
separate tables. Tables are built on demand from the names returned by
``fieldsync.tenancy.router.resolve`` and registered in ``tenant_metadata``.
"""
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

from fieldsync.tenancy.router import AGENCY_CODES, resolve

tenant_metadata = MetaData()


def _equipment_columns(name: str) -> list:
    return [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("id_contact", Integer, nullable=False, index=True),
        Column("numero_equipement", String(50), nullable=False),
        Column("numero_equipement_client", String(100), nullable=True),
        Column("libelle_equipement", String(255), nullable=False),
        Column("visite", String(5), nullable=False),
        Column("annee", String(4), nullable=True),
        Column("date_derniere_visite", Date, nullable=True),
        Column("repere_site_client", String(255), nullable=True),
        Column("mise_en_service", String(10), nullable=True),
        Column("numero_serie", String(100), nullable=True),
        Column("marque", String(100), nullable=True),
        Column("mode_fonctionnement", String(50), nullable=True),
        Column("hauteur", String(20), nullable=True),
        Column("largeur", String(20), nullable=True),
        Column("longueur", String(20), nullable=True),
        Column("etat_equipement", Text, nullable=True),
        Column("statut_equipement", String(5), nullable=True),
        Column("anomalies", Text, nullable=True),
        Column("observations", Text, nullable=True),
        Column("is_hors_contrat", Boolean, nullable=False, default=False),
        Column("is_archive", Boolean, nullable=False, default=False),
        Column("kizeo_form_id", Integer, nullable=True),
        Column("kizeo_data_id", Integer, nullable=True),
        Column("kizeo_index", Integer, nullable=True),
        Column("date_enregistrement", DateTime, nullable=False, default=datetime.utcnow),
        Column("date_modification", DateTime, nullable=True),
        UniqueConstraint("kizeo_form_id", "kizeo_data_id", "kizeo_index", name=f"uq_{name}_origin"),
        Index(f"ix_{name}_contact_annee", "id_contact", "annee", "visite"),
    ]


def _contact_columns(name: str) -> list:
    return [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("id_contact", Integer, nullable=False),
        Column("id_societe", String(50), nullable=True),
        Column("raison_sociale", String(255), nullable=True),
        Column("adresse", String(255), nullable=True),
        Column("code_postal", String(10), nullable=True),
        Column("ville", String(100), nullable=True),
        UniqueConstraint("id_contact", name=f"uq_{name}_contact"),
    ]


def _contract_columns(name: str) -> list:
    return [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("id_contact", Integer, nullable=False, index=True),
        Column("numero_contrat", String(50), nullable=True),
        Column("date_signature", Date, nullable=True),
        Column("nombre_visites", Integer, nullable=False, default=1),
        Column("nombre_equipements", Integer, nullable=False, default=0),
        Column("statut", String(20), nullable=False, default="actif"),
        Column("date_creation", DateTime, nullable=False, default=datetime.utcnow),
    ]


def _amendment_columns(name: str) -> list:
    return [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("contrat_id", Integer, nullable=False, index=True),
        Column("numero_avenant", Integer, nullable=False, default=1),
        Column("nombre_equipements_ajoutes", Integer, nullable=False, default=0),
        Column("date_avenant", Date, nullable=True),
        Column("date_creation", DateTime, nullable=False, default=datetime.utcnow),
    ]


def _get_or_build(name: str, columns_factory) -> Table:
    existing = tenant_metadata.tables.get(name)
    if existing is not None:
        return existing
    return Table(name, tenant_metadata, *columns_factory(name))


def equipment_table(agency: str) -> Table:
    return _get_or_build(resolve(agency).equipment_table, _equipment_columns)


def contact_table(agency: str) -> Table:
    return _get_or_build(resolve(agency).contact_table, _contact_columns)


def contract_table(agency: str) -> Table:
    return _get_or_build(resolve(agency).contract_table, _contract_columns)


def amendment_table(agency: str) -> Table:
    return _get_or_build(resolve(agency).amendment_table, _amendment_columns)


def register_all() -> MetaData:
    for code in AGENCY_CODES:
        equipment_table(code)
        contact_table(code)
        contract_table(code)
        amendment_table(code)
    return tenant_metadata
