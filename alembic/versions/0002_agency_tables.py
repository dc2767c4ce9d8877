"""per-agency equipment, contact, contract and amendment tables

Revision ID: 0002_agency_tables
Revises: 0001_kizeo_jobs
Create Date: 2026-10-12 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "0002_agency_tables"
down_revision = "0001_kizeo_jobs"
branch_labels = None
depends_on = None

AGENCY_CODES = (
    "S10", "S40", "S50", "S60", "S70", "S80", "S100",
    "S120", "S130", "S140", "S150", "S160", "S170",
)


def upgrade() -> None:
    for code in AGENCY_CODES:
        suffix = code.lower()
        equipment = f"equipement_{suffix}"
        op.create_table(
            equipment,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("id_contact", sa.Integer(), nullable=False),
            sa.Column("numero_equipement", sa.String(length=50), nullable=False),
            sa.Column("numero_equipement_client", sa.String(length=100), nullable=True),
            sa.Column("libelle_equipement", sa.String(length=255), nullable=False),
            sa.Column("visite", sa.String(length=5), nullable=False),
            sa.Column("annee", sa.String(length=4), nullable=True),
            sa.Column("date_derniere_visite", sa.Date(), nullable=True),
            sa.Column("repere_site_client", sa.String(length=255), nullable=True),
            sa.Column("mise_en_service", sa.String(length=10), nullable=True),
            sa.Column("numero_serie", sa.String(length=100), nullable=True),
            sa.Column("marque", sa.String(length=100), nullable=True),
            sa.Column("mode_fonctionnement", sa.String(length=50), nullable=True),
            sa.Column("hauteur", sa.String(length=20), nullable=True),
            sa.Column("largeur", sa.String(length=20), nullable=True),
            sa.Column("longueur", sa.String(length=20), nullable=True),
            sa.Column("etat_equipement", sa.Text(), nullable=True),
            sa.Column("statut_equipement", sa.String(length=5), nullable=True),
            sa.Column("anomalies", sa.Text(), nullable=True),
            sa.Column("observations", sa.Text(), nullable=True),
            sa.Column("is_hors_contrat", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_archive", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("kizeo_form_id", sa.Integer(), nullable=True),
            sa.Column("kizeo_data_id", sa.Integer(), nullable=True),
            sa.Column("kizeo_index", sa.Integer(), nullable=True),
            sa.Column("date_enregistrement", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("date_modification", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("kizeo_form_id", "kizeo_data_id", "kizeo_index", name=f"uq_{equipment}_origin"),
        )
        op.create_index(f"ix_{equipment}_id_contact", equipment, ["id_contact"])
        op.create_index(f"ix_{equipment}_contact_annee", equipment, ["id_contact", "annee", "visite"])

        contact = f"contact_{suffix}"
        op.create_table(
            contact,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("id_contact", sa.Integer(), nullable=False),
            sa.Column("id_societe", sa.String(length=50), nullable=True),
            sa.Column("raison_sociale", sa.String(length=255), nullable=True),
            sa.Column("adresse", sa.String(length=255), nullable=True),
            sa.Column("code_postal", sa.String(length=10), nullable=True),
            sa.Column("ville", sa.String(length=100), nullable=True),
            sa.UniqueConstraint("id_contact", name=f"uq_{contact}_contact"),
        )

        contract = f"contrat_{suffix}"
        op.create_table(
            contract,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("id_contact", sa.Integer(), nullable=False),
            sa.Column("numero_contrat", sa.String(length=50), nullable=True),
            sa.Column("date_signature", sa.Date(), nullable=True),
            sa.Column("nombre_visites", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("nombre_equipements", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("statut", sa.String(length=20), nullable=False, server_default="actif"),
            sa.Column("date_creation", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
        op.create_index(f"ix_{contract}_id_contact", contract, ["id_contact"])

        amendment = f"contrat_avenant_{suffix}"
        op.create_table(
            amendment,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("contrat_id", sa.Integer(), nullable=False),
            sa.Column("numero_avenant", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("nombre_equipements_ajoutes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("date_avenant", sa.Date(), nullable=True),
            sa.Column("date_creation", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
        op.create_index(f"ix_{amendment}_contrat_id", amendment, ["contrat_id"])


def downgrade() -> None:
    for code in AGENCY_CODES:
        suffix = code.lower()
        op.drop_table(f"contrat_avenant_{suffix}")
        op.drop_table(f"contrat_{suffix}")
        op.drop_table(f"contact_{suffix}")
        op.drop_table(f"equipement_{suffix}")
