from io import BytesIO

import pytest
from openpyxl import Workbook

from fieldsync.bulk.config import EQUIPMENT_COLUMNS, normalize_header, rows_to_dicts
from fieldsync.bulk.importer import import_equipment, import_equipment_file
from fieldsync.bulk.parser import iter_rows
from fieldsync.equipment.store import EquipmentStore


def _make_xlsx(headers, rows, instructions=True):
    wb = Workbook()
    ws = wb.active
    ws.append(headers)
    if instructions:
        ws.append([col.instruction for col in EQUIPMENT_COLUMNS][: len(headers)])
    for row in rows:
        ws.append(row)
    data = BytesIO()
    wb.save(data)
    return data.getvalue()


def _write(tmp_path, name, content):
    path = tmp_path / name
    if isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_bytes(content)
    return str(path)


def _rows(*numbers, visite="CEA"):
    return [{"numero_equipement": n, "libelle_equipement": "Porte sectionnelle", "visite": visite} for n in numbers]


def test_normalize_header_folds_accents_and_spaces():
    assert normalize_header("Numéro équipement") == "numero_equipement"
    assert normalize_header(" Repère-site client ") == "repere_site_client"
    assert normalize_header("") == ""


def test_xlsx_instruction_row_is_skipped(tmp_path):
    content = _make_xlsx(
        ["Numero equipement", "Libelle", "Visite", "Annee"],
        [["SEC01", "Porte sectionnelle", "CE1", 2026], ["", "", "", ""], ["RAP01", "Porte rapide", "", ""]],
    )
    header, raw = iter_rows(_write(tmp_path, "equipements.xlsx", content))
    records = rows_to_dicts(header, raw)
    assert records == [
        {"numero_equipement": "SEC01", "libelle_equipement": "Porte sectionnelle", "visite": "CE1", "annee": "2026"},
        {"numero_equipement": "RAP01", "libelle_equipement": "Porte rapide"},
    ]


def test_csv_with_semicolons_and_aliases(tmp_path):
    content = "Numero;Designation;Visite;Marque;Colonne inconnue\nSEC01;Porte sectionnelle;ce2;Hormann;x\n"
    header, raw = iter_rows(_write(tmp_path, "equipements.csv", content))
    assert rows_to_dicts(header, raw) == [
        {"numero_equipement": "SEC01", "libelle_equipement": "Porte sectionnelle", "visite": "ce2", "marque": "Hormann"}
    ]


def test_unsupported_extension(tmp_path):
    with pytest.raises(ValueError):
        iter_rows(_write(tmp_path, "equipements.txt", "x"))


def test_import_inserts_clean_rows_and_reports_duplicates(db_session):
    first = import_equipment(db_session, "S40", 1234, "2026", _rows("SEC01"))
    assert first.inserted_count == 1
    assert first.errors == []

    second = import_equipment(db_session, "s40", 1234, "2026", _rows("SEC01", "SEC02"))
    assert second.inserted_count == 1
    assert len(second.duplicates) == 1
    assert "SEC01" in second.duplicates[0]

    store = EquipmentStore(db_session, "S40")
    assert store.count_existing(1234, "2026") == 2
    assert store.available_visits(1234, "2026") == ["CEA"]


def test_force_inserts_duplicates_too(db_session):
    import_equipment(db_session, "S40", 1234, "2026", _rows("SEC01"))
    result = import_equipment(db_session, "S40", 1234, "2026", _rows("SEC01"), force=True)
    assert result.inserted_count == 1
    assert len(result.duplicates) == 1
    groups = EquipmentStore(db_session, "S40").find_duplicate_groups(1234)
    assert len(groups) == 1
    assert groups[0]["kind"] == "domain"
    assert len(groups[0]["duplicate_ids"]) == 1


def test_only_duplicates_inserts_nothing(db_session):
    import_equipment(db_session, "S40", 1234, "2026", _rows("SEC01"))
    result = import_equipment(db_session, "S40", 1234, "2026", _rows("SEC01"))
    assert result.inserted_count == 0
    assert result.errors == []
    assert len(result.duplicates) == 1


def test_invalid_row_aborts_whole_import(db_session):
    rows = _rows("SEC01") + [{"numero_equipement": "", "libelle_equipement": "Porte"}]
    result = import_equipment(db_session, "S40", 1234, "2026", rows)
    assert result.inserted_count == 0
    assert result.errors == ["ligne 2: champ(s) obligatoire(s) manquant(s) : numero_equipement"]
    assert EquipmentStore(db_session, "S40").count_existing(1234, "2026") == 0


def test_empty_import(db_session):
    assert import_equipment(db_session, "S40", 1234, "2026", []).errors == ["no rows to insert"]


def test_import_file_end_to_end(db_session, tmp_path):
    content = _make_xlsx(
        ["Numero equipement", "Libelle", "Visite", "Hors contrat"],
        [["SEC01", "Porte sectionnelle", "CE1", "Non"], ["NIV01", "Niveleur", "CE1", "Oui"]],
    )
    result = import_equipment_file(db_session, "S100", 55, "2025", _write(tmp_path, "import.xlsx", content))
    assert result.to_dict() == {"inserted_count": 2, "duplicates": [], "errors": []}

    store = EquipmentStore(db_session, "S100")
    assert [r["numero_equipement"] for r in store.find_off_contract_equipments(55, "CE1", "2025")] == ["NIV01"]
    assert store.available_years(55) == ["2025"]


def test_rows_with_their_own_year_are_checked_in_that_year(db_session):
    rows = [dict(_rows("SEC01")[0], annee="2025")]
    first = import_equipment(db_session, "S40", 42, "2026", rows)
    assert first.inserted_count == 1

    second = import_equipment(db_session, "S40", 42, "2026", rows)
    assert second.inserted_count == 0
    assert len(second.duplicates) == 1
    assert "2025" in second.duplicates[0]

    store = EquipmentStore(db_session, "S40")
    assert store.count_existing(42, "2025") == 1
    assert store.count_existing(42, "2026") == 0


def test_rows_for_another_contact_are_checked_against_that_contact(db_session):
    import_equipment(db_session, "S40", 7, "2026", _rows("SEC01"))
    rows = [dict(_rows("SEC01")[0], id_contact=7), _rows("SEC01")[0]]
    result = import_equipment(db_session, "S40", 42, "2026", rows)
    assert result.inserted_count == 1
    assert len(result.duplicates) == 1
    assert "contact 7" in result.duplicates[0]
    assert EquipmentStore(db_session, "S40").count_existing(7, "2026") == 1
    assert EquipmentStore(db_session, "S40").count_existing(42, "2026") == 1
