import csv
import os
from typing import Iterable, List, Tuple

import openpyxl
import xlrd

SUPPORTED_EXTENSIONS = {".xlsx", ".csv", ".xls"}

_INSTRUCTION_KEYWORDS = [
    "obligatoire",
    "facultatif",
    "optionnel",
    "exemple",
    "oui/non",
    "oui non",
    "par defaut",
    "format",
]


def iter_rows(file_path: str) -> Tuple[List[str], Iterable[List[str]]]:
    ext = os.path.splitext(file_path)[1].lower()
    if ext == ".xlsx":
        return _iter_xlsx(file_path)
    if ext == ".csv":
        return _iter_csv(file_path)
    if ext == ".xls":
        return _iter_xls(file_path)
    raise ValueError("Format non supporte. Utilisez XLSX, XLS ou CSV.")


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _is_instruction_row(row: List[str]) -> bool:
    """Templates ship a second line describing each column; it is not data."""
    if not row:
        return False
    hits = 0
    for cell in row:
        raw = (cell or "").strip().lower()
        if not raw:
            hits += 1
            continue
        if any(key in raw for key in _INSTRUCTION_KEYWORDS):
            hits += 1
    return hits >= max(1, int(len(row) * 0.6))


def _iter_xlsx(file_path: str) -> Tuple[List[str], Iterable[List[str]]]:
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    ws = wb.active
    rows = ws.iter_rows(values_only=True)
    header = [_cell(c) for c in next(rows, ())]

    def _gen():
        first = next(rows, None)
        if first is not None:
            first_row = [_cell(c) for c in first]
            if not _is_instruction_row(first_row):
                yield first_row
        for row in rows:
            yield [_cell(c) for c in row]
        wb.close()

    return header, _gen()


def _iter_csv(file_path: str) -> Tuple[List[str], Iterable[List[str]]]:
    with open(file_path, newline="", encoding="utf-8-sig") as handle:
        sample = handle.read(4096)
        handle.seek(0)
        delimiter = ";" if sample.count(";") > sample.count(",") else ","
        header = next(csv.reader(handle, delimiter=delimiter), [])

    def _gen():
        with open(file_path, newline="", encoding="utf-8-sig") as handle:
            reader = csv.reader(handle, delimiter=delimiter)
            next(reader, None)
            first = next(reader, None)
            if first is not None:
                first_row = [cell.strip() for cell in first]
                if not _is_instruction_row(first_row):
                    yield first_row
            for row in reader:
                yield [cell.strip() for cell in row]

    return [h.strip() for h in header], _gen()


def _iter_xls(file_path: str) -> Tuple[List[str], Iterable[List[str]]]:
    book = xlrd.open_workbook(file_path)
    sheet = book.sheet_by_index(0)
    if sheet.nrows == 0:
        return [], iter(())
    header = [_cell(sheet.cell_value(0, col)) for col in range(sheet.ncols)]

    def _gen():
        start = 1
        if sheet.nrows > 1:
            first_row = [_cell(sheet.cell_value(1, col)) for col in range(sheet.ncols)]
            if not _is_instruction_row(first_row):
                yield first_row
            start = 2
        for row_idx in range(start, sheet.nrows):
            yield [_cell(sheet.cell_value(row_idx, col)) for col in range(sheet.ncols)]

    return header, _gen()
