import logging

from sqlalchemy import MetaData, inspect, text

from fieldsync.db import models
from fieldsync.db.tables import register_all

logger = logging.getLogger("fieldsync.db")


def _ensure_missing_columns(engine, metadata: MetaData) -> None:
    if engine.dialect.name != "sqlite":
        return
    inspector = inspect(engine)
    preparer = engine.dialect.identifier_preparer
    existing_tables = set(inspector.get_table_names())
    for table_name, table in metadata.tables.items():
        if table_name not in existing_tables:
            continue
        existing_columns = {col["name"] for col in inspector.get_columns(table_name)}
        for column in table.columns:
            if column.name in existing_columns:
                continue
            col_type = column.type.compile(dialect=engine.dialect)
            logger.info("adding missing column table=%s column=%s", table_name, column.name)
            with engine.begin() as connection:
                connection.execute(
                    text(
                        f"ALTER TABLE {preparer.quote(table_name)} "
                        f"ADD COLUMN {preparer.quote(column.name)} {col_type}"
                    )
                )


def ensure_schema(engine) -> None:
    tenant_metadata = register_all()
    models.Base.metadata.create_all(bind=engine)
    tenant_metadata.create_all(bind=engine)
    _ensure_missing_columns(engine, models.Base.metadata)
    _ensure_missing_columns(engine, tenant_metadata)
