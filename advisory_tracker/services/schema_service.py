"""
Schema reconciliation.

Brings a live database up to the model metadata by adding what is missing:
tables that do not exist yet are created, columns the models define but a
table lacks are added with ``ALTER TABLE ... ADD COLUMN`` carrying the
column default. Nothing is ever dropped, renamed or rewritten, and running
it twice is a no-op.

This is an administrative step (``flask reconcile-schema``), run once after
a deployment introduces new team-editable fields. It is not called while
serving requests.

Usage:
    from advisory_tracker.services.schema_service import reconcile_schema

    report = reconcile_schema()
    # {"created_tables": [], "added": ["sheet_responses.site"], "failed": []}
"""

import logging

import sqlalchemy as sa

from advisory_tracker.models import db

logger = logging.getLogger(__name__)


def _default_literal(column, dialect):
    """SQL literal for the column default, or None."""
    if column.server_default is not None:
        arg = getattr(column.server_default, "arg", None)
        if isinstance(arg, str):
            return "'" + arg.replace("'", "''") + "'"
        if arg is not None and hasattr(arg, "text"):
            return arg.text
        return None
    default = column.default
    if default is None or not getattr(default, "is_scalar", False):
        return None
    value = default.arg
    if isinstance(value, bool):
        if dialect.name == "postgresql":
            return "true" if value else "false"
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def add_column_sql(table_name, column, dialect):
    """Build the ADD COLUMN statement for one missing column."""
    preparer = dialect.identifier_preparer
    col_type = column.type.compile(dialect=dialect)
    sql = (
        f"ALTER TABLE {preparer.quote(table_name)} "
        f"ADD COLUMN {preparer.quote(column.name)} {col_type}"
    )
    default = _default_literal(column, dialect)
    if default is not None:
        sql += f" DEFAULT {default}"
        # Existing rows take the default, so NOT NULL is safe to keep.
        if not column.nullable:
            sql += " NOT NULL"
    return sql


def reconcile_schema(engine=None, metadata=None):
    """
    Add missing tables and columns. Idempotent, additive only.

    Each column is added in its own transaction; a failure is logged and
    reported, and the remaining columns are still attempted.

    Returns:
        {"created_tables": [...], "added": ["table.column", ...],
         "failed": [{"column": "table.column", "error": "..."}]}
    """
    engine = engine or db.engine
    metadata = metadata or db.metadata
    inspector = sa.inspect(engine)
    existing_tables = set(inspector.get_table_names())

    missing_tables = [t for t in metadata.sorted_tables if t.name not in existing_tables]
    if missing_tables:
        metadata.create_all(engine, tables=missing_tables, checkfirst=True)
        for table in missing_tables:
            logger.warning("reconcile-schema: created table %s", table.name)

    added = []
    failed = []
    for table in metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        live = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in live:
                continue
            label = f"{table.name}.{column.name}"
            sql = add_column_sql(table.name, column, engine.dialect)
            try:
                with engine.begin() as conn:
                    conn.execute(sa.text(sql))
            except sa.exc.SQLAlchemyError as exc:
                logger.error("reconcile-schema: could not add %s: %s", label, exc)
                failed.append({"column": label, "error": str(exc.orig if hasattr(exc, "orig") else exc)})
                continue
            logger.warning("reconcile-schema: added column %s", label)
            added.append(label)

    if not (missing_tables or added or failed):
        logger.info("reconcile-schema: schema already up to date")
    return {
        "created_tables": [t.name for t in missing_tables],
        "added": added,
        "failed": failed,
    }
