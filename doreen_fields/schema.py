"""Database DDL functions for doreen-fields.

- Functions returning psycopg2.sql.Composed objects with sql.Identifier for schema
- SERIAL primary keys named ``i``, DOUBLE PRECISION timestamps
- Field data tables share the (ticket_id, field_id, value) layout; ticket_id
  is nullable because retired rows are detached, not deleted
"""

from psycopg2 import sql


def get_workflow_tables_sql(schema: str) -> sql.Composed:
    """Status values, workflows, their status sets and transition graphs."""
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE TABLE IF NOT EXISTS {sch}.status_values (
            i SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            html_color TEXT
        );
        CREATE TABLE IF NOT EXISTS {sch}.workflows (
            i SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            initial INTEGER NOT NULL REFERENCES {sch}.status_values(i)
        );
        CREATE TABLE IF NOT EXISTS {sch}.workflow_statuses (
            i SERIAL PRIMARY KEY,
            workflow_id INTEGER NOT NULL REFERENCES {sch}.workflows(i) ON DELETE CASCADE,
            status_id INTEGER NOT NULL REFERENCES {sch}.status_values(i),
            UNIQUE(workflow_id, status_id)
        );
        CREATE TABLE IF NOT EXISTS {sch}.state_transitions (
            i SERIAL PRIMARY KEY,
            workflow_id INTEGER NOT NULL REFERENCES {sch}.workflows(i) ON DELETE CASCADE,
            from_status INTEGER NOT NULL REFERENCES {sch}.status_values(i),
            to_status INTEGER NOT NULL REFERENCES {sch}.status_values(i),
            UNIQUE(workflow_id, from_status, to_status)
        );
    """).format(sch=sch)


def get_tickets_table_sql(schema: str) -> sql.Composed:
    """Ticket types and the ticket header table."""
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE TABLE IF NOT EXISTS {sch}.ticket_types (
            i SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            workflow_id INTEGER REFERENCES {sch}.workflows(i),
            field_ids TEXT,
            automatic_status BOOLEAN NOT NULL DEFAULT FALSE,
            automatic_title BOOLEAN NOT NULL DEFAULT FALSE
        );
        CREATE TABLE IF NOT EXISTS {sch}.tickets (
            i SERIAL PRIMARY KEY,
            type_id INTEGER NOT NULL REFERENCES {sch}.ticket_types(i),
            project_id INTEGER,
            owner_uid INTEGER,
            created_dt DOUBLE PRECISION,
            lastmod_uid INTEGER,
            lastmod_dt DOUBLE PRECISION
        );
    """).format(sch=sch)


def get_lookup_tables_sql(schema: str) -> sql.Composed:
    """Keyword pool and category tree."""
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE TABLE IF NOT EXISTS {sch}.keyword_defs (
            i SERIAL PRIMARY KEY,
            keyword TEXT NOT NULL UNIQUE
        );
        CREATE TABLE IF NOT EXISTS {sch}.categories (
            i SERIAL PRIMARY KEY,
            field_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            parent INTEGER REFERENCES {sch}.categories(i),
            extra TEXT
        );
    """).format(sch=sch)


def _field_data_table_sql(
    schema: str, table: str, value_type: str, extra: sql.Composable = sql.SQL("")
) -> sql.Composed:
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE TABLE IF NOT EXISTS {tbl} (
            i SERIAL PRIMARY KEY,
            ticket_id INTEGER REFERENCES {sch}.tickets(i) ON DELETE CASCADE,
            field_id INTEGER NOT NULL,
            value {value_type}{extra}
        );
    """).format(
        tbl=sql.Identifier(schema, table),
        sch=sch,
        value_type=sql.SQL(value_type),
        extra=extra,
    )


def get_field_data_tables_sql(schema: str) -> sql.Composed:
    """One table per storage type, plus sub-amounts."""
    sch = sql.Identifier(schema)
    return (
        _field_data_table_sql(schema, "ticket_texts", "TEXT")
        + _field_data_table_sql(schema, "ticket_ints", "INTEGER")
        + _field_data_table_sql(schema, "ticket_floats", "DOUBLE PRECISION")
        + _field_data_table_sql(schema, "ticket_amounts", "DOUBLE PRECISION")
        + _field_data_table_sql(
            schema,
            "ticket_keywords",
            "INTEGER NOT NULL",
            sql.SQL(" REFERENCES {}.keyword_defs(i)").format(sch),
        )
        + _field_data_table_sql(
            schema, "ticket_parents", "INTEGER NOT NULL", sql.SQL(",\n            count INTEGER")
        )
        + sql.SQL("""
        CREATE TABLE IF NOT EXISTS {sch}.ticket_subamounts (
            i SERIAL PRIMARY KEY,
            amount_id INTEGER NOT NULL REFERENCES {sch}.ticket_amounts(i) ON DELETE CASCADE,
            cat INTEGER NOT NULL REFERENCES {sch}.categories(i),
            value DOUBLE PRECISION NOT NULL
        );
    """).format(sch=sch)
    )


def get_changelog_table_sql(schema: str) -> sql.Composed:
    """Append-only changelog. value_1/value_2 reference field data rows."""
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE TABLE IF NOT EXISTS {sch}.changelog (
            i SERIAL PRIMARY KEY,
            field_id INTEGER NOT NULL,
            what INTEGER,
            chg_uid INTEGER,
            chg_dt DOUBLE PRECISION NOT NULL,
            value_1 INTEGER,
            value_2 INTEGER,
            value_str TEXT
        );
    """).format(sch=sch)


def get_indexes_sql(schema: str) -> sql.Composed:
    """Lookup indexes for field data and changelog."""
    sch = sql.Identifier(schema)
    statements = []
    for table in (
        "ticket_texts",
        "ticket_ints",
        "ticket_floats",
        "ticket_amounts",
        "ticket_keywords",
        "ticket_parents",
    ):
        statements.append(
            sql.SQL("CREATE INDEX IF NOT EXISTS {idx} ON {sch}.{tbl}(ticket_id, field_id);").format(
                idx=sql.Identifier(f"idx_{schema}_{table}_ticket_field"),
                sch=sch,
                tbl=sql.Identifier(table),
            )
        )
    statements.append(
        sql.SQL("CREATE INDEX IF NOT EXISTS {idx} ON {sch}.changelog(what, chg_dt);").format(
            idx=sql.Identifier(f"idx_{schema}_changelog_what"), sch=sch
        )
    )
    statements.append(
        sql.SQL("CREATE INDEX IF NOT EXISTS {idx} ON {sch}.ticket_parents(field_id, value);").format(
            idx=sql.Identifier(f"idx_{schema}_ticket_parents_value"), sch=sch
        )
    )
    return sql.SQL("\n").join(statements)


def get_all_field_tables_sql(schema: str) -> sql.Composed:
    """All engine tables for the given schema, in dependency order."""
    return (
        get_workflow_tables_sql(schema)
        + get_tickets_table_sql(schema)
        + get_lookup_tables_sql(schema)
        + get_field_data_tables_sql(schema)
        + get_changelog_table_sql(schema)
        + get_indexes_sql(schema)
    )
