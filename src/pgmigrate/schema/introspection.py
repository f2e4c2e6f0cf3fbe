"""Render the visible, non-system database schema as ordered DDL text.

Each ``get_*`` coroutine queries the catalog and returns one section of the
dump as a string (empty when there is nothing to render).  :func:`get_schema`
joins the non-empty sections with two blank lines.  Output is fully ordered
so that identical schemas always produce byte-identical dumps.
"""

from __future__ import annotations

SECTION_SEPARATOR = "\n\n\n"

_SYSTEM_SCHEMAS = "('pg_catalog', 'information_schema')"

_MAX_VALUES_BY_TYPE = {
    "bigint": "9223372036854775807",
    "integer": "2147483647",
    "smallint": "32767",
}


def _join(parts: list[str]) -> str:
    return SECTION_SEPARATOR.join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Schemas and extensions
# ---------------------------------------------------------------------------


async def get_schema_comments(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT n.oid::regnamespace::text AS name,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_namespace n
        JOIN pg_catalog.pg_description d
          ON d.objoid = n.oid
         AND d.classoid = 'pg_catalog.pg_namespace'::regclass
        WHERE n.nspname NOT IN {_SYSTEM_SCHEMAS}
          AND n.nspname !~ '^pg_'
        ORDER BY n.nspname
    """)
    return _join([f"COMMENT ON SCHEMA {r['name']} IS {r['comment']};" for r in rows])


async def get_extensions(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT quote_ident(e.extname) AS name,
               e.extnamespace::regnamespace::text AS schema_name,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_extension e
        JOIN pg_catalog.pg_namespace n
          ON n.oid = e.extnamespace
         AND n.nspname NOT IN {_SYSTEM_SCHEMAS}
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = e.oid
         AND d.classoid = 'pg_catalog.pg_extension'::regclass
        ORDER BY e.extname, n.nspname
    """)
    statements: list[str] = []
    for r in rows:
        statements.append(
            f"CREATE EXTENSION IF NOT EXISTS {r['name']} WITH SCHEMA {r['schema_name']};"
        )
        if r["comment"]:
            statements.append(f"COMMENT ON EXTENSION {r['name']} IS {r['comment']};")
    return _join(statements)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


async def get_domains_and_enums(db) -> str:
    domain_rows = await db.execute_fetchall(f"""
        SELECT t.typnamespace::regnamespace::text AS schema_name,
               t.oid::regtype::text AS name,
               quote_ident(c.conname) AS constraint_name,
               pg_catalog.pg_get_constraintdef(c.oid) AS constraint_definition,
               pg_catalog.format_type(t.typbasetype, t.typtypmod) AS underlying_type,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_type t
        JOIN pg_catalog.pg_namespace n
          ON n.oid = t.typnamespace
         AND n.nspname NOT IN {_SYSTEM_SCHEMAS}
        LEFT JOIN pg_catalog.pg_constraint c ON c.contypid = t.oid
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = t.oid
         AND d.classoid = 'pg_catalog.pg_type'::regclass
        WHERE t.typtype = 'd'
        ORDER BY n.nspname, t.typname, c.conname
    """)
    enum_rows = await db.execute_fetchall(f"""
        SELECT t.typnamespace::regnamespace::text AS schema_name,
               t.oid::regtype::text AS name,
               quote_literal(e.enumlabel) AS value,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_enum e
        JOIN pg_catalog.pg_type t ON t.oid = e.enumtypid AND t.typtype = 'e'
        JOIN pg_catalog.pg_namespace n
          ON n.oid = t.typnamespace
         AND n.nspname NOT IN {_SYSTEM_SCHEMAS}
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = t.oid
         AND d.classoid = 'pg_catalog.pg_type'::regclass
        ORDER BY n.nspname, t.typname, e.enumsortorder
    """)

    types: dict[str, dict] = {}
    for r in domain_rows:
        key = _qualify(r["schema_name"], r["name"])
        entry = types.setdefault(key, {
            "kind": "domain",
            "comment": r["comment"],
            "underlying_type": r["underlying_type"],
            "constraints": [],
        })
        if r["constraint_name"]:
            entry["constraints"].append(
                f"CONSTRAINT {r['constraint_name']} {r['constraint_definition'] or ''}".rstrip()
            )
    for r in enum_rows:
        key = _qualify(r["schema_name"], r["name"])
        entry = types.setdefault(key, {"kind": "enum", "comment": r["comment"], "values": []})
        if entry["kind"] != "enum":
            raise ValueError(f"Expected {key} to be an enum, but it is a domain")
        entry["values"].append(r["value"])

    statements: list[str] = []
    for name in sorted(types):
        entry = types[name]
        if entry["kind"] == "enum":
            lines = [f"CREATE TYPE {name} AS ENUM ("]
            lines.append(",\n".join(f"  {v}" for v in entry["values"]))
            lines.append(");")
            kind = "TYPE"
        else:
            create = f"CREATE DOMAIN {name} AS {entry['underlying_type']}"
            if entry["constraints"]:
                lines = [create, ",\n".join(f"  {c}" for c in entry["constraints"]) + ";"]
            else:
                lines = [f"{create};"]
            kind = "DOMAIN"
        if entry["comment"]:
            lines += ["", "", f"COMMENT ON {kind} {name} IS {entry['comment']};"]
        statements.append("\n".join(lines))
    return _join(statements)


def _qualify(schema_name: str, name: str) -> str:
    # regtype/regclass output is already schema-qualified outside search_path
    if "." in name:
        return name
    return f"{schema_name}.{name}"


# ---------------------------------------------------------------------------
# Functions and sequences
# ---------------------------------------------------------------------------


async def get_functions(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT p.pronamespace::regnamespace::text AS schema_name,
               quote_ident(p.proname) AS name,
               pg_catalog.pg_get_function_identity_arguments(p.oid) AS args,
               pg_catalog.pg_get_functiondef(p.oid) AS definition,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_proc p
        JOIN pg_catalog.pg_namespace n
          ON n.oid = p.pronamespace
         AND n.nspname NOT IN {_SYSTEM_SCHEMAS}
        JOIN pg_catalog.pg_language l
          ON l.oid = p.prolang
         AND l.lanname != 'internal'
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = p.oid
         AND d.classoid = 'pg_catalog.pg_proc'::regclass
        LEFT JOIN pg_catalog.pg_depend dep
          ON dep.objid = p.oid
         AND dep.deptype = 'e'
        WHERE pg_catalog.pg_function_is_visible(p.oid)
          AND p.probin IS NULL
          AND p.prokind != 'a'
          AND dep.objid IS NULL
        ORDER BY n.nspname, p.proname, args
    """)
    statements: list[str] = []
    for r in rows:
        text = f"{r['definition'].rstrip()};"
        if r["comment"]:
            text += (
                f"\n\n\nCOMMENT ON FUNCTION {r['schema_name']}.{r['name']}({r['args']}) "
                f"IS {r['comment']};"
            )
        statements.append(text)

    aggregate_rows = await db.execute_fetchall(f"""
        SELECT p.pronamespace::regnamespace::text AS schema_name,
               quote_ident(p.proname) AS name,
               pg_catalog.pg_get_function_identity_arguments(p.oid) AS args,
               format('%I.%I', tn.nspname, tf.proname) AS transition_function,
               pg_catalog.format_type(a.aggtranstype, NULL) AS state_type,
               CASE WHEN a.aggfinalfn = 0 THEN NULL
                    ELSE format('%I.%I', fn.nspname, ff.proname)
               END AS final_function,
               quote_literal(a.agginitval) AS initial_condition,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_aggregate a
        JOIN pg_catalog.pg_proc p
          ON p.oid = a.aggfnoid
         AND p.prokind = 'a'
        JOIN pg_catalog.pg_namespace n
          ON n.oid = p.pronamespace
         AND n.nspname NOT IN {_SYSTEM_SCHEMAS}
        JOIN pg_catalog.pg_proc tf ON tf.oid = a.aggtransfn
        JOIN pg_catalog.pg_namespace tn ON tn.oid = tf.pronamespace
        LEFT JOIN pg_catalog.pg_proc ff ON ff.oid = a.aggfinalfn
        LEFT JOIN pg_catalog.pg_namespace fn ON fn.oid = ff.pronamespace
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = p.oid
         AND d.classoid = 'pg_catalog.pg_proc'::regclass
        LEFT JOIN pg_catalog.pg_depend dep
          ON dep.objid = p.oid
         AND dep.deptype = 'e'
        WHERE pg_catalog.pg_function_is_visible(p.oid)
          AND dep.objid IS NULL
        ORDER BY n.nspname, p.proname, args
    """)
    statements.extend(_format_aggregate(r) for r in aggregate_rows)
    return _join(statements)


def _format_aggregate(r: dict) -> str:
    signature = f"{r['schema_name']}.{r['name']}({r['args']})"
    options = [
        f"    SFUNC = {r['transition_function']}",
        f"    STYPE = {r['state_type']}",
    ]
    if r["final_function"]:
        options.append(f"    FINALFUNC = {r['final_function']}")
    if r["initial_condition"]:
        options.append(f"    INITCOND = {r['initial_condition']}")
    text = f"CREATE AGGREGATE {signature} (\n" + ",\n".join(options) + "\n);"
    if r["comment"]:
        text += f"\n\n\nCOMMENT ON AGGREGATE {signature} IS {r['comment']};"
    return text


async def get_sequences(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT quote_ident(s.schemaname) AS schema_name,
               quote_ident(s.sequencename) AS name,
               s.data_type::regtype::text AS data_type,
               s.start_value::text AS start_value,
               s.min_value::text AS min_value,
               s.max_value::text AS max_value,
               s.increment_by::text AS increment_by,
               s.cycle,
               s.cache_size::text AS cache_size
        FROM pg_catalog.pg_sequences s
        WHERE s.schemaname NOT IN {_SYSTEM_SCHEMAS}
        ORDER BY s.schemaname, s.sequencename
    """)
    return _join([_format_sequence(r) for r in rows])


def _format_sequence(r: dict) -> str:
    lines = [
        f"CREATE SEQUENCE {r['schema_name']}.{r['name']}",
        f"    START WITH {r['start_value']}",
        f"    INCREMENT BY {r['increment_by']}",
    ]
    if r["min_value"] == r["start_value"]:
        lines.append("    NO MINVALUE")
    else:
        lines.append(f"    MINVALUE {r['min_value']}")
    if r["max_value"] == _MAX_VALUES_BY_TYPE.get(r["data_type"]):
        lines.append("    NO MAXVALUE")
    else:
        lines.append(f"    MAXVALUE {r['max_value']}")
    if r["cycle"]:
        lines.append("    CYCLE")
    lines.append(f"    CACHE {r['cache_size']};")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Tables, constraints and views
# ---------------------------------------------------------------------------


async def get_tables(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT quote_ident(ns.nspname) AS schema_name,
               quote_ident(cl.relname) AS table_name,
               quote_ident(att.attname) AS name,
               att.attnotnull AS is_not_null,
               pg_catalog.format_type(att.atttypid, att.atttypmod) AS type,
               pg_catalog.pg_get_expr(ad.adbin, ad.adrelid) AS default_value,
               pg_catalog.pg_get_partkeydef(part.partrelid) AS partition_key,
               quote_literal(td.description) AS table_comment,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_attribute att
        JOIN pg_catalog.pg_class cl
          ON cl.oid = att.attrelid
         AND cl.relkind IN ('r', 'p')
        JOIN pg_catalog.pg_namespace ns
          ON ns.oid = cl.relnamespace
         AND ns.nspname NOT IN {_SYSTEM_SCHEMAS}
        LEFT JOIN pg_catalog.pg_partitioned_table part
          ON part.partrelid = cl.oid
        LEFT JOIN pg_catalog.pg_attrdef ad
          ON att.atthasdef
         AND ad.adrelid = att.attrelid
         AND ad.adnum = att.attnum
        LEFT JOIN pg_catalog.pg_description td
          ON td.objoid = att.attrelid
         AND td.objsubid = 0
         AND td.classoid = 'pg_catalog.pg_class'::regclass
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = att.attrelid
         AND d.objsubid = att.attnum
         AND d.classoid = 'pg_catalog.pg_class'::regclass
        WHERE pg_catalog.pg_table_is_visible(cl.oid)
          AND att.attnum > 0
          AND NOT att.attisdropped
        ORDER BY ns.nspname, cl.relname, att.attnum
    """)
    return _format_tables(rows)


def _format_tables(rows: list[dict]) -> str:
    tables: dict[str, dict] = {}
    for r in rows:
        table_name = f"{r['schema_name']}.{r['table_name']}"
        table = tables.setdefault(table_name, {
            "columns": [],
            "comment": r["table_comment"],
            "column_comments": [],
            "partition_key": r["partition_key"],
        })
        column = f"{r['name']} {r['type']}"
        if r["default_value"]:
            column += f" DEFAULT {r['default_value']}"
        if r["is_not_null"]:
            column += " NOT NULL"
        table["columns"].append(column)
        if r["comment"]:
            table["column_comments"].append(
                f"COMMENT ON COLUMN {table_name}.{r['name']} IS {r['comment']};"
            )

    statements: list[str] = []
    for table_name, table in tables.items():
        body = ",\n".join(f"    {c}" for c in table["columns"])
        if table["partition_key"]:
            statements.append(
                f"CREATE TABLE {table_name} (\n{body}\n)\nPARTITION BY {table['partition_key']};"
            )
        else:
            statements.append(f"CREATE TABLE {table_name} (\n{body}\n);")
        if table["comment"]:
            statements.append(f"COMMENT ON TABLE {table_name} IS {table['comment']};")
        statements.extend(table["column_comments"])
    return _join(statements)


async def get_constraints(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT quote_ident(ns.nspname) AS schema_name,
               quote_ident(cl.relname) AS table_name,
               quote_ident(con.conname) AS name,
               pg_catalog.pg_get_constraintdef(con.oid) AS definition,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_constraint con
        JOIN pg_catalog.pg_namespace ns
          ON ns.oid = con.connamespace
         AND ns.nspname NOT IN {_SYSTEM_SCHEMAS}
        JOIN pg_catalog.pg_class cl ON cl.oid = con.conrelid
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = con.oid
         AND d.classoid = 'pg_catalog.pg_constraint'::regclass
        WHERE pg_catalog.pg_table_is_visible(con.conrelid)
        ORDER BY ns.nspname, cl.relname, con.conname
    """)
    statements: list[str] = []
    for r in rows:
        table_name = f"{r['schema_name']}.{r['table_name']}"
        statements.append(
            f"ALTER TABLE ONLY {table_name}\n    ADD CONSTRAINT {r['name']} {r['definition']};"
        )
        if r["comment"]:
            statements.append(
                f"COMMENT ON CONSTRAINT {r['name']} ON {table_name} IS {r['comment']};"
            )
    return _join(statements)


async def get_views(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT quote_ident(ns.nspname) AS schema_name,
               quote_ident(cl.relname) AS name,
               pg_catalog.pg_get_viewdef(cl.oid) AS definition,
               cl.relkind = 'm' AS is_materialized,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_class cl
        JOIN pg_catalog.pg_namespace ns
          ON ns.oid = cl.relnamespace
         AND ns.nspname NOT IN {_SYSTEM_SCHEMAS}
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = cl.oid
         AND d.objsubid = 0
         AND d.classoid = 'pg_catalog.pg_class'::regclass
        WHERE cl.relkind IN ('v', 'm')
        ORDER BY ns.nspname, cl.relname
    """)
    column_comment_rows = await db.execute_fetchall(f"""
        SELECT quote_ident(ns.nspname) AS schema_name,
               quote_ident(cl.relname) AS view_name,
               quote_ident(att.attname) AS name,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_attribute att
        JOIN pg_catalog.pg_class cl
          ON cl.oid = att.attrelid
         AND cl.relkind IN ('v', 'm')
        JOIN pg_catalog.pg_namespace ns
          ON ns.oid = cl.relnamespace
         AND ns.nspname NOT IN {_SYSTEM_SCHEMAS}
        JOIN pg_catalog.pg_description d
          ON d.objoid = att.attrelid
         AND d.objsubid = att.attnum
         AND d.classoid = 'pg_catalog.pg_class'::regclass
        WHERE att.attnum > 0
          AND NOT att.attisdropped
        ORDER BY ns.nspname, cl.relname, att.attnum
    """)
    column_comments: dict[str, list[str]] = {}
    for r in column_comment_rows:
        view_name = f"{r['schema_name']}.{r['view_name']}"
        column_comments.setdefault(view_name, []).append(
            f"COMMENT ON COLUMN {view_name}.{r['name']} IS {r['comment']};"
        )

    statements: list[str] = []
    for r in rows:
        view_name = f"{r['schema_name']}.{r['name']}"
        kind = "MATERIALIZED VIEW" if r["is_materialized"] else "VIEW"
        statements.append(f"CREATE {kind} {view_name} AS\n{r['definition'].rstrip()}")
        if r["comment"]:
            statements.append(f"COMMENT ON {kind} {view_name} IS {r['comment']};")
        statements.extend(column_comments.get(view_name, []))
    return _join(statements)


async def get_partitions(db) -> str:
    """Attach every partition to its direct parent, root by root."""
    roots = await db.execute_fetchall(f"""
        SELECT cl.oid AS oid
        FROM pg_catalog.pg_class cl
        JOIN pg_catalog.pg_namespace ns
          ON ns.oid = cl.relnamespace
         AND ns.nspname NOT IN {_SYSTEM_SCHEMAS}
        WHERE cl.relkind = 'p'
          AND NOT cl.relispartition
        ORDER BY ns.nspname, cl.relname
    """)
    statements: list[str] = []
    for root in roots:
        rows = await db.execute_fetchall("""
            SELECT quote_ident(pn.nspname) AS parent_schema,
                   quote_ident(parent.relname) AS parent_name,
                   quote_ident(cn.nspname) AS schema_name,
                   quote_ident(c.relname) AS partition_name,
                   pg_catalog.pg_get_expr(c.relpartbound, c.oid) AS bound
            FROM pg_catalog.pg_partition_tree($1::oid::regclass) tree
            JOIN pg_catalog.pg_class c
              ON c.oid = tree.relid
             AND c.relispartition
            JOIN pg_catalog.pg_namespace cn ON cn.oid = c.relnamespace
            JOIN pg_catalog.pg_class parent ON parent.oid = tree.parentrelid
            JOIN pg_catalog.pg_namespace pn ON pn.oid = parent.relnamespace
            ORDER BY tree.level, cn.nspname, c.relname
        """, root["oid"])
        statements.extend(
            f"ALTER TABLE ONLY {r['parent_schema']}.{r['parent_name']} "
            f"ATTACH PARTITION {r['schema_name']}.{r['partition_name']} {r['bound']};"
            for r in rows
        )
    return _join(statements)


# ---------------------------------------------------------------------------
# Indexes and triggers
# ---------------------------------------------------------------------------


async def get_indexes(db) -> str:
    # Indexes backing a constraint are recreated by the constraint itself.
    rows = await db.execute_fetchall(f"""
        SELECT i.indexdef AS definition
        FROM pg_catalog.pg_indexes i
        JOIN pg_catalog.pg_namespace n ON n.nspname = i.schemaname
        JOIN pg_catalog.pg_class icl
          ON icl.relname = i.indexname
         AND icl.relnamespace = n.oid
        LEFT JOIN pg_catalog.pg_constraint con
          ON con.conindid = icl.oid
         AND con.contype IN ('p', 'u', 'x')
        WHERE i.schemaname NOT IN {_SYSTEM_SCHEMAS}
          AND con.oid IS NULL
        ORDER BY i.schemaname, i.indexname
    """)
    return "\n\n".join(f"{r['definition'].rstrip()};" for r in rows)


_TRIGGER_ENABLE_CLAUSES = {
    "D": "DISABLE TRIGGER",
    "R": "ENABLE REPLICA TRIGGER",
    "A": "ENABLE ALWAYS TRIGGER",
}


async def get_triggers(db) -> str:
    rows = await db.execute_fetchall(f"""
        SELECT quote_ident(t.tgname) AS trigger_name,
               quote_ident(ns.nspname) AS schema_name,
               quote_ident(cl.relname) AS table_name,
               pg_catalog.pg_get_triggerdef(t.oid) AS definition,
               t.tgenabled::text AS enabled_status,
               quote_literal(d.description) AS comment
        FROM pg_catalog.pg_trigger t
        JOIN pg_catalog.pg_class cl ON cl.oid = t.tgrelid
        JOIN pg_catalog.pg_namespace ns
          ON ns.oid = cl.relnamespace
         AND ns.nspname NOT IN {_SYSTEM_SCHEMAS}
        LEFT JOIN pg_catalog.pg_description d
          ON d.objoid = t.oid
         AND d.classoid = 'pg_catalog.pg_trigger'::regclass
        WHERE NOT t.tgisinternal
        ORDER BY t.tgname, ns.nspname, cl.relname
    """)
    statements: list[str] = []
    for r in rows:
        table_name = f"{r['schema_name']}.{r['table_name']}"
        statements.append(f"{r['definition'].rstrip()};")
        clause = _TRIGGER_ENABLE_CLAUSES.get(r["enabled_status"])
        if clause:
            statements.append(f"ALTER TABLE {table_name} {clause} {r['trigger_name']};")
        if r["comment"]:
            statements.append(
                f"COMMENT ON TRIGGER {r['trigger_name']} ON {table_name} IS {r['comment']};"
            )
    return _join(statements)


# ---------------------------------------------------------------------------
# Whole schema
# ---------------------------------------------------------------------------

_SECTIONS = (
    get_schema_comments,
    get_extensions,
    get_domains_and_enums,
    get_functions,
    get_sequences,
    get_tables,
    get_constraints,
    get_views,
    get_partitions,
    get_indexes,
    get_triggers,
)


async def get_schema(db) -> str:
    """Return the whole visible schema as DDL, one section after another."""
    return _join([await section(db) for section in _SECTIONS])
