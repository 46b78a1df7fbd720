import re
from datetime import datetime, timezone

import pytest

from sqlmirror.errors import CyclicDependencyError, InvalidSchemaConfig
from sqlmirror.schema import chunks
from sqlmirror.schema.assembler import assemble, sort_tables, transaction_body, transaction_control_statements
from sqlmirror.schema.models import Extension, Function, Plugin, Reference, SchemaConfig, Table

GENERATED_AT = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
HEADER = "-- This file was generated via sql-mirror at 2024-01-02T03:04:05+00:00"

CREATE_RE = re.compile(r'^CREATE TABLE IF NOT EXISTS "([^"]+)"', re.MULTILINE)
DROP_RE = re.compile(r'^DROP TABLE IF EXISTS "([^"]+)"', re.MULTILINE)


def blog_config():
    return SchemaConfig(
        extensions=[chunks.UUID_EXTENSION],
        tables=[
            Table(
                name="posts",
                columns=["title TEXT NOT NULL"],
                references=[Reference(column_name="author_id", table_name_ref="users")],
            ),
            Table(name="users", columns=[chunks.email()]),
        ],
    )


# 1. Full documents
def test_assemble_up_document():
    generated = assemble(blog_config(), generated_at=GENERATED_AT)

    assert generated.up == "\n".join([
        HEADER,
        "BEGIN TRANSACTION;",
        "",
        'CREATE EXTENSION IF NOT EXISTS "uuid-ossp";',
        "",
        'CREATE TABLE IF NOT EXISTS "users" (',
        '    "users_id" uuid DEFAULT uuid_generate_v4 () PRIMARY KEY,',
        '    "email" VARCHAR(255) UNIQUE NOT NULL',
        ");",
        "",
        'CREATE TABLE IF NOT EXISTS "posts" (',
        '    "posts_id" uuid DEFAULT uuid_generate_v4 () PRIMARY KEY,',
        '    "author_id" uuid NOT NULL REFERENCES "users"("users_id"),',
        '    "title" TEXT NOT NULL',
        ");",
        "",
        "COMMIT TRANSACTION;",
        "",
    ])


def test_assemble_down_document():
    generated = assemble(blog_config(), generated_at=GENERATED_AT)

    assert generated.down == "\n".join([
        HEADER,
        "BEGIN TRANSACTION;",
        "",
        'DROP TABLE IF EXISTS "posts";',
        "",
        'DROP TABLE IF EXISTS "users";',
        "",
        'DROP EXTENSION IF EXISTS "uuid-ossp";',
        "",
        "COMMIT TRANSACTION;",
        "",
    ])


def test_assemble_empty_config():
    generated = assemble(SchemaConfig(), generated_at=GENERATED_AT)
    expected = f"{HEADER}\nBEGIN TRANSACTION;\nCOMMIT TRANSACTION;\n"
    assert generated.up == expected
    assert generated.down == expected


def test_assemble_is_deterministic():
    assert assemble(blog_config(), GENERATED_AT) == assemble(blog_config(), GENERATED_AT)


# 2. Table ordering
def test_referenced_tables_are_created_first_and_dropped_last():
    def table(name, *refs):
        return Table(
            name=name,
            references=[Reference(column_name=f"{ref}_id", table_name_ref=ref) for ref in refs],
        )

    config = SchemaConfig(tables=[
        table("comments", "posts", "users"),
        table("tags"),
        table("posts", "users", "categories"),
        table("categories"),
        table("users"),
    ])
    generated = assemble(config, GENERATED_AT)

    created = CREATE_RE.findall(generated.up)
    dropped = DROP_RE.findall(generated.down)

    for declared in config.tables:
        for reference in declared.references:
            assert created.index(reference.table_name_ref) < created.index(declared.name)
    assert dropped == list(reversed(created))


def test_independent_tables_keep_declaration_order():
    tables = [Table(name=name) for name in ("b", "a", "c")]
    assert [t.name for t in sort_tables(tables)] == ["b", "a", "c"]


def test_cycle_is_rejected():
    config = SchemaConfig(tables=[
        Table(name="a", references=[Reference(column_name="b_id", table_name_ref="b")]),
        Table(name="b", references=[Reference(column_name="a_id", table_name_ref="a")]),
    ])

    with pytest.raises(CyclicDependencyError) as exc:
        assemble(config)

    assert set(exc.value.details["cycle"]) == {"a", "b"}


def test_self_reference_is_allowed():
    config = SchemaConfig(tables=[
        Table(name="nodes", references=[Reference(column_name="parent_id", table_name_ref="nodes", nullable=True)]),
    ])
    generated = assemble(config, GENERATED_AT)
    assert '"parent_id" uuid REFERENCES "nodes"("nodes_id")' in generated.up


def test_unknown_reference_is_rejected():
    config = SchemaConfig(tables=[
        Table(name="posts", references=[Reference(column_name="author_id", table_name_ref="users")]),
    ])
    with pytest.raises(InvalidSchemaConfig):
        assemble(config)


def test_duplicate_table_is_rejected():
    with pytest.raises(InvalidSchemaConfig):
        assemble(SchemaConfig(tables=[Table(name="users"), Table(name="users")]))


# 3. Plugins, functions and types
def test_timestamps_plugin():
    config = SchemaConfig(tables=[Table(name="posts", plugins=[chunks.TIMESTAMPS_PLUGIN])])
    generated = assemble(config, GENERATED_AT)

    up, down = generated.up, generated.down
    assert '"created_at" TIMESTAMP DEFAULT (now())' in up
    assert '"updated_at" TIMESTAMP' in up
    assert up.index("CREATE OR REPLACE FUNCTION updated_at_column()") < up.index('CREATE TABLE IF NOT EXISTS "posts"')
    assert up.index('CREATE TABLE IF NOT EXISTS "posts"') < up.index('CREATE TRIGGER "updated_at_on_posts"')

    assert down.index('DROP TRIGGER IF EXISTS "updated_at_on_posts"') < down.index('DROP TABLE IF EXISTS "posts"')
    assert down.index('DROP TABLE IF EXISTS "posts"') < down.index("DROP FUNCTION IF EXISTS updated_at_column();")


def test_plugin_names_resolve_from_dict_config():
    generated = assemble({"tables": [{"name": "users", "plugins": ["created_at"]}]}, GENERATED_AT)
    assert '"created_at" TIMESTAMP DEFAULT (now())' in generated.up


def test_unknown_plugin_name_is_rejected():
    with pytest.raises(InvalidSchemaConfig) as exc:
        assemble({"tables": [{"name": "users", "plugins": ["soft_delete"]}]})
    assert exc.value.details["errors"]


def test_extensions_deduplicated_first_wins():
    custom = Extension(name="uuid-ossp", up="-- custom uuid", down="-- drop custom uuid")
    plugin = Plugin(name="uuid", extensions=[chunks.UUID_EXTENSION])
    config = SchemaConfig(
        extensions=[custom],
        tables=[Table(name="a", plugins=[plugin]), Table(name="b", plugins=[plugin])],
    )
    generated = assemble(config, GENERATED_AT)

    assert generated.up.count("-- custom uuid") == 1
    assert "CREATE EXTENSION" not in generated.up


def test_functions_and_extensions_drop_in_reverse():
    config = SchemaConfig(
        extensions=[chunks.UUID_EXTENSION, chunks.PGCRYPTO_EXTENSION],
        functions=[
            Function(name="f1", up="CREATE FUNCTION f1();", down="DROP FUNCTION f1();"),
            Function(name="f2", up="CREATE FUNCTION f2();", down="DROP FUNCTION f2();"),
        ],
    )
    generated = assemble(config, GENERATED_AT)

    assert generated.down.index("DROP FUNCTION f2();") < generated.down.index("DROP FUNCTION f1();")
    assert generated.down.index('"pgcrypto"') < generated.down.index('"uuid-ossp"')
    assert generated.down.index("DROP FUNCTION f1();") < generated.down.index('"pgcrypto"')


def test_function_trigger_applies_to_every_table():
    audit = Function(
        name="audit",
        up="CREATE FUNCTION audit();",
        down="DROP FUNCTION audit();",
        trigger=lambda table, columns: chunks.Chunk(
            up=f'CREATE TRIGGER "audit_{table}";',
            down=f'DROP TRIGGER "audit_{table}";',
        ),
    )
    config = SchemaConfig(functions=[audit], tables=[Table(name="a"), Table(name="b")])
    generated = assemble(config, GENERATED_AT)

    assert 'CREATE TRIGGER "audit_a";' in generated.up
    assert 'CREATE TRIGGER "audit_b";' in generated.up
    assert generated.down.index('DROP TRIGGER "audit_b";') < generated.down.index('DROP TABLE IF EXISTS "b";')


def test_types_wrap_their_table():
    mood = chunks.sql_type("mood", "ENUM ('sad', 'happy')")
    config = SchemaConfig(tables=[Table(name="people", columns=["current mood"], types=[mood])])
    generated = assemble(config, GENERATED_AT)

    assert generated.up.index('CREATE TYPE "mood"') < generated.up.index('CREATE TABLE IF NOT EXISTS "people"')
    assert generated.down.index('DROP TABLE IF EXISTS "people"') < generated.down.index('DROP TYPE IF EXISTS "mood"')


# 4. Transaction body
def test_transaction_body_strips_generated_wrapper():
    generated = assemble(blog_config(), GENERATED_AT)
    body = transaction_body(generated.up)

    assert not body.startswith("--")
    assert "BEGIN TRANSACTION;" not in body
    assert "COMMIT TRANSACTION;" not in body
    assert body.startswith('CREATE EXTENSION IF NOT EXISTS "uuid-ossp";')


def test_transaction_body_leaves_hand_written_sql_alone():
    script = "-- up file\nCREATE TABLE t (id int);\n"
    assert transaction_body(script) == script


@pytest.mark.parametrize("script, expected", [
    ("BEGIN;\nCREATE TABLE t (id int);\nCOMMIT;\n", ["BEGIN;", "COMMIT;"]),
    ("begin transaction;\nSELECT 1;\nrollback;\n", ["begin transaction;", "rollback;"]),
    ("START TRANSACTION ISOLATION LEVEL SERIALIZABLE;\n", ["START TRANSACTION ISOLATION LEVEL SERIALIZABLE;"]),
    ("SELECT 1;\n  END TRANSACTION;\n", ["END TRANSACTION;"]),
])
def test_transaction_control_statements_found(script, expected):
    assert transaction_control_statements(script) == expected


@pytest.mark.parametrize("script", [
    chunks.UPDATED_AT_FUNCTION.up,
    "DO $$\nBEGIN\n    PERFORM 1;\nEND;\n$$;\n",
    "-- COMMIT;\nSELECT 1;\n",
    "SAVEPOINT s;\nROLLBACK TO SAVEPOINT s;\n",
    "CREATE TABLE commits (id int);\n",
])
def test_transaction_control_statements_ignored(script):
    assert transaction_control_statements(script) == []


def test_generated_body_has_no_transaction_control():
    generated = assemble(blog_config(), GENERATED_AT)
    assert transaction_control_statements(transaction_body(generated.up)) == []
    assert transaction_control_statements(transaction_body(generated.down)) == []
