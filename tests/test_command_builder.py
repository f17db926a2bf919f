"""
Tests for SQL command construction.
"""

import re

import pytest
from sqlalchemy.dialects import postgresql

from dynamic_record.criteria import QueryCriteria
from dynamic_record.db import CommandBuilder
from dynamic_record.db.schema import ColumnSchema, TableSchema
from dynamic_record.exceptions import SchemaError


def _param(sql):
    return re.findall(r":(\w+)", sql)


@pytest.fixture
def builder(engine):
    return CommandBuilder(engine.dialect)


@pytest.fixture
def post_table(handle):
    return handle.schema_provider.get_table_schema(handle, "post")


@pytest.fixture
def link_table(handle):
    return handle.schema_provider.get_table_schema(handle, "post_tag")


class TestFindCommands:
    """Tests for SELECT and COUNT."""

    def test_find_command(self, builder, post_table):
        criteria = QueryCriteria(condition="t.views>:v", params={"v": 3}, order="t.id", limit=5, offset=2)
        command = builder.create_find_command(post_table, criteria)
        assert command.sql == "SELECT t.* FROM post t WHERE t.views>:v ORDER BY t.id LIMIT 5 OFFSET 2"
        assert command.params == {"v": 3}

    def test_select_columns_are_qualified(self, builder, post_table):
        command = builder.create_find_command(post_table, QueryCriteria(select="id, COUNT(*) AS n", group="t.id"))
        assert command.sql == "SELECT t.id, COUNT(*) AS n FROM post t GROUP BY t.id"

    def test_offset_without_limit(self, builder, post_table):
        command = builder.create_find_command(post_table, QueryCriteria(offset=3))
        assert command.sql.endswith("LIMIT -1 OFFSET 3")

    def test_conditions_are_anded(self, builder, post_table):
        criteria = QueryCriteria(condition=["t.id>1", "t.views<5"])
        assert builder.create_find_command(post_table, criteria).sql.endswith("WHERE (t.id>1) AND (t.views<5)")

    def test_count_command(self, builder, post_table):
        command = builder.create_count_command(post_table, QueryCriteria(condition="t.id>1", order="t.id", limit=2))
        assert command.sql == "SELECT COUNT(*) FROM post t WHERE t.id>1 ORDER BY t.id"

    def test_count_grouped(self, builder, post_table):
        command = builder.create_count_command(post_table, QueryCriteria(select="author_id", group="t.author_id"))
        assert command.sql == "SELECT COUNT(*) FROM (SELECT t.author_id FROM post t GROUP BY t.author_id) sq"


class TestWriteCommands:
    """Tests for INSERT, UPDATE and DELETE."""

    def test_insert_skips_unknown_and_null_autoincrement(self, builder, post_table):
        command = builder.create_insert_command(post_table, {"id": None, "title": "x", "subtitle": "y"})
        names = _param(command.sql)
        assert command.sql.startswith(f"INSERT INTO post (title) VALUES (:{names[0]})")
        assert command.params == {names[0]: "x"}

    def test_insert_returns_generated_key(self, post_table):
        builder = CommandBuilder(postgresql.dialect())
        command = builder.create_insert_command(post_table, {"title": "x"})
        names = _param(command.sql)
        assert command.sql == f"INSERT INTO post (title) VALUES (:{names[0]}) RETURNING id"
        assert command.returning == "id"

    def test_insert_with_explicit_key_returns_nothing(self, post_table):
        builder = CommandBuilder(postgresql.dialect())
        command = builder.create_insert_command(post_table, {"id": 9, "title": "x"})
        assert "RETURNING" not in command.sql
        assert command.returning is None

    def test_composite_key_insert_returns_nothing(self, link_table):
        builder = CommandBuilder(postgresql.dialect())
        command = builder.create_insert_command(link_table, {"post_id": 1, "tag_id": 2})
        assert command.returning is None

    def test_insert_typecasts(self, builder, post_table):
        command = builder.create_insert_command(post_table, {"views": "7"})
        assert list(command.params.values()) == [7]

    def test_update_command(self, builder, post_table):
        criteria = QueryCriteria(condition="id=:id", params={"id": 1}, order="id", limit=1)
        command = builder.create_update_command(post_table, {"title": "x"}, criteria)
        names = _param(command.sql)
        assert command.sql == f"UPDATE post SET title=:{names[0]} WHERE id=:id"
        assert command.params == {"id": 1, names[0]: "x"}

    def test_update_without_columns(self, builder, post_table):
        with pytest.raises(SchemaError):
            builder.create_update_command(post_table, {"subtitle": "x"}, QueryCriteria())

    def test_counter_command(self, builder, post_table):
        command = builder.create_update_counter_command(post_table, {"views": -1}, QueryCriteria(condition="id=2"))
        assert re.fullmatch(r"UPDATE post SET views=views\+:\w+ WHERE id=2", command.sql)
        assert list(command.params.values()) == [-1]

    def test_counter_unknown_column(self, builder, post_table):
        with pytest.raises(SchemaError):
            builder.create_update_counter_command(post_table, {"likes": 1}, QueryCriteria())

    def test_delete_command(self, builder, post_table):
        command = builder.create_delete_command(post_table, QueryCriteria(condition="id=3", limit=1))
        assert command.sql == "DELETE FROM post WHERE id=3"


class TestCriteriaHelpers:
    """Tests for primary key and column criteria."""

    def test_single_pk(self, builder, post_table):
        criteria = builder.create_pk_criteria(post_table, 4, prefix="t.")
        assert re.fullmatch(r"t\.id=:\w+", criteria.condition)
        assert list(criteria.params.values()) == [4]

    def test_pk_list(self, builder, post_table):
        criteria = builder.create_pk_criteria(post_table, [1, 2, 3])
        assert re.fullmatch(r"id IN \(:\w+, :\w+, :\w+\)", criteria.condition)

    def test_pk_with_condition(self, builder, post_table):
        criteria = builder.create_pk_criteria(post_table, 1, "status='draft'")
        assert criteria.conditions[1] == "status='draft'"

    def test_composite_pk(self, builder, link_table):
        criteria = builder.create_pk_criteria(link_table, [{"post_id": 1, "tag_id": 2}, {"post_id": 3, "tag_id": 4}])
        assert re.fullmatch(
            r"\(post_id=:\w+ AND tag_id=:\w+\) OR \(post_id=:\w+ AND tag_id=:\w+\)", criteria.condition
        )
        assert list(criteria.params.values()) == [1, 2, 3, 4]

    def test_table_without_key(self, builder):
        table = TableSchema(name="log", columns={"msg": ColumnSchema(name="msg", db_type="TEXT")}, primary_key=())
        with pytest.raises(SchemaError):
            builder.create_pk_criteria(table, 1)

    def test_column_criteria(self, builder, post_table):
        criteria = builder.create_column_criteria(post_table, {"author_id": None, "status": "draft"}, prefix="t.")
        assert re.fullmatch(r"t\.author_id IS NULL AND t\.status=:\w+", criteria.condition)

    def test_sql_command_params(self, builder):
        command = builder.create_sql_command("SELECT :a", {":a": 1})
        assert command.params == {"a": 1}

    def test_quoting_reserved_words(self, builder):
        assert builder.quote_column_name("order") == '"order"'
        assert builder.quote_table_name("post") == "post"
