"""Tests for query building."""

from __future__ import annotations

import re

import pytest

from tagorm import (
    ORM,
    Mapped,
    MemoryCache,
    Model,
    QueryError,
    SchemaError,
    UnsupportedOperationError,
    orm,
)


class User(Model):
    __tablename__ = "users"

    id: Mapped[int] = orm("pk,auto")
    name: Mapped[str] = orm("")
    age: Mapped[int] = orm("")
    status: Mapped[str] = orm("")
    posts: Mapped[list[Post]] = orm("relation:has_many,fk:user_id")


class Post(Model):
    __tablename__ = "posts"

    id: Mapped[int] = orm("pk,auto")
    user_id: Mapped[int] = orm("fk:users.id")
    title: Mapped[str] = orm("")
    author: Mapped[User | None] = orm("relation:belongs_to,fk:user_id")


class Label(Model):
    __tablename__ = "labels"

    id: Mapped[int] = orm("pk,auto")
    name: Mapped[str] = orm("")


class Article(Model):
    __tablename__ = "articles"

    id: Mapped[int] = orm("pk,auto")
    title: Mapped[str] = orm("")
    labels: Mapped[list[Label]] = orm("relation:many_to_many,join_table:article_labels")


def placeholders(sql: str) -> list[str]:
    return re.findall(r"\$\d+|\?", sql)


def test_select_basic(mock_orm: ORM) -> None:
    """A bare query selects the whole table."""
    query = mock_orm.query(User)
    assert query.get_sql() == "SELECT * FROM users"
    assert query.get_args() == []


def test_where_order_limit(mock_orm: ORM) -> None:
    """WHERE, ORDER BY and LIMIT compile in order with bound args."""
    query = mock_orm.query(User).where("age", ">", 30).order_by("name", "ASC").limit(10)
    assert query.get_sql() == "SELECT * FROM users WHERE age > ? ORDER BY name ASC LIMIT 10"
    assert query.get_args() == [30]


def test_postgres_placeholders_are_numbered(pg_orm: ORM) -> None:
    query = pg_orm.query(User).where("age", ">", 30).where("status", "active")
    assert query.get_sql() == "SELECT * FROM users WHERE age > $1 AND status = $2"
    assert query.get_args() == [30, "active"]


def test_clause_order_is_fixed(mock_orm: ORM) -> None:
    """Clauses come out in canonical order whatever the call order."""
    query = (
        mock_orm.query(User)
        .lock("FOR UPDATE")
        .offset(5)
        .limit(10)
        .order_by("age", "desc")
        .having("COUNT(*) > ?", 1)
        .group_by("status")
        .where("age", ">", 18)
        .join("posts", "posts.user_id = users.id")
        .select("status", "COUNT(*) AS n")
    )
    assert query.get_sql() == (
        "SELECT status, COUNT(*) AS n FROM users "
        "INNER JOIN posts ON posts.user_id = users.id "
        "WHERE age > ? GROUP BY status HAVING COUNT(*) > ? "
        "ORDER BY age DESC LIMIT 10 OFFSET 5 FOR UPDATE"
    )
    assert query.get_args() == [18, 1]


def test_having_args_follow_where_args(pg_orm: ORM) -> None:
    """Arguments follow emission order, not call order."""
    query = (
        pg_orm.query(User)
        .having("COUNT(*) > ?", 2)
        .group_by("status")
        .where_in("status", ["a", "b"])
        .where("age", ">=", 21)
    )
    sql = query.get_sql()
    assert "WHERE status IN ($1, $2) AND age >= $3" in sql
    assert "HAVING COUNT(*) > $4" in sql
    assert query.get_args() == ["a", "b", 21, 2]


def test_placeholder_count_matches_args(pg_orm: ORM) -> None:
    query = (
        pg_orm.query(User)
        .join("posts", "posts.user_id = users.id AND posts.title <> ?", "draft")
        .where_between("age", 18, 65)
        .where_like("name", "A%")
        .where_not_in("id", [1, 2, 3])
        .where_raw("age % ? = 0", 2)
    )
    sql = query.get_sql()
    args = query.get_args()
    assert placeholders(sql) == [f"${i}" for i in range(1, len(args) + 1)]
    assert args == ["draft", 18, 65, "A%", 1, 2, 3, 2]


class TestPredicates:
    """Test the where_* family."""

    def test_where_shorthand(self, mock_orm: ORM) -> None:
        assert mock_orm.query(User).where("name", "Bob").get_sql().endswith("WHERE name = ?")

    def test_where_none_is_null(self, mock_orm: ORM) -> None:
        query = mock_orm.query(User).where("status", "=", None).where("name", "!=", None)
        assert query.get_sql().endswith("WHERE status IS NULL AND name IS NOT NULL")
        assert query.get_args() == []

    def test_where_or_groups(self, mock_orm: ORM) -> None:
        query = mock_orm.query(User).where("age", ">", 1).where_or(("status", "admin"), ("age", ">", 90))
        assert query.get_sql().endswith("WHERE age > ? AND (status = ? OR age > ?)")
        assert query.get_args() == [1, "admin", 90]

    def test_empty_in_is_noop(self, mock_orm: ORM) -> None:
        query = mock_orm.query(User).where_in("id", []).where_not_in("id", [])
        assert query.get_sql() == "SELECT * FROM users"

    def test_null_and_between(self, mock_orm: ORM) -> None:
        query = (
            mock_orm.query(User)
            .where_null("status")
            .where_not_null("name")
            .where_not_between("age", 1, 2)
            .where_not_like("name", "x%")
        )
        assert query.get_sql().endswith(
            "WHERE status IS NULL AND name IS NOT NULL AND age NOT BETWEEN ? AND ? AND name NOT LIKE ?"
        )

    def test_regexp_uses_dialect_operator(self, mock_orm: ORM, pg_orm: ORM) -> None:
        assert mock_orm.query(User).where_regexp("name", "^A").get_sql().endswith("name REGEXP ?")
        assert pg_orm.query(User).where_not_regexp("name", "^A").get_sql().endswith("name !~ $1")

    def test_full_text_search(self, mock_orm: ORM, pg_orm: ORM) -> None:
        mysql_sql = mock_orm.query(Post).full_text_search(["title"], "orm").get_sql()
        assert mysql_sql.endswith("WHERE MATCH(title) AGAINST(? IN BOOLEAN MODE)")

        pg_query = pg_orm.query(Post).full_text_search("title", "orm")
        assert "plainto_tsquery('english', $1)" in pg_query.get_sql()
        assert pg_query.get_args() == ["orm"]

    def test_raw_predicate_keeps_quoted_marks(self, pg_orm: ORM) -> None:
        query = pg_orm.query(User).where_raw("name <> '?' AND age > ?", 5)
        assert query.get_sql().endswith("WHERE (name <> '?' AND age > $1)")

    def test_backslash_escaped_quote_on_mysql(self, mock_orm: ORM) -> None:
        query = mock_orm.query(User).where_raw("name <> 'it\\'s' AND age > ?", 5)
        assert query.get_sql().endswith("WHERE (name <> 'it\\'s' AND age > ?)")
        assert query.get_args() == [5]

    def test_backslash_is_literal_on_postgres(self, pg_orm: ORM) -> None:
        query = pg_orm.query(User).where_raw("name <> 'C:\\' AND age > ?", 5)
        assert query.get_sql().endswith("WHERE (name <> 'C:\\' AND age > $1)")
        assert query.get_args() == [5]


class TestErrors:
    """Test errors recorded mid-chain."""

    def test_bad_operator_surfaces_at_terminal(self, mock_orm: ORM) -> None:
        query = mock_orm.query(User).where("age", "~~", 1).where("name", "x")
        assert isinstance(query.error, QueryError)
        with pytest.raises(QueryError, match="unsupported operator"):
            query.find()

    def test_calls_after_error_are_noops(self, mock_orm: ORM) -> None:
        query = mock_orm.query(User).order_by("name", "sideways")
        error = query.error
        query.where("age", 1).limit(5)
        assert query.error is error
        with pytest.raises(QueryError):
            query.get_sql()

    def test_unbound_model_error(self, mock_orm: ORM) -> None:
        query = mock_orm.query(42)
        assert isinstance(query.error, SchemaError)
        with pytest.raises(SchemaError):
            query.count()

    def test_mismatched_raw_args(self, mock_orm: ORM) -> None:
        with pytest.raises(QueryError, match="placeholders"):
            mock_orm.query(User).where_raw("age > ?", 1, 2).get_sql()

    def test_unknown_relation(self, mock_orm: ORM) -> None:
        with pytest.raises(QueryError, match="unknown relation"):
            mock_orm.query(User).with_("comments").find()

    def test_no_statements_issued_on_error(self, mock_orm: ORM, mock_dialect) -> None:
        with pytest.raises(QueryError):
            mock_orm.query(User).limit(-1).find()
        assert mock_dialect.statements == []


class TestTerminals:
    """Test execution terminals against the mock."""

    def test_find_maps_instances(self, mock_orm: ORM, mock_dialect) -> None:
        mock_dialect.add_result([{"id": 1, "name": "Ann", "age": 30, "status": "active"}])
        users = mock_orm.query(User).find()
        assert len(users) == 1
        assert isinstance(users[0], User)
        assert (users[0].id, users[0].name, users[0].age) == (1, "Ann", 30)
        assert users[0].posts == []

    def test_find_one_injects_limit(self, mock_orm: ORM, mock_dialect) -> None:
        query = mock_orm.query(User).where("id", 7)
        assert query.find_one() is None
        assert mock_dialect.last_statement == ("SELECT * FROM users WHERE id = ? LIMIT 1", (7,))
        assert query.get_sql() == "SELECT * FROM users WHERE id = ?"

    def test_count_leaves_builder_unchanged(self, mock_orm: ORM, mock_dialect) -> None:
        mock_dialect.add_result([{"count": 4}])
        query = mock_orm.query(User).where("age", ">", 3).order_by("name").limit(2)
        assert query.count() == 4
        assert mock_dialect.last_statement == ("SELECT COUNT(*) AS count FROM users WHERE age > ?", (3,))
        assert query.get_sql() == "SELECT * FROM users WHERE age > ? ORDER BY name ASC LIMIT 2"

    def test_count_with_group_by_wraps(self, mock_orm: ORM, mock_dialect) -> None:
        mock_dialect.add_result([{"count": 2}])
        assert mock_orm.query(User).select("status").group_by("status").count() == 2
        sql, _ = mock_dialect.last_statement
        assert sql == "SELECT COUNT(*) AS count FROM (SELECT status FROM users GROUP BY status) AS counted"

    def test_exists(self, mock_orm: ORM, mock_dialect) -> None:
        assert mock_orm.query(User).where("id", 1).exists() is False
        assert mock_dialect.last_statement[0] == "SELECT 1 FROM users WHERE id = ? LIMIT 1"
        mock_dialect.add_result([{"1": 1}])
        assert mock_orm.query(User).exists() is True

    def test_paginate(self, mock_orm: ORM, mock_dialect) -> None:
        mock_dialect.add_result([{"count": 45}])
        mock_dialect.add_result([{"id": i} for i in range(21, 41)])
        page = mock_orm.query(User).order_by("id").paginate(page=2, per_page=20)
        assert page.total == 45
        assert page.last_page == 3
        assert (page.from_, page.to) == (21, 40)
        assert page.has_more is True
        assert mock_dialect.last_statement[0] == "SELECT * FROM users ORDER BY id ASC LIMIT 20 OFFSET 20"

    def test_raw_queries(self, mock_orm: ORM, mock_dialect) -> None:
        mock_dialect.on("FROM users", [{"n": 1}])
        raw = mock_orm.raw("SELECT 1 AS n FROM users WHERE age > ?", 3)
        assert raw.find() == [{"n": 1}]
        assert raw.exists() is True
        assert mock_dialect.last_statement == ("SELECT 1 AS n FROM users WHERE age > ?", (3,))
        with pytest.raises(UnsupportedOperationError):
            raw.count()

    def test_update_and_delete(self, mock_orm: ORM, mock_dialect) -> None:
        mock_dialect.rows_affected = 3
        assert mock_orm.query(User).where("status", "old").update({"status": "new"}) == 3
        assert mock_dialect.last_statement == ("UPDATE users SET status = ? WHERE status = ?", ("new", "old"))
        assert mock_orm.query(User).where("age", "<", 1).delete() == 3
        assert mock_dialect.last_statement == ("DELETE FROM users WHERE age < ?", (1,))


class TestPaging:
    """Test cursor and offset paging helpers."""

    def test_cursor_paginate(self, mock_orm: ORM) -> None:
        query = mock_orm.query(User).order_by("id").cursor_paginate("id", 40, 20)
        assert query.get_sql() == "SELECT * FROM users WHERE id > ? ORDER BY id ASC LIMIT 20"
        assert query.get_args() == [40]

    def test_first_cursor_page(self, mock_orm: ORM) -> None:
        assert mock_orm.query(User).cursor_paginate("id", None, 5).get_sql() == "SELECT * FROM users LIMIT 5"

    def test_offset_paginate(self, mock_orm: ORM) -> None:
        sql = mock_orm.query(User).offset_paginate(3, 10).get_sql()
        assert sql == "SELECT * FROM users LIMIT 10 OFFSET 20"

    def test_zero_limit_is_omitted(self, mock_orm: ORM) -> None:
        assert mock_orm.query(User).limit(0).offset(0).get_sql() == "SELECT * FROM users"


class TestComposition:
    """Test sub queries, unions and distinct."""

    def test_sub_query_args_bound_first(self, pg_orm: ORM) -> None:
        query = (
            pg_orm.query(User)
            .where("age", ">", 18)
            .sub_query(
                "recent",
                lambda q: q.from_("posts").select("COUNT(*)").where_raw("posts.user_id = users.id AND posts.id > ?", 100),
            )
        )
        assert query.get_sql() == (
            "SELECT *, (SELECT COUNT(*) FROM posts WHERE (posts.user_id = users.id AND posts.id > $1)) AS recent "
            "FROM users WHERE age > $2"
        )
        assert query.get_args() == [100, 18]

    def test_union_numbering_continues(self, pg_orm: ORM) -> None:
        admins = pg_orm.query(User).where("status", "admin")
        query = pg_orm.query(User).where("age", ">", 60).union_all(admins)
        assert query.get_sql() == (
            "SELECT * FROM users WHERE age > $1 UNION ALL (SELECT * FROM users WHERE status = $2)"
        )
        assert query.get_args() == [60, "admin"]

    def test_union_wraps_ordered_head(self, pg_orm: ORM) -> None:
        admins = pg_orm.query(User).where("status", "admin")
        query = pg_orm.query(User).where("age", ">", 60).order_by("name").limit(10).union(admins)
        assert query.get_sql() == (
            "(SELECT * FROM users WHERE age > $1 ORDER BY name ASC LIMIT 10) "
            "UNION (SELECT * FROM users WHERE status = $2)"
        )
        assert query.get_args() == [60, "admin"]

    def test_union_wraps_locked_head(self, mock_orm: ORM) -> None:
        sql = mock_orm.query(User).for_update().union(mock_orm.query(User)).get_sql()
        assert sql == "(SELECT * FROM users FOR UPDATE) UNION (SELECT * FROM users)"

    def test_distinct_and_for_share(self, mock_orm: ORM) -> None:
        sql = mock_orm.query(User).distinct().select("status").for_share().get_sql()
        assert sql == "SELECT DISTINCT status FROM users FOR SHARE"


class TestRelations:
    """Test with_, with_count and with_exists."""

    def test_with_count_projection(self, mock_orm: ORM) -> None:
        mock_orm.register_model(User, Post)
        sql = mock_orm.query(User).with_count("posts").get_sql()
        assert sql == "SELECT *, (SELECT COUNT(*) FROM posts WHERE posts.user_id = users.id) AS posts_count FROM users"

    def test_with_exists_predicate(self, mock_orm: ORM) -> None:
        mock_orm.register_model(User, Post)
        sql = mock_orm.query(Post).with_exists("author").where("title", "x").get_sql()
        assert sql == (
            "SELECT * FROM posts WHERE title = ? AND EXISTS (SELECT 1 FROM users WHERE users.id = posts.user_id)"
        )

    def test_with_count_through_join_table(self, mock_orm: ORM) -> None:
        mock_orm.register_model(Article, Label)
        sql = mock_orm.query(Article).with_count("labels").get_sql()
        assert sql == (
            "SELECT *, (SELECT COUNT(*) FROM article_labels WHERE article_labels.article_id = articles.id) "
            "AS labels_count FROM articles"
        )

    def test_eager_load_many_to_many(self, mock_orm: ORM, mock_dialect) -> None:
        mock_orm.register_model(Article, Label)
        mock_dialect.add_result([{"id": 1, "title": "a"}, {"id": 2, "title": "b"}, {"id": 3, "title": "c"}])
        mock_dialect.add_result(
            [
                {"article_id": 1, "label_id": 7},
                {"article_id": 1, "label_id": 8},
                {"article_id": 2, "label_id": 8},
                {"article_id": 2, "label_id": 9},
            ]
        )
        mock_dialect.add_result([{"id": 7, "name": "news"}, {"id": 8, "name": "tech"}])

        articles = mock_orm.query(Article).with_("labels").find()

        assert [label.name for label in articles[0].labels] == ["news", "tech"]
        assert [label.name for label in articles[1].labels] == ["tech"]
        assert articles[2].labels == []
        assert mock_dialect.statements[1] == (
            "SELECT article_id, label_id FROM article_labels WHERE article_id IN (?, ?, ?)",
            (1, 2, 3),
        )
        assert mock_dialect.last_statement == ("SELECT * FROM labels WHERE id IN (?, ?, ?)", (7, 8, 9))

    def test_eager_load_many_to_many_skips_pivot_without_parents(self, mock_orm: ORM, mock_dialect) -> None:
        mock_orm.register_model(Article, Label)
        assert mock_orm.query(Article).with_("labels").find() == []
        assert len(mock_dialect.statements) == 1

    def test_eager_load_has_many(self, mock_orm: ORM, mock_dialect) -> None:
        mock_orm.register_model(User, Post)
        mock_dialect.add_result([{"id": 1, "name": "Ann"}, {"id": 2, "name": "Bo"}])
        mock_dialect.add_result([{"id": 10, "user_id": 1, "title": "a"}, {"id": 11, "user_id": 1, "title": "b"}])
        users = mock_orm.query(User).with_("posts").find()
        assert [p.id for p in users[0].posts] == [10, 11]
        assert users[1].posts == []
        assert mock_dialect.last_statement == ("SELECT * FROM posts WHERE user_id IN (?, ?)", (1, 2))

    def test_eager_load_belongs_to(self, mock_orm: ORM, mock_dialect) -> None:
        mock_orm.register_model(User, Post)
        mock_dialect.add_result([{"id": 10, "user_id": 1}, {"id": 11, "user_id": 3}])
        mock_dialect.add_result([{"id": 1, "name": "Ann"}])
        posts = mock_orm.query(Post).with_("author").find()
        assert posts[0].author.name == "Ann"
        assert posts[1].author is None
        assert mock_dialect.last_statement == ("SELECT * FROM users WHERE id IN (?, ?)", (1, 3))


class TestCache:
    """Test query result caching."""

    def test_cached_find_hits_once(self, mock_orm: ORM, mock_dialect) -> None:
        mock_orm.with_cache(MemoryCache())
        mock_dialect.on("FROM users", [{"id": 1}])
        first = mock_orm.query(User).cache(30).find()
        second = mock_orm.query(User).cache(30).find()
        assert first[0].id == second[0].id == 1
        assert len(mock_dialect.statements) == 1

    def test_without_cache(self, mock_orm: ORM, mock_dialect) -> None:
        mock_orm.with_cache(MemoryCache())
        mock_orm.query(User).cache(30).without_cache().find()
        mock_orm.query(User).cache(30).without_cache().find()
        assert len(mock_dialect.statements) == 2
