"""
Tests for the record lifecycle: insert, update, delete, refresh.

Verifies:
- the NEW -> PERSISTED -> DELETED state machine
- illegal transitions raise before any command is sent
- writes target the primary key captured at load or insert
- hooks can cancel writes
"""

import pickle
from typing import List

import pytest

from dynamic_record import LifecycleError, RecordState
from dynamic_record.config import Settings
from dynamic_record.db import CommandBuilder, SQLAlchemySchemaProvider
from dynamic_record.db.executor import ExecutionResult
from dynamic_record.metadata import MetadataRegistry, set_registry
from dynamic_record.router import ConnectionHandle, ConnectionRouter

from conftest import RecordingExecutor
from entities import Comment, Post, PostTag, User


class AuditedComment(Comment):
    __tablename__ = "comment"

    loaded: bool = False

    def after_find(self):
        self.loaded = True
        super().after_find()


class NoRowIdExecutor(RecordingExecutor):
    """Reports no row id for plain inserts, the way PostgreSQL drivers do."""

    def execute(self, command):
        result = super().execute(command)
        if command.returning is None:
            return ExecutionResult(result.rowcount)
        return result


@pytest.fixture
def returning_handle(engine):
    """Route the default registry through an executor that only learns keys via RETURNING."""
    if not engine.dialect.insert_returning:
        pytest.skip("SQLite build without RETURNING support")
    handle = ConnectionHandle(
        identity="main",
        engine=engine,
        executor=NoRowIdExecutor(engine),
        schema_provider=SQLAlchemySchemaProvider(),
        command_builder=CommandBuilder(engine.dialect),
    )
    router = ConnectionRouter(Settings(default_connection_identity="main"))
    router.register("main", handle)
    set_registry(MetadataRegistry(router))
    yield handle
    set_registry(None)


class TestInsert:
    """Tests for saving new records."""

    def test_insert_assigns_autoincrement_key(self, registry, executor):
        post = Post(title="Fresh", author_id=2)

        assert post.save()

        assert executor.count == 1
        assert post.id == 5
        assert post.state == RecordState.PERSISTED
        assert not post.is_new_record
        assert post.old_primary_key == 5
        assert post.scenario == "update"

    def test_generated_key_returned_with_insert(self, returning_handle):
        post = Post(title="Fresh")

        assert post.save()

        assert returning_handle.executor.commands[0].returning == "id"
        assert post.id == 5
        assert post.old_primary_key == 5

        post.title = "Renamed"
        assert post.save()
        assert Post.model().find_by_pk(5).title == "Renamed"

    def test_insert_uses_column_defaults(self, registry):
        post = Post(title="Fresh")
        post.save()

        stored = Post.model().find_by_pk(post.id)
        assert stored.status == "draft"
        assert stored.views == 0
        assert stored.author_id is None

    def test_insert_selected_attributes(self, registry):
        post = Post(title="Partial", views=42)
        assert post.insert(["title"])
        assert Post.model().find_by_pk(post.id).views == 0

    def test_insert_keeps_explicit_key(self, registry):
        post = Post(id=10, title="Explicit")
        assert post.save()
        assert post.id == 10
        assert Post.model().exists("t.id=10")

    def test_insert_composite_key(self, registry):
        link = PostTag(post_id=3, tag_id=1)
        assert link.save()
        assert link.primary_key == {"post_id": 3, "tag_id": 1}
        assert PostTag.model().count() == 4

    def test_insert_persisted_record_fails(self, registry, executor):
        post = Post.model().find_by_pk(1)
        executor.reset()

        with pytest.raises(LifecycleError) as exc_info:
            post.insert()

        assert exc_info.value.code == "INVALID_LIFECYCLE_TRANSITION"
        assert executor.count == 0


class TestUpdate:
    """Tests for saving persisted records."""

    def test_update(self, registry):
        post = Post.model().find_by_pk(1)
        post.title = "Hello again"

        assert post.save()

        assert Post.model().find_by_pk(1).title == "Hello again"

    def test_update_targets_old_primary_key(self, registry):
        """Changing the key in memory moves the row instead of writing elsewhere."""
        post = Post.model().find_by_pk(3)
        post.id = 30

        assert post.save()

        assert Post.model().find_by_pk(3) is None
        assert Post.model().find_by_pk(30).title == "Draft"
        assert post.old_primary_key == 30

    def test_update_selected_attributes(self, registry):
        post = Post.model().find_by_pk(1)
        post.title = "Ignored"
        post.views = 99

        assert post.save(attributes=["views"])

        stored = Post.model().find_by_pk(1)
        assert stored.views == 99
        assert stored.title == "Hello"

    def test_update_missing_row_returns_false(self, registry):
        post = Post.model().find_by_pk(1)
        Post.model().delete_by_pk(1)
        post.title = "Gone"

        assert post.save() is False

    def test_update_new_record_fails(self, registry, executor):
        with pytest.raises(LifecycleError):
            Post(title="New").update()
        assert executor.count == 0


class TestDelete:
    """Tests for deleting records."""

    def test_delete(self, registry):
        post = Post.model().find_by_pk(3)

        assert post.delete()

        assert post.is_deleted
        assert post.state == RecordState.DELETED
        assert Post.model().find_by_pk(3) is None

    def test_delete_composite_key(self, registry):
        link = PostTag.model().find_by_pk({"post_id": 1, "tag_id": 3})
        assert link.delete()
        assert PostTag.model().count() == 2

    def test_writes_after_delete_fail(self, registry, executor):
        post = Post.model().find_by_pk(3)
        post.delete()
        executor.reset()

        with pytest.raises(LifecycleError):
            post.save()
        with pytest.raises(LifecycleError):
            post.delete()
        with pytest.raises(LifecycleError):
            post.insert()
        with pytest.raises(LifecycleError):
            post.refresh()

        assert executor.count == 0

    def test_delete_new_record_fails(self, registry):
        with pytest.raises(LifecycleError):
            Post(title="New").delete()


class TestValidation:
    """Tests for validation before save."""

    def test_invalid_record_is_not_saved(self, registry, executor):
        post = Post(title="")

        assert post.save() is False

        assert executor.count == 0
        assert post.is_new_record
        assert post.has_errors("title")
        assert list(post.get_errors()) == ["title"]

    def test_missing_required_value(self, registry):
        post = Post()
        assert not post.validate()
        assert post.get_errors("title")

    def test_validate_selected_attributes(self, registry):
        post = Post(title="")
        assert post.validate(["status"])
        assert not post.has_errors()

    def test_skip_validation(self, registry):
        post = Post(title="")
        assert post.save(run_validation=False)
        assert not post.is_new_record

    def test_errors_cleared_on_next_validate(self, registry):
        post = Post(title="")
        post.validate()
        post.title = "Fixed"
        assert post.validate()
        assert post.get_errors() == {}


class TestHooks:
    """Tests for lifecycle events."""

    def test_before_save_can_cancel(self, registry, executor):
        post = Post(title="Cancelled")
        post.on("before_save", lambda event: setattr(event, "is_valid", False))

        assert post.save() is False

        assert executor.count == 0
        assert post.is_new_record

    def test_after_save_and_delete_run(self, registry):
        events: List[str] = []
        post = Post(title="Observed")
        post.on("after_save", lambda event: events.append(event.name))
        post.on("after_delete", lambda event: events.append(event.name))

        post.save()
        post.delete()

        assert events == ["after_save", "after_delete"]

    def test_before_delete_can_cancel(self, registry):
        post = Post.model().find_by_pk(1)
        post.on("before_delete", lambda event: setattr(event, "is_valid", False))

        assert post.delete() is False

        assert not post.is_deleted
        assert Post.model().exists("t.id=1")

    def test_handled_stops_remaining_handlers(self, registry):
        calls: List[str] = []

        def first(event):
            calls.append("first")
            event.handled = True

        post = Post(title="x")
        post.on("after_save", first)
        post.on("after_save", lambda event: calls.append("second"))
        post.save()

        assert calls == ["first"]

    def test_before_find_can_cancel(self, registry, executor):
        finder = Post.model().scope("published")
        finder.on("before_find", lambda event: setattr(event, "is_valid", False))

        assert finder.find_all() == []
        assert finder.find() is None
        assert executor.count == 0

    def test_after_find_override(self, registry):
        comments = AuditedComment.model().find_all()
        assert comments
        assert all(comment.loaded for comment in comments)


class TestRefreshAndPartialWrites:
    """Tests for refresh, save_attributes, save_counters and equals."""

    def test_refresh(self, registry):
        post = Post.model().find_by_pk(1)
        post.author
        Post.model().update_by_pk(1, {"title": "Changed"})

        assert post.refresh()

        assert post.title == "Changed"
        assert not post.has_related("author")

    def test_refresh_new_record(self, registry):
        assert Post(title="x").refresh() is False

    def test_refresh_deleted_row(self, registry):
        post = Post.model().find_by_pk(1)
        Post.model().delete_by_pk(1)
        assert post.refresh() is False

    def test_save_attributes_skips_hooks_and_validation(self, registry):
        post = Post.model().find_by_pk(1)
        post.on("before_save", lambda event: setattr(event, "is_valid", False))
        post.title = ""

        assert post.save_attributes({"views": 99})

        stored = Post.model().find_by_pk(1)
        assert stored.views == 99
        assert stored.title == "Hello"
        assert post.views == 99

    def test_save_attributes_by_name(self, registry):
        post = Post.model().find_by_pk(2)
        post.status = "draft"
        assert post.save_attributes(["status"])
        assert Post.model().find_by_pk(2).status == "draft"

    def test_save_attributes_new_record_fails(self, registry):
        with pytest.raises(LifecycleError):
            Post(title="x").save_attributes({"views": 1})

    def test_save_counters(self, registry):
        post = Post.model().find_by_pk(1)

        assert post.save_counters({"views": 2})

        assert post.views == 12
        assert Post.model().find_by_pk(1).views == 12

    def test_equals(self, registry):
        first = Post.model().find_by_pk(1)
        assert first.equals(Post.model().find_by_pk(1))
        assert not first.equals(Post.model().find_by_pk(2))
        assert not first.equals(User.model().find_by_pk(1))
        assert not first.equals(None)

    def test_primary_key_setter(self, registry):
        link = PostTag()
        link.primary_key = {"post_id": 2, "tag_id": 3}
        assert link.post_id == 2
        assert link.tag_id == 3


class TestPickling:
    """Records survive pickling with their loaded relations."""

    def test_round_trip_with_relations(self, registry):
        post = Post.model().with_("author", "comments").find_by_pk(1)

        restored = pickle.loads(pickle.dumps(post))

        assert restored.title == "Hello"
        assert restored.author.username == "alice"
        assert [comment.id for comment in restored.comments] == [1, 2]
        assert restored.get_metadata() is registry.get_metadata(Post)
        assert restored.state == RecordState.PERSISTED
        assert restored.old_primary_key == 1


class TestModelPrototype:
    """The shared model prototype only finds; it never holds or writes a row."""

    def test_writes_raise(self, registry, executor):
        prototype = Post.model()

        for write in (prototype.save, prototype.insert, prototype.update, prototype.delete, prototype.refresh):
            with pytest.raises(LifecycleError):
                write()
        with pytest.raises(LifecycleError):
            prototype.save_attributes({"title": "x"})
        with pytest.raises(LifecycleError):
            prototype.save_counters({"views": 1})

        assert executor.count == 0

    def test_attribute_writes_raise(self, registry):
        prototype = Post.model()

        with pytest.raises(LifecycleError):
            prototype.title = "leaked"
        with pytest.raises(LifecycleError):
            prototype["title"] = "leaked"
        with pytest.raises(LifecycleError):
            prototype.set_attributes({"title": "leaked"})
        with pytest.raises(LifecycleError):
            del prototype.title

        assert Post.model().title is None

    def test_relations_are_not_cached_on_prototype(self, registry):
        with pytest.raises(LifecycleError):
            Post.model().get_related("author")
        assert not Post.model().has_related("author")

    def test_chained_finder_cannot_be_saved(self, registry, executor):
        finder = Post.model().with_("author")

        with pytest.raises(LifecycleError):
            finder.save()
        assert executor.count == 0
        assert len(finder.find_all()) == 4

    def test_records_stay_writable(self, registry):
        post = Post.model().find_by_pk(1)
        post.title = "Edited"
        assert post.save()
        assert not post.is_read_only
        assert Post.model().is_read_only
