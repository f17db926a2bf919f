"""Entity classes of the blog schema used across the test suite."""

from typing import Optional

from pydantic import BaseModel, Field

from dynamic_record import DynamicRecord, belongs_to, has_many, has_one, many_many, stat


def _published(criteria):
    criteria.add_condition(f"{criteria.alias or 't'}.status='published'")


def _approved(criteria):
    criteria.add_condition(f"{criteria.alias or 't'}.approved=1")


def _recent(criteria, limit=2):
    criteria.order = f"{criteria.alias or 't'}.id DESC"
    criteria.limit = limit


class PostValidation(BaseModel):
    title: str = Field(min_length=1, max_length=128)
    status: str = "draft"


class User(DynamicRecord):
    __tablename__ = "users"

    @classmethod
    def relations(cls):
        return {
            "profile": has_one("Profile", "user_id"),
            "posts": has_many("Post", "author_id", order="posts.id"),
            "posts_by_title": has_many("Post", "author_id", index="title"),
            "post_count": stat("Post", "author_id"),
            "comments_on_posts": has_many("Comment", "post_id", through="posts", order="comments_on_posts.id"),
        }

    @classmethod
    def scopes(cls):
        return {"active": {"condition": "t.status=1"}}


class Profile(DynamicRecord):
    @classmethod
    def relations(cls):
        return {"user": belongs_to("User", "user_id")}


class Post(DynamicRecord):
    validation_model = PostValidation

    search_text: Optional[str] = None

    @classmethod
    def relations(cls):
        return {
            "author": belongs_to("User", "author_id"),
            "comments": has_many("Comment", "post_id", order="comments.id"),
            "approved_comments": has_many(
                "Comment", "post_id", condition="approved_comments.approved=1", order="approved_comments.id"
            ),
            "latest_comment": has_one("Comment", "post_id", order="latest_comment.id DESC"),
            "comment_count": stat("Comment", "post_id"),
            "approved_count": stat("Comment", "post_id", condition="approved_count.approved=1"),
            "tags": many_many("Tag", "post_tag(post_id, tag_id)", order="tags.name"),
        }

    @classmethod
    def scopes(cls):
        return {"published": _published, "recent": _recent}


class PublishedPost(Post):
    __tablename__ = "post"

    @classmethod
    def default_scope(cls):
        return _published


class Comment(DynamicRecord):
    @classmethod
    def relations(cls):
        return {
            "post": belongs_to("Post", "post_id"),
            "author": belongs_to("User", "author_id"),
        }

    @classmethod
    def scopes(cls):
        return {"approved": _approved}


class Tag(DynamicRecord):
    @classmethod
    def relations(cls):
        return {
            "posts": many_many("Post", "post_tag(tag_id, post_id)", order="posts.id"),
            "post_total": stat("Post", "post_tag(tag_id, post_id)"),
        }


class PostTag(DynamicRecord):
    __tablename__ = "post_tag"
