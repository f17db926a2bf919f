"""
Relation declarations.

Entity classes return a mapping of relation name to :class:`RelationDeclaration`
from ``relations()``. Declarations are validated when metadata is built, so a
malformed relation fails at that point instead of deep inside a query.

Example:
    @classmethod
    def relations(cls):
        return {
            "author": belongs_to("User", "author_id"),
            "comments": has_many("Comment", "post_id", order="comments.create_time DESC"),
            "tags": many_many("Tag", "post_tag(post_id, tag_id)", order="tags.name"),
            "comment_count": stat("Comment", "post_id"),
        }
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

_JOIN_TABLE_PATTERN = re.compile(r"^\s*([\w.\"`\[\]]+)\s*\((.*)\)\s*$")


class RelationKind(str, Enum):
    """Cardinality and join strategy of a relation."""

    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    MANY_MANY = "many_many"
    STAT = "stat"


SINGLE_KINDS = (RelationKind.BELONGS_TO, RelationKind.HAS_ONE)
COLLECTION_KINDS = (RelationKind.HAS_MANY, RelationKind.MANY_MANY)


class RelationDeclaration(BaseModel):
    """A declared association between two entity classes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

    kind: RelationKind
    target: Any = Field(description="Entity class, or the name it was registered under")
    foreign_key: Union[str, List[str], Dict[str, str]]
    name: str = ""

    select: Union[str, List[str]] = "*"
    condition: str = ""
    order: str = ""
    group: str = ""
    having: str = ""
    limit: int = -1
    offset: int = -1
    join_type: Optional[str] = None
    alias: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    on: str = ""
    index: Optional[str] = None
    with_: Any = Field(default=None, alias="with")
    through: Optional[str] = None
    scopes: Any = None
    together: Optional[bool] = None
    default_value: Any = None

    @model_validator(mode="after")
    def check_options(self) -> "RelationDeclaration":
        """Reject options that do not apply to the relation kind."""
        if self.index is not None and self.kind not in COLLECTION_KINDS:
            raise ValueError(f"the 'index' option is only allowed for HAS_MANY and MANY_MANY, not {self.kind.name}")
        if self.through is not None and self.kind not in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
            raise ValueError(f"the 'through' option is only allowed for HAS_ONE and HAS_MANY, not {self.kind.name}")
        if self.kind == RelationKind.MANY_MANY:
            self.join_table()
        elif not self.foreign_key:
            raise ValueError("a foreign key is required")
        if self.kind == RelationKind.STAT:
            if self.select == "*":
                object.__setattr__(self, "select", "COUNT(*)")
            if self.default_value is None:
                object.__setattr__(self, "default_value", 0)
        return self

    @property
    def is_single(self) -> bool:
        return self.kind in SINGLE_KINDS

    @property
    def is_collection(self) -> bool:
        return self.kind in COLLECTION_KINDS

    @property
    def is_stat(self) -> bool:
        return self.kind == RelationKind.STAT

    @property
    def table_alias(self) -> str:
        return self.alias or self.name

    def foreign_key_columns(self) -> Union[List[str], Dict[str, str]]:
        """Foreign key as a column list, or as an explicit ``{fk: pk}`` map."""
        if isinstance(self.foreign_key, dict):
            return dict(self.foreign_key)
        if isinstance(self.foreign_key, str):
            return [column.strip() for column in self.foreign_key.split(",") if column.strip()]
        return list(self.foreign_key)

    def join_table(self) -> Tuple[str, List[str]]:
        """Split a MANY_MANY foreign key ``join_table(fk1, fk2)`` into its parts."""
        if not isinstance(self.foreign_key, str):
            raise ValueError("a MANY_MANY foreign key must be given as 'join_table(fk1, fk2)'")
        match = _JOIN_TABLE_PATTERN.match(self.foreign_key)
        if not match:
            raise ValueError("a MANY_MANY foreign key must be given as 'join_table(fk1, fk2)'")
        columns = [column.strip() for column in match.group(2).split(",") if column.strip()]
        if len(columns) < 2:
            raise ValueError("a MANY_MANY join table must name at least two columns")
        return match.group(1), columns

    def options(self) -> Dict[str, Any]:
        """The query options as a criteria-style option bag."""
        values = {
            "select": self.select,
            "condition": self.condition,
            "order": self.order,
            "group": self.group,
            "having": self.having,
            "limit": self.limit,
            "offset": self.offset,
            "join_type": self.join_type,
            "alias": self.alias,
            "params": dict(self.params),
            "on": self.on,
            "index": self.index,
            "with": self.with_,
            "scopes": self.scopes,
            "together": self.together,
        }
        return {key: value for key, value in values.items() if value not in (None, "", {}, [])}

    def with_options(self, options: Dict[str, Any]) -> "RelationDeclaration":
        """Return a copy with query options overridden (already merged by the caller)."""
        update = {("with_" if key == "with" else key): value for key, value in options.items()}
        return self.model_copy(update=update)


def _declare(kind: RelationKind, target: Any, foreign_key: Any, options: Dict[str, Any]) -> RelationDeclaration:
    return RelationDeclaration(kind=kind, target=target, foreign_key=foreign_key, **options)


def belongs_to(target: Any, foreign_key: Any, **options: Any) -> RelationDeclaration:
    """The foreign key lives on the owner, e.g. a post belongs to its author."""
    return _declare(RelationKind.BELONGS_TO, target, foreign_key, options)


def has_one(target: Any, foreign_key: Any, **options: Any) -> RelationDeclaration:
    """The foreign key lives on the single related row, e.g. a user has one profile."""
    return _declare(RelationKind.HAS_ONE, target, foreign_key, options)


def has_many(target: Any, foreign_key: Any, **options: Any) -> RelationDeclaration:
    """The foreign key lives on the related rows, e.g. a post has many comments."""
    return _declare(RelationKind.HAS_MANY, target, foreign_key, options)


def many_many(target: Any, foreign_key: str, **options: Any) -> RelationDeclaration:
    """Related through a join table, declared as ``"join_table(owner_fk, target_fk)"``."""
    return _declare(RelationKind.MANY_MANY, target, foreign_key, options)


def stat(target: Any, foreign_key: Any, **options: Any) -> RelationDeclaration:
    """Aggregate over related rows; ``select`` defaults to ``COUNT(*)``."""
    return _declare(RelationKind.STAT, target, foreign_key, options)
