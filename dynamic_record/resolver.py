"""
Relation Resolver.

Loads related entities either lazily (one relation of one record, on first
access) or eagerly (every relation named in the criteria ``with`` spec, for all
records of a find call).

Eager loading builds a join tree rooted at the queried entity. Nodes are split
into *groups*, and every group runs as exactly one query:

- a BELONGS_TO or HAS_ONE child joins the query of its parent's group;
- a HAS_MANY, MANY_MANY or ``through`` child starts a new group, batched over
  all owner keys with an IN condition;
- ``together`` (on the criteria or on the relation) joins every non-STAT child
  into its parent's group;
- a STAT child always runs its own aggregate query.

Relation options ``limit``, ``offset``, ``group`` and ``having`` only apply on
the lazy path, where a query serves a single owner. STAT queries are the
exception: their ``group`` extends the per-owner GROUP BY, and ``having`` and
``order`` always apply.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Set, Tuple

import structlog

from .criteria import UNSET, QueryCriteria, merge_options, normalize_with
from .db.executor import Command
from .exceptions import InvalidRelationError, RelationNotFoundError
from .metadata import resolve_entity_class
from .relations import RelationDeclaration, RelationKind
from .scopes import apply_scopes

if TYPE_CHECKING:
    from .record import DynamicRecord

logger = structlog.get_logger()


@dataclass
class LinkSpec:
    """How the rows of a relation node match their owners.

    ``owner_columns`` are columns of the owner table; ``target_columns`` are
    qualified SQL expressions (on the target or on the bridge table) equal to
    them. ``bridge_on`` pairs join the bridge table to the target.
    """

    owner_columns: List[str]
    target_columns: List[str]
    bridge_table: Optional[str] = None
    bridge_alias: Optional[str] = None
    bridge_on: List[Tuple[str, str]] = field(default_factory=list)


def empty_value(relation: RelationDeclaration) -> Any:
    """The value a relation holds when no related rows exist."""
    if relation.is_stat:
        return relation.default_value
    if relation.is_collection:
        return {} if relation.index else []
    return None


class JoinNode:
    """One entity in the join tree: the queried root, or a relation of its parent node."""

    def __init__(
        self,
        node_id: int,
        model: "DynamicRecord",
        alias: str,
        relation: Optional[RelationDeclaration] = None,
        parent: Optional["JoinNode"] = None,
    ):
        self.id = node_id
        self.model = model
        self.metadata = model.get_metadata()
        self.table = self.metadata.table_schema
        self.alias = alias
        self.relation = relation
        self.parent = parent
        self.children: List[JoinNode] = []
        self.joined = False
        self.criteria = QueryCriteria(alias=alias)
        self.columns: List[str] = []
        self.records: Dict[Tuple[Any, ...], "DynamicRecord"] = {}
        self.link: Optional[LinkSpec] = None

    @property
    def entity_name(self) -> str:
        return type(self.model).__name__

    def key_of(self, record: "DynamicRecord", columns: Sequence[str]) -> Tuple[Any, ...]:
        return tuple(record.get_attribute(column) for column in columns)


class RelationResolver:
    """Plans and runs the queries that populate related objects."""

    def __init__(self, model: "DynamicRecord", with_spec: Any, alias: Optional[str] = None, lazy: bool = False):
        self.model = model
        self.handle = model.connection()
        self.builder = self.handle.command_builder
        self.executor = self.handle.executor
        self.lazy = lazy
        self.together: Optional[bool] = None
        self._node_count = 0
        self._found: List["DynamicRecord"] = []
        self._attached: Dict[Tuple[int, int], Set[Any]] = {}

        self.root = self._new_node(model, alias or model.get_table_alias())
        for name, options in normalize_with(with_spec).items():
            self._build(self.root, name, options, honor_relation_with=lazy)

    # Tree construction

    def _new_node(self, model, alias, relation=None, parent=None) -> JoinNode:
        node = JoinNode(self._node_count, model, alias, relation, parent)
        self._node_count += 1
        return node

    def _build(self, parent: JoinNode, name: str, options: Dict[str, Any], honor_relation_with: bool = False) -> JoinNode:
        relation = parent.metadata.relations.get(name)
        if relation is None:
            raise RelationNotFoundError(parent.entity_name, name)

        options = dict(options)
        nested = normalize_with(options.pop("with", None))
        if honor_relation_with and relation.with_:
            nested = normalize_with([relation.with_, nested]) if nested else normalize_with(relation.with_)
        if options:
            relation = relation.with_options(merge_options(relation.options(), options))

        target = resolve_entity_class(relation.target).model(
            self.model.connection_identity, registry=self.model.registry
        )
        node = self._new_node(target, relation.table_alias, relation, parent)
        node.criteria = self._relation_criteria(node)
        parent.children.append(node)

        if relation.is_stat and nested:
            raise InvalidRelationError(parent.entity_name, name, "a STAT relation cannot load nested relations")
        for child_name, child_options in nested.items():
            self._build(node, child_name, child_options)
        return node

    def _relation_criteria(self, node: JoinNode) -> QueryCriteria:
        """Relation options on top of the target's default scope and the relation scopes."""
        relation = node.relation
        criteria = QueryCriteria(
            condition=relation.condition,
            params=relation.params,
            select=relation.select if not relation.is_stat else "*",
            order=relation.order,
            group=relation.group,
            having=relation.having,
            limit=relation.limit,
            offset=relation.offset,
            alias=node.alias,
            scopes=relation.scopes,
        )
        return apply_scopes(criteria, node.metadata.scopes, node.model.default_criteria(node.alias))

    def _assign_groups(self, node: JoinNode, join_children: bool = True) -> None:
        for child in node.children:
            relation = child.relation
            if relation.is_stat or not join_children or relation.together is False:
                child.joined = False
            else:
                child.joined = bool(
                    self.together
                    or relation.together
                    or (relation.is_single and relation.through is None)
                )
            self._assign_groups(child)

    def _members(self, group_root: JoinNode) -> List[JoinNode]:
        members: List[JoinNode] = []

        def walk(node: JoinNode) -> None:
            for child in node.children:
                if child.joined:
                    members.append(child)
                    walk(child)

        walk(group_root)
        return members

    # Links

    def _key_pairs(self, owner: JoinNode, relation: RelationDeclaration, owner_table, target_table):
        fk = relation.foreign_key_columns()
        if relation.kind == RelationKind.BELONGS_TO:
            if isinstance(fk, dict):
                owner_columns, target_columns = list(fk), list(fk.values())
            else:
                owner_columns, target_columns = fk, list(target_table.primary_key)
            missing = [column for column in owner_columns if column not in owner_table.columns]
        else:
            if isinstance(fk, dict):
                target_columns, owner_columns = list(fk), list(fk.values())
            else:
                target_columns, owner_columns = fk, list(owner_table.primary_key)
            missing = [column for column in target_columns if column not in target_table.columns]

        if missing:
            raise InvalidRelationError(
                owner.entity_name, relation.name, f"the foreign key column(s) {', '.join(missing)} do not exist"
            )
        if not owner_columns or len(owner_columns) != len(target_columns):
            raise InvalidRelationError(
                owner.entity_name, relation.name, "the foreign key does not match the referenced primary key"
            )
        return owner_columns, target_columns

    def _qualified(self, alias: str, column: str) -> str:
        return f"{self.builder.quote_column_name(alias)}.{self.builder.quote_column_name(column)}"

    def _link(self, node: JoinNode) -> LinkSpec:
        if node.link is not None:
            return node.link

        relation, parent = node.relation, node.parent
        qualify = self._qualified

        if relation.through:
            bridge = parent.metadata.relations[relation.through]
            middle = resolve_entity_class(bridge.target).model(
                self.model.connection_identity, registry=self.model.registry
            ).get_metadata().table_schema
            bridge_alias = f"{node.alias}_{bridge.name}"
            owner_columns, middle_columns = self._key_pairs(parent, bridge, parent.table, middle)
            from_middle, to_target = self._key_pairs(parent, relation, middle, node.table)
            link = LinkSpec(
                owner_columns=owner_columns,
                target_columns=[qualify(bridge_alias, column) for column in middle_columns],
                bridge_table=middle.name,
                bridge_alias=bridge_alias,
                bridge_on=[
                    (qualify(bridge_alias, m), qualify(node.alias, t)) for m, t in zip(from_middle, to_target)
                ],
            )
        elif relation.kind == RelationKind.MANY_MANY or (
            relation.is_stat and isinstance(relation.foreign_key, str) and "(" in relation.foreign_key
        ):
            try:
                join_table, columns = relation.join_table()
            except ValueError as exc:
                raise InvalidRelationError(parent.entity_name, relation.name, str(exc)) from exc
            owner_pk, target_pk = list(parent.table.primary_key), list(node.table.primary_key)
            owner_fks, target_fks = columns[: len(owner_pk)], columns[len(owner_pk):]
            if len(owner_fks) != len(owner_pk) or len(target_fks) != len(target_pk):
                raise InvalidRelationError(
                    parent.entity_name, relation.name,
                    f"the join table columns of '{join_table}' do not match the primary keys",
                )
            bridge_alias = f"{node.alias}_{join_table.split('.')[-1]}"
            link = LinkSpec(
                owner_columns=owner_pk,
                target_columns=[qualify(bridge_alias, column) for column in owner_fks],
                bridge_table=join_table,
                bridge_alias=bridge_alias,
                bridge_on=[(qualify(bridge_alias, f), qualify(node.alias, p)) for f, p in zip(target_fks, target_pk)],
            )
        else:
            owner_columns, target_columns = self._key_pairs(parent, relation, parent.table, node.table)
            link = LinkSpec(owner_columns, [qualify(node.alias, column) for column in target_columns])

        node.link = link
        return link

    def _check_aliases(self, nodes: Sequence[JoinNode]) -> None:
        seen: Set[str] = set()
        for node in nodes:
            aliases = [node.alias]
            if node.relation is not None and (node.relation.through or node.relation.kind == RelationKind.MANY_MANY):
                aliases.append(self._link(node).bridge_alias)
            for alias in aliases:
                if alias in seen:
                    raise InvalidRelationError(
                        node.parent.entity_name if node.parent else node.entity_name,
                        node.relation.name if node.relation else alias,
                        f"the table alias '{alias}' is used more than once in the same query",
                    )
                seen.add(alias)

    # SQL

    def _column_alias(self, node: JoinNode, position: int) -> str:
        return f"t{node.id}_c{position}"

    def _select_columns(self, node: JoinNode, select: Any) -> List[str]:
        if not select or select == "*":
            return list(node.table.columns)
        if isinstance(select, str):
            select = select.split(",")
        columns = []
        for item in select:
            name = item.strip()
            if name.startswith(f"{node.alias}."):
                name = name[len(node.alias) + 1:]
            if name in node.table.columns and name not in columns:
                columns.append(name)
        for pk in reversed(node.table.primary_key):
            if pk not in columns:
                columns.insert(0, pk)
        return columns

    def _join_clause(self, node: JoinNode) -> str:
        b = self.builder
        link = self._link(node)
        parent = node.parent
        join_type = node.relation.join_type or self.model.settings.default_join_type
        extra = [f"({c})" for c in (node.relation.on, node.criteria.condition) if c]
        owner_on = [
            f"{b.quote_column_name(parent.alias)}.{b.quote_column_name(o)}={t}"
            for o, t in zip(link.owner_columns, link.target_columns)
        ]
        target = f"{b.quote_table_name(node.table.name)} {b.quote_column_name(node.alias)}"
        if link.bridge_table:
            bridge = f"{b.quote_table_name(link.bridge_table)} {b.quote_column_name(link.bridge_alias)}"
            target_on = [f"{m}={t}" for m, t in link.bridge_on] + extra
            return f"{join_type} {bridge} ON {' AND '.join(owner_on)} {join_type} {target} ON {' AND '.join(target_on)}"
        return f"{join_type} {target} ON {' AND '.join(owner_on + extra)}"

    def _group_command(
        self,
        group_root: JoinNode,
        criteria: QueryCriteria,
        link: Optional[LinkSpec] = None,
        count: bool = False,
    ) -> Command:
        """Build the single query of a group: the group root plus every joined member."""
        b = self.builder
        members = self._members(group_root)
        self._check_aliases([group_root] + members)

        selects: List[str] = []
        for node in [group_root] + members:
            select = criteria.select if node is group_root else node.criteria.select
            node.columns = self._select_columns(node, select)
            for position, column in enumerate(node.columns):
                selects.append(
                    f"{b.quote_column_name(node.alias)}.{b.quote_column_name(column)} "
                    f"AS {b.quote_column_name(self._column_alias(node, position))}"
                )
        if link is not None:
            for position, expression in enumerate(link.target_columns):
                selects.append(f"{expression} AS {b.quote_column_name(f'l{position}')}")

        sql = f" FROM {b.quote_table_name(group_root.table.name)} {b.quote_column_name(group_root.alias)}"
        if link is not None and link.bridge_table:
            bridge_on = " AND ".join(f"{m}={t}" for m, t in link.bridge_on)
            sql += (
                f" INNER JOIN {b.quote_table_name(link.bridge_table)} "
                f"{b.quote_column_name(link.bridge_alias)} ON {bridge_on}"
            )
        params = dict(criteria.params)
        orders = [criteria.order] if criteria.order else []
        for member in members:
            sql += f" {self._join_clause(member)}"
            params.update(member.criteria.params)
            if member.criteria.order:
                orders.append(member.criteria.order)
        if criteria.join:
            sql += f" {criteria.join}"
        if criteria.condition:
            sql += f" WHERE {criteria.condition}"

        if count:
            pk = group_root.table.primary_key
            if pk:
                keys = ", ".join(
                    f"{b.quote_column_name(group_root.alias)}.{b.quote_column_name(column)}" for column in pk
                )
                return Command(f"SELECT COUNT(*) FROM (SELECT DISTINCT {keys}{sql}) sq", params)
            return Command(f"SELECT COUNT(*){sql}", params)

        if criteria.group:
            sql += f" GROUP BY {criteria.group}"
        if criteria.having:
            sql += f" HAVING {criteria.having}"
        if orders:
            sql += f" ORDER BY {', '.join(orders)}"
        sql = b.apply_limit(sql, criteria.limit, criteria.offset)
        distinct = "DISTINCT " if criteria.distinct else ""
        return Command(f"SELECT {distinct}{', '.join(selects)}{sql}", params)

    # Row handling

    def _record_from_row(self, node: JoinNode, row: Dict[str, Any], position: int) -> Optional["DynamicRecord"]:
        values = {column: row[self._column_alias(node, i)] for i, column in enumerate(node.columns)}
        pk = node.table.primary_key
        if pk:
            key = tuple(values.get(column) for column in pk)
            if all(value is None for value in key):
                return None
        else:
            if all(value is None for value in values.values()):
                return None
            key = ("__row__", position)
        record = node.records.get(key)
        if record is None:
            record = node.model.populate_record(values, call_after_find=False)
            node.records[key] = record
            self._found.append(record)
        return record

    def _attach(self, owner: "DynamicRecord", node: JoinNode, record: Optional["DynamicRecord"]) -> None:
        relation = node.relation
        store = owner.attribute_store
        if relation.is_single:
            store.add_related_record(relation.name, record, False)
            return
        if record is None:
            if not store.has_related(relation.name):
                store.set_related(relation.name, empty_value(relation))
            return
        seen = self._attached.setdefault((id(owner), node.id), set())
        marker = id(record)
        if marker in seen:
            return
        seen.add(marker)
        index = record.get_attribute(relation.index) if relation.index else True
        store.add_related_record(relation.name, record, index)

    def _populate_group(
        self,
        group_root: JoinNode,
        rows: List[Dict[str, Any]],
        owners: Optional[Dict[Tuple[Any, ...], List["DynamicRecord"]]] = None,
        link: Optional[LinkSpec] = None,
    ) -> None:
        members = self._members(group_root)
        for position, row in enumerate(rows):
            record = self._record_from_row(group_root, row, position)
            if owners is not None and record is not None:
                key = tuple(row[f"l{i}"] for i in range(len(link.target_columns)))
                for owner in owners.get(key, ()):
                    self._attach(owner, group_root, record)
            row_records = {group_root.id: record}
            for member in members:
                owner = row_records.get(member.parent.id)
                child = self._record_from_row(member, row, position)
                row_records[member.id] = child
                if owner is not None:
                    self._attach(owner, member, child)

    def _owners_by_key(self, node: JoinNode, link: LinkSpec) -> Dict[Tuple[Any, ...], List["DynamicRecord"]]:
        owners: Dict[Tuple[Any, ...], List["DynamicRecord"]] = {}
        for owner in node.parent.records.values():
            key = node.key_of(owner, link.owner_columns)
            if any(value is None for value in key):
                continue
            owners.setdefault(key, []).append(owner)
        return owners

    # Execution

    def _run_group(self, node: JoinNode) -> None:
        link = self._link(node)
        owners = self._owners_by_key(node, link)
        if not owners:
            return

        criteria = node.criteria.copy()
        if not self.lazy:
            criteria.limit = criteria.offset = UNSET
            criteria.group = criteria.having = ""
        in_condition, in_params = self.builder.create_in_condition(link.target_columns, list(owners))
        criteria.condition = [in_condition] + criteria.conditions
        criteria.params.update(in_params)

        command = self._group_command(node, criteria, link)
        rows = self.executor.query_all(command)
        logger.debug("relation_group_loaded", relation=node.relation.name, owners=len(owners), rows=len(rows))
        self._populate_group(node, rows, owners, link)

    def _run_stat(self, node: JoinNode) -> None:
        b = self.builder
        link = self._link(node)
        owners = self._owners_by_key(node, link)
        if not owners:
            return

        criteria = node.criteria.copy()
        in_condition, in_params = b.create_in_condition(link.target_columns, list(owners))
        criteria.condition = [in_condition] + criteria.conditions
        criteria.params.update(in_params)

        keys = ", ".join(link.target_columns)
        selects = [f"{expression} AS {b.quote_column_name(f'l{i}')}" for i, expression in enumerate(link.target_columns)]
        sql = (
            f"SELECT {', '.join(selects)}, {node.relation.select} AS {b.quote_column_name('s')}"
            f" FROM {b.quote_table_name(node.table.name)} {b.quote_column_name(node.alias)}"
        )
        if link.bridge_table:
            bridge_on = " AND ".join(f"{m}={t}" for m, t in link.bridge_on)
            sql += (
                f" INNER JOIN {b.quote_table_name(link.bridge_table)} "
                f"{b.quote_column_name(link.bridge_alias)} ON {bridge_on}"
            )
        if criteria.join:
            sql += f" {criteria.join}"
        sql += f" WHERE {criteria.condition} GROUP BY {keys}"
        if criteria.group:
            sql += f", {criteria.group}"
        if criteria.having:
            sql += f" HAVING {criteria.having}"
        if criteria.order:
            sql += f" ORDER BY {criteria.order}"

        rows = self.executor.query_all(Command(sql, criteria.params))
        for row in rows:
            key = tuple(row[f"l{i}"] for i in range(len(link.target_columns)))
            value = row["s"]
            for owner in owners.get(key, ()):
                owner.attribute_store.set_related(node.relation.name, value)

    def _run_children(self, node: JoinNode) -> None:
        for child in node.children:
            if child.relation.is_stat:
                self._run_stat(child)
            elif not child.joined:
                self._run_group(child)
            self._run_children(child)

    def _apply_defaults(self, node: JoinNode) -> None:
        for child in node.children:
            for owner in node.records.values():
                if not owner.has_related(child.relation.name):
                    owner.attribute_store.set_related(child.relation.name, empty_value(child.relation))
            self._apply_defaults(child)

    def _finish(self) -> None:
        self._apply_defaults(self.root)
        for record in self._found:
            record.after_find()

    # Entry points

    def query(self, criteria: QueryCriteria, all_: bool = False) -> List["DynamicRecord"]:
        """Run an eager find: the root group query, then every child group."""
        self.together = criteria.together
        self._assign_groups(self.root)
        root_criteria = criteria.copy()
        root_criteria.alias = self.root.alias
        if not all_ and not any(member.relation.is_collection for member in self._members(self.root)):
            root_criteria.limit = 1

        command = self._group_command(self.root, root_criteria)
        rows = self.executor.query_all(command)
        self._populate_group(self.root, rows)
        if not self.root.records:
            return []

        if not all_:
            first_key = next(iter(self.root.records))
            self.root.records = {first_key: self.root.records[first_key]}
        self._run_children(self.root)
        self._finish()
        return list(self.root.records.values())

    def count(self, criteria: QueryCriteria) -> int:
        """
        Count distinct root rows matching criteria that may reference relations.

        Every non-STAT relation is joined into the single count query unless it
        is declared with ``together=False``.
        """
        self.together = True
        self._assign_groups(self.root)
        root_criteria = criteria.copy()
        root_criteria.alias = self.root.alias
        return int(self.executor.query_scalar(self._group_command(self.root, root_criteria, count=True)) or 0)

    def populate(self, records: Sequence["DynamicRecord"]) -> None:
        """Load the relations of records that were already fetched (lazy path, raw SQL finds)."""
        for record in records:
            key = self.root.key_of(record, self.root.table.primary_key) if self.root.table.primary_key else (id(record),)
            self.root.records[key] = record
        self._assign_groups(self.root, join_children=False)
        for child in self.root.children:
            for record in records:
                record.attribute_store.discard_related(child.relation.name)
        if self.lazy:
            for child in self.root.children:
                logger.debug("lazy_loading", entity=self.root.entity_name, relation=child.relation.name)
        self._run_children(self.root)
        self._finish()
