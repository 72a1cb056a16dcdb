"""
Aliased table tree used to build SELECT statements.

A QueryTable is created per query build and discarded once its SQL has
been generated. Tables joined below the root share the root's alias
counter, so every table in one tree gets a distinct ``t<n>`` alias in
the order it was created.
"""

from dataclasses import dataclass
from itertools import count
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import and_, column, delete, select, table
from sqlalchemy.sql import Select

from models.base import JoinType


@dataclass
class FieldDescriptor:
    """Where a result column came from: alias, table, column and relation path from the root"""

    alias: str
    table_name: str
    column_name: str
    ref_path: str = ""

    @property
    def label(self) -> str:
        return f"{self.alias}.{self.column_name}"


@dataclass
class Join:
    table: "QueryTable"
    parent_column: str
    join_column: str
    join_type: JoinType = JoinType.LEFT


def plain_table(table_name: str, column_names: List[str]):
    """Unaliased table construct for INSERT, UPDATE and DELETE statements"""
    return table(table_name, *(column(name) for name in dict.fromkeys(column_names)))


class QueryTable:
    """
    One table in a query tree.

    Columns are selected with labels of the form ``"t0.name"`` so the
    hydrator can map each value back to its alias.
    """

    def __init__(
        self,
        table_name: str,
        column_names: List[str],
        alias: Optional[str] = None,
        counter: Optional[Iterator[int]] = None,
        ref_path: str = "",
    ):
        self._counter = counter if counter is not None else count()
        self.alias = alias if alias is not None else f"t{next(self._counter)}"
        self.table_name = table_name
        self.ref_path = ref_path
        self.sql_table = plain_table(table_name, column_names).alias(self.alias)

        self.columns: List[str] = []
        self.joins: List[Join] = []
        self.wheres: List[Any] = []
        self.multitenancy_where = None
        self.order_by: List[Any] = []

    def __repr__(self) -> str:
        return f"QueryTable({self.table_name!r} AS {self.alias})"

    def new_table(self, table_name: str, column_names: List[str], ref_path: str = "") -> "QueryTable":
        """Create a table for joining into this tree, taking the next alias"""
        return QueryTable(table_name, column_names, counter=self._counter, ref_path=ref_path)

    def column(self, name: str):
        return self.sql_table.c[name]

    def add_column(self, name: str) -> None:
        if name not in self.columns:
            self.columns.append(name)

    def add_where(self, name: str, value: Any) -> None:
        """Equality predicate, or IN when given a list of values"""
        if isinstance(value, (list, tuple, set)):
            self.wheres.append(self.column(name).in_(list(value)))
        else:
            self.wheres.append(self.column(name) == value)

    def add_where_clause(self, clause: Any) -> None:
        if clause is not None:
            self.wheres.append(clause)

    def add_multitenancy_where(self, name: str, value: Any) -> None:
        self.multitenancy_where = self.column(name) == value

    def add_order_by(self, name: str, descending: bool = False) -> None:
        col = self.column(name)
        self.order_by.append(col.desc() if descending else col.asc())

    def append_join(
        self,
        joined: "QueryTable",
        parent_column: str,
        join_column: str,
        join_type: JoinType = JoinType.LEFT,
    ) -> None:
        self.joins.append(Join(joined, parent_column, join_column, join_type))

    def tables(self) -> Iterator["QueryTable"]:
        """This table and every joined table, depth first"""
        yield self
        for join in self.joins:
            yield from join.table.tables()

    def field_aliases(self) -> Dict[str, FieldDescriptor]:
        """Result label -> FieldDescriptor for every selected column in the tree"""
        aliases = {}
        for tbl in self.tables():
            for name in tbl.columns:
                descriptor = FieldDescriptor(tbl.alias, tbl.table_name, name, tbl.ref_path)
                aliases[descriptor.label] = descriptor
        return aliases

    def _from_clause(self):
        from_clause = self.sql_table
        for parent, join in self._walk_joins():
            onclause = join.table.column(join.join_column) == parent.column(join.parent_column)
            if join.table.multitenancy_where is not None:
                onclause = and_(onclause, join.table.multitenancy_where)
            from_clause = from_clause.join(
                join.table.sql_table,
                onclause,
                isouter=join.join_type == JoinType.LEFT,
            )
        return from_clause

    def _walk_joins(self) -> Iterator[Tuple["QueryTable", Join]]:
        for join in self.joins:
            yield self, join
            yield from join.table._walk_joins()

    def build_sql(self) -> Select:
        """
        SELECT for the whole tree.

        The root's tenant predicate goes into WHERE; joined tables carry
        theirs in the ON clause so a missing relation still yields the row.
        """
        selected = [
            tbl.column(name).label(f"{tbl.alias}.{name}")
            for tbl in self.tables()
            for name in tbl.columns
        ]
        stmt = select(*selected).select_from(self._from_clause())

        wheres = []
        if self.multitenancy_where is not None:
            wheres.append(self.multitenancy_where)
        for tbl in self.tables():
            wheres.extend(tbl.wheres)
        if wheres:
            stmt = stmt.where(*wheres)

        order_by = [clause for tbl in self.tables() for clause in tbl.order_by]
        if order_by:
            stmt = stmt.order_by(*order_by)
        return stmt


def delete_statement(table_name: str, column_names: List[str], predicates: Dict[str, Any]):
    """DELETE with equality (or IN for lists) predicates on an unaliased table"""
    target = plain_table(table_name, column_names + list(predicates))
    clauses = []
    for name, value in predicates.items():
        if isinstance(value, (list, tuple, set)):
            clauses.append(target.c[name].in_(list(value)))
        else:
            clauses.append(target.c[name] == value)
    return delete(target).where(*clauses)
