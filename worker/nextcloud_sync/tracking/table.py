"""Database tables that track pending writes to Nextcloud.

Each row pairs local ids with remote ids, mirrors the remote-side values, and
carries one pending operation flag. Rows flagged INSERT have no remote
counterpart yet; every other row stands for a remote object that exists or
existed.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from nextcloud_sync import db
from nextcloud_sync.runtime_logger import emit
from nextcloud_sync.tracking.op import Op, WRITE_OPS


@dataclass(frozen=True)
class Column:
    name: str
    sql_type: str
    nullable: bool = False
    # Filled from the submit result, e.g. ids generated by Nextcloud.
    remote_assigned: bool = False


@dataclass
class TrackingTableRelationship:
    """Link from a dependent tracking table to the table it depends on.

    auto_delete is True when Nextcloud removes the dependent objects along
    with the source object, and False when they have to be removed first.
    """

    source: "TrackingTable"
    join_keys: Dict[str, str]
    source_fields: tuple = ()
    auto_delete: bool = True


class TrackingTable:
    def __init__(
        self,
        table_name: str,
        local_key: Iterable[Column],
        remote_key: Iterable[Column] = (),
        data_fields: Iterable[Column] = (),
        relationships: Optional[Mapping[str, TrackingTableRelationship]] = None,
        connect: Optional[Callable[[], Any]] = None,
    ):
        self._table_name = db.validate_identifier(table_name)
        self._local_key = list(local_key)
        self._remote_key = list(remote_key)
        self._data_fields = list(data_fields)
        self._relationships = dict(relationships or {})
        self._connect = connect or db.get_conn

        if not self._local_key:
            raise ValueError(f"Tracking table {table_name} needs at least one local key column.")
        names = [col.name for col in self._all_columns()]
        for name in names:
            db.validate_identifier(name)
        if len(set(names)) != len(names) or "pending_operation" in names:
            raise ValueError(f"Duplicate or reserved column names in {table_name}: {names}")
        for col in self._local_key + self._remote_key:
            if col.nullable or col.remote_assigned:
                raise ValueError(f"Key column {table_name}.{col.name} must be non-null and locally assigned.")
        self._validate_relationships()

    def _all_columns(self) -> list[Column]:
        return self._local_key + self._remote_key + self._data_fields

    def _validate_relationships(self):
        joined: set[str] = set()
        own = set(self.get_columns())
        for alias, relationship in self._relationships.items():
            db.validate_identifier(alias)
            if alias == "t":
                raise ValueError("Relationship alias 't' is reserved for the tracking table itself.")
            source_columns = set(relationship.source.get_columns())
            for local_col, source_col in relationship.join_keys.items():
                if local_col not in self.get_primary_key():
                    raise ValueError(f"Join key {self._table_name}.{local_col} must be part of the primary key.")
                if local_col not in own or source_col not in source_columns:
                    raise ValueError(
                        f"Bad join key {local_col}={source_col} from {self._table_name} "
                        f"to {relationship.source.get_table_name()}."
                    )
            if not relationship.join_keys:
                raise ValueError(f"Relationship '{alias}' of {self._table_name} has no join keys.")
            for source_field in relationship.source_fields:
                if source_field not in source_columns:
                    raise ValueError(f"Unknown source field {source_field} in relationship '{alias}'.")
                if source_field in own or source_field in joined:
                    raise ValueError(f"Source field {source_field} in relationship '{alias}' shadows another field.")
                joined.add(source_field)

    def get_table_name(self) -> str:
        return self._table_name

    def get_primary_key(self) -> list[str]:
        return [col.name for col in self._local_key + self._remote_key]

    def get_columns(self) -> list[str]:
        return [col.name for col in self._all_columns()]

    def get_data_field_names(self) -> list[str]:
        return [col.name for col in self._data_fields]

    def get_relationships(self) -> Dict[str, TrackingTableRelationship]:
        return dict(self._relationships)

    def get_depth(self, _path: tuple = ()) -> int:
        """Number of dependency levels below this table."""
        if self._table_name in _path:
            chain = " -> ".join((*_path, self._table_name))
            raise ValueError(f"Cyclic tracking table relationships: {chain}")
        path = (*_path, self._table_name)
        return max((rel.source.get_depth(path) + 1 for rel in self._relationships.values()), default=0)

    def add_relationship(self, alias: str, relationship: TrackingTableRelationship) -> "TrackingTable":
        self._relationships[alias] = relationship
        try:
            self._validate_relationships()
            self.get_depth()
        except ValueError:
            del self._relationships[alias]
            raise
        return self

    def create_table_sql(self) -> str:
        return self.get_schema_statements()[0]

    def get_schema_statements(self) -> list[str]:
        lines = []
        for col in self._all_columns():
            lines.append(f"{col.name} {col.sql_type}" + ("" if col.nullable else " NOT NULL"))
        lines.append(f"pending_operation SMALLINT NOT NULL DEFAULT {int(Op.UNCHANGED)}")
        lines.append(f"PRIMARY KEY ({', '.join(self.get_primary_key())})")
        body = ",\n  ".join(lines)
        return [
            f"CREATE TABLE IF NOT EXISTS {self._table_name} (\n  {body}\n)",
            f"CREATE INDEX IF NOT EXISTS {self._table_name}_pending_operation "
            f"ON {self._table_name} (pending_operation)",
        ]

    def queue_write(self, values: Mapping[str, Any]) -> None:
        """Sets the values that _should_ be in Nextcloud."""
        values = dict(values)
        # Calling code never sets the flag directly.
        values.pop("pending_operation", None)
        key_clauses, key_params = self._key_filter(values)
        primary_key = set(self.get_primary_key())
        data_values = {k: v for k, v in values.items() if k not in primary_key}
        unknown = set(data_values) - set(self.get_data_field_names())
        if unknown:
            raise ValueError(f"Unknown fields for {self._table_name}: {sorted(unknown)}")
        if not self._data_fields and data_values:
            raise ValueError("Values to update must be empty on a table without data fields.")
        if self._data_fields and not data_values:
            raise ValueError("Values to update must not be empty on a table with data fields.")

        where = " AND ".join(key_clauses)
        with db.transaction(self._connect) as conn:
            cur = conn.cursor()
            if self._remote_key:
                self._queue_remote_key_change(cur, values)

            if not data_values:
                cur.execute(
                    f"UPDATE {self._table_name} SET pending_operation = %s "
                    f"WHERE {where} AND pending_operation = %s",
                    [int(Op.UNCHANGED), *key_params, int(Op.DELETE)],
                )
                if cur.rowcount:
                    return
                if self._count(cur, where, key_params):
                    return
            else:
                assignments = ", ".join(f"{name} = %s" for name in data_values)
                data_params = list(data_values.values())

                # Pending insert or update: just refresh the values.
                cur.execute(
                    f"UPDATE {self._table_name} SET {assignments} "
                    f"WHERE {where} AND pending_operation IN (%s, %s)",
                    [*data_params, *key_params, *map(int, WRITE_OPS)],
                )
                if cur.rowcount:
                    return

                changed_clause, changed_params = self._changed_filter(data_values)
                cur.execute(
                    f"UPDATE {self._table_name} SET pending_operation = %s, {assignments} "
                    f"WHERE {where} AND pending_operation = %s AND ({changed_clause})",
                    [int(Op.UPDATE), *data_params, *key_params, int(Op.UNCHANGED), *changed_params],
                )
                if cur.rowcount:
                    return
                if self._count(cur, f"{where} AND pending_operation = %s", [*key_params, int(Op.UNCHANGED)]):
                    # Already synced with identical values.
                    return

                # The remote object still exists, so the delete turns into an update.
                cur.execute(
                    f"UPDATE {self._table_name} SET pending_operation = %s, {assignments} "
                    f"WHERE {where} AND pending_operation = %s",
                    [int(Op.UPDATE), *data_params, *key_params, int(Op.DELETE)],
                )
                if cur.rowcount:
                    return

            columns = list(values)
            placeholders = ", ".join(["%s"] * (len(columns) + 1))
            cur.execute(
                f"INSERT INTO {self._table_name} ({', '.join(columns)}, pending_operation) "
                f"VALUES ({placeholders})",
                [*values.values(), int(Op.INSERT)],
            )

    def _queue_remote_key_change(self, cur, values: Mapping[str, Any]):
        clauses, params = self._key_filter(values, remote_comparator="!=")
        where = " AND ".join(clauses)
        # Never created remotely, can be forgotten.
        cur.execute(
            f"DELETE FROM {self._table_name} WHERE {where} AND pending_operation = %s",
            [*params, int(Op.INSERT)],
        )
        cur.execute(
            f"UPDATE {self._table_name} SET pending_operation = %s "
            f"WHERE {where} AND pending_operation != %s",
            [int(Op.DELETE), *params, int(Op.DELETE)],
        )
        if cur.rowcount:
            emit(
                "INFO",
                "TRACKING",
                f"Remote key changed, old records queued for delete: table={self._table_name} rows={cur.rowcount}",
            )

    def queue_delete(self, condition: Mapping[str, Any]) -> None:
        """Marks the records matching a partial primary key for deletion."""
        clauses, params = self._partial_filter(condition)
        where = " AND ".join(clauses)
        with db.transaction(self._connect) as conn:
            cur = conn.cursor()
            cur.execute(
                f"DELETE FROM {self._table_name} WHERE {where} AND pending_operation = %s",
                [*params, int(Op.INSERT)],
            )
            cur.execute(
                f"UPDATE {self._table_name} SET pending_operation = %s "
                f"WHERE {where} AND pending_operation != %s",
                [int(Op.DELETE), *params, int(Op.DELETE)],
            )

    def mark_applied(self, record: Mapping[str, Any], op: Op, values: Optional[Mapping[str, Any]] = None) -> None:
        if op == Op.DELETE:
            self.report_remote_absence(record)
        elif op in WRITE_OPS:
            self.report_remote_values(record, values if values is not None else record)
        else:
            raise ValueError(f"Unexpected operation {op!r}.")

    def report_remote_values(self, record: Mapping[str, Any], values: Mapping[str, Any]) -> None:
        """Reports that a record was written to Nextcloud and is now synced."""
        clauses, params = self._key_filter(record)
        data_names = set(self.get_data_field_names())
        to_store = {k: v for k, v in values.items() if k in data_names}
        assignments = "".join(f", {name} = %s" for name in to_store)
        with db.transaction(self._connect) as conn:
            cur = conn.cursor()
            cur.execute(
                f"UPDATE {self._table_name} SET pending_operation = %s{assignments} "
                f"WHERE {' AND '.join(clauses)} AND pending_operation IN (%s, %s)",
                [int(Op.UNCHANGED), *to_store.values(), *params, *map(int, WRITE_OPS)],
            )
            if not cur.rowcount:
                raise RuntimeError(
                    f"The record that was supposedly synced was not found: table={self._table_name} "
                    f"key={self._describe_key(record)}"
                )

    def report_remote_absence(self, condition: Mapping[str, Any]) -> None:
        """Reports that a range of objects no longer exist in Nextcloud."""
        clauses, params = self._partial_filter(condition)
        where = " AND ".join(clauses)
        resets = "".join(f", {col.name} = NULL" for col in self._data_fields if col.remote_assigned)
        with db.transaction(self._connect) as conn:
            cur = conn.cursor()
            cur.execute(
                f"DELETE FROM {self._table_name} WHERE {where} AND pending_operation = %s",
                [*params, int(Op.DELETE)],
            )
            # Still wanted, so it has to be created again.
            cur.execute(
                f"UPDATE {self._table_name} SET pending_operation = %s{resets} "
                f"WHERE {where} AND pending_operation IN (%s, %s)",
                [int(Op.INSERT), *params, int(Op.UNCHANGED), int(Op.UPDATE)],
            )

    def select(
        self,
        alias: str = "t",
        relationships: Optional[Mapping[str, TrackingTableRelationship]] = None,
        require_relationships: bool = True,
    ) -> tuple[str, list]:
        db.validate_identifier(alias)
        relationships = relationships or {}
        fields = [f"{alias}.{name} AS {name}" for name in self.get_columns()]
        fields.append(f"{alias}.pending_operation AS pending_operation")
        joins = []
        params: list = []
        join_type = "INNER" if require_relationships else "LEFT"
        for source_alias, relationship in relationships.items():
            conditions = [
                f"{alias}.{local_col} = {source_alias}.{source_col}"
                for local_col, source_col in relationship.join_keys.items()
            ]
            # Parents that were never created do not count.
            conditions.append(f"{source_alias}.pending_operation != %s")
            params.append(int(Op.INSERT))
            joins.append(
                f"{join_type} JOIN {relationship.source.get_table_name()} {source_alias} "
                f"ON {' AND '.join(conditions)}"
            )
            fields.extend(f"{source_alias}.{name} AS {name}" for name in relationship.source_fields)
        query = f"SELECT {', '.join(fields)} FROM {self._table_name} {alias}"
        if joins:
            query += " " + " ".join(joins)
        return query, params

    def select_current(
        self,
        alias: str = "t",
        relationships: Optional[Mapping[str, TrackingTableRelationship]] = None,
    ) -> tuple[str, list]:
        query, params = self.select(alias, relationships)
        return f"{query} WHERE {alias}.pending_operation != %s", [*params, int(Op.INSERT)]

    def fetch_current(self, **condition) -> list[dict]:
        query, params = self.select_current()
        for name, value in condition.items():
            if name not in self.get_columns():
                raise ValueError(f"Unknown column {self._table_name}.{name}")
            query += f" AND t.{name} = %s"
            params.append(value)
        query += f" ORDER BY {', '.join('t.' + name for name in self.get_primary_key())}"
        return self.fetch_all(query, params)

    def select_pending(
        self,
        ops: Iterable[Op],
        extra_where: str = "",
        extra_params: Iterable[Any] = (),
        join_parents: bool = True,
    ) -> tuple[str, list]:
        """Selects rows waiting for one of `ops`.

        With `join_parents`, rows whose parent objects are not created yet are
        left out, and the parent fields are joined in.
        """
        ops = [int(op) for op in ops]
        query, params = self.select("t", self._relationships if join_parents else None)
        placeholders = ", ".join(["%s"] * len(ops))
        query += f" WHERE t.pending_operation IN ({placeholders})"
        params.extend(ops)
        if extra_where:
            query += f" AND {extra_where}"
            params.extend(extra_params)
        return query, params

    def fetch_pending(self, ops: Iterable[Op], extra_where: str = "", extra_params: Iterable[Any] = ()) -> list[dict]:
        query, params = self.select_pending(ops, extra_where, extra_params)
        query += f" ORDER BY {', '.join('t.' + name for name in self.get_primary_key())}"
        return self.fetch_all(query, params)

    def count_pending(self, ops: Iterable[Op], extra_where: str = "", extra_params: Iterable[Any] = ()) -> int:
        # Rows still waiting for a parent count as pending too.
        query, params = self.select_pending(ops, extra_where, extra_params, join_parents=False)
        return self.count_query(query, params)

    def select_orphaned_dependent_key_combos(self, relationship: TrackingTableRelationship) -> tuple[str, list]:
        local_cols = list(relationship.join_keys)
        fields = ", ".join(f"t.{name} AS {name}" for name in local_cols)
        conditions = " AND ".join(
            f"t.{local_col} = s.{source_col}" for local_col, source_col in relationship.join_keys.items()
        )
        query = (
            f"SELECT DISTINCT {fields} FROM {self._table_name} t "
            f"WHERE t.pending_operation != %s AND NOT EXISTS ("
            f"SELECT 1 FROM {relationship.source.get_table_name()} s WHERE {conditions})"
        )
        return query, [int(Op.INSERT)]

    def fetch_orphaned_dependent_key_combos(self, relationship: TrackingTableRelationship) -> list[dict]:
        query, params = self.select_orphaned_dependent_key_combos(relationship)
        return self.fetch_all(query, params)

    def count_orphaned_dependent_key_combos(self, relationship: TrackingTableRelationship) -> int:
        query, params = self.select_orphaned_dependent_key_combos(relationship)
        return self.count_query(query, params)

    def count_tracked_remote_objects(self) -> int:
        query, params = self.select_current()
        return self.count_query(query, params)

    def select_obsolete_dependent_records(
        self,
        alias: str,
        relationships: Optional[Mapping[str, TrackingTableRelationship]] = None,
    ) -> tuple[str, list]:
        """Existing remote objects whose source record in relationship `alias` is about to be deleted."""
        if relationships is None:
            relationships = self._relationships
        if alias not in relationships:
            raise ValueError(f"Unknown relationship '{alias}' for {self._table_name}.")
        query, params = self.select("t", relationships)
        query += f" WHERE {alias}.pending_operation = %s AND t.pending_operation != %s"
        return query, [*params, int(Op.DELETE), int(Op.INSERT)]

    def fetch_all(self, query: str, params: list) -> list[dict]:
        with db.transaction(self._connect) as conn:
            cur = conn.cursor()
            cur.execute(query, params)
            return db.rows_as_dicts(cur)

    def count_query(self, query: str, params: list) -> int:
        with db.transaction(self._connect) as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT COUNT(*) FROM ({query}) counted", params)
            return int(cur.fetchone()[0])

    def _count(self, cur, where: str, params: list) -> int:
        cur.execute(f"SELECT COUNT(*) FROM {self._table_name} WHERE {where}", params)
        return int(cur.fetchone()[0])

    def _key_filter(self, values: Mapping[str, Any], remote_comparator: str = "=") -> tuple[list[str], list]:
        clauses: list[str] = []
        params: list = []
        for col in self._local_key:
            clauses.append(f"{col.name} = %s")
            params.append(self._require(values, col.name))
        if remote_comparator == "=":
            for col in self._remote_key:
                clauses.append(f"{col.name} = %s")
                params.append(self._require(values, col.name))
        elif remote_comparator == "!=":
            if not self._remote_key:
                raise RuntimeError("Cannot apply negated remote key conditions, if remote key is empty.")
            negated = []
            for col in self._remote_key:
                negated.append(f"{col.name} != %s")
                params.append(self._require(values, col.name))
            clauses.append(f"({' OR '.join(negated)})")
        else:
            raise ValueError(f"Unsupported comparator {remote_comparator}")
        return clauses, params

    def _partial_filter(self, condition: Mapping[str, Any]) -> tuple[list[str], list]:
        clauses: list[str] = []
        params: list = []
        for name in self.get_primary_key():
            if name in condition:
                clauses.append(f"{name} = %s")
                params.append(self._require(condition, name))
        if not clauses:
            raise ValueError(
                f"Condition for {self._table_name} must contain at least one of {self.get_primary_key()}."
            )
        return clauses, params

    def _changed_filter(self, data_values: Mapping[str, Any]) -> tuple[str, list]:
        clauses: list[str] = []
        params: list = []
        for name, value in data_values.items():
            if value is None:
                clauses.append(f"{name} IS NOT NULL")
            else:
                clauses.append(f"{name} IS NULL OR {name} != %s")
                params.append(value)
        return " OR ".join(clauses), params

    def _describe_key(self, values: Mapping[str, Any]) -> str:
        return ",".join(f"{name}={values.get(name)}" for name in self.get_primary_key())

    @staticmethod
    def _require(values: Mapping[str, Any], name: str) -> Any:
        value = values.get(name)
        if value is None:
            raise ValueError(f"Missing value for '{name}'.")
        return value
