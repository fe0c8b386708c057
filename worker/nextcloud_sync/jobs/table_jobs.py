from typing import Callable, Iterable, Iterator, Mapping

from nextcloud_sync.jobs.base import ProgressiveJob
from nextcloud_sync.tracking.op import Op
from nextcloud_sync.tracking.table import TrackingTable, TrackingTableRelationship


class TrackingTableOpJob(ProgressiveJob):
    """Submits pending records of one tracking table, for the given operations."""

    def __init__(self, table: TrackingTable, submit: Callable, ops: Iterable[Op]):
        self._table = table
        self._submit = submit
        self._ops = tuple(ops)

    def estimate(self) -> int:
        return self._table.count_pending(self._ops)

    def run(self) -> Iterator[int]:
        for record in self._table.fetch_pending(self._ops):
            op = Op(record["pending_operation"])
            remote_values = self._submit(record, op)
            if op == Op.DELETE:
                self._table.report_remote_absence(record)
            else:
                self._table.report_remote_values(record, {**record, **(remote_values or {})})
            yield 1


class DependentPreDeleteJob(ProgressiveJob):
    """Removes dependent objects before the source object is deleted in Nextcloud."""

    def __init__(
        self,
        table: TrackingTable,
        submit: Callable,
        relationships: Mapping[str, TrackingTableRelationship],
        alias: str,
    ):
        self._table = table
        self._submit = submit
        self._relationships = dict(relationships)
        self._alias = alias

    def estimate(self) -> int:
        query, params = self._table.select_obsolete_dependent_records(self._alias, self._relationships)
        return self._table.count_query(query, params)

    def run(self) -> Iterator[int]:
        query, params = self._table.select_obsolete_dependent_records(self._alias, self._relationships)
        for record in self._table.fetch_all(query, params):
            self._submit(record, Op.DELETE)
            self._table.report_remote_absence(record)
            yield 1


class DependentPostDeleteJob(ProgressiveJob):
    """Forgets dependent records once Nextcloud deleted them along with their source."""

    def __init__(self, table: TrackingTable, relationship: TrackingTableRelationship):
        self._table = table
        self._relationship = relationship

    def estimate(self) -> int:
        return self._table.count_orphaned_dependent_key_combos(self._relationship)

    def run(self) -> Iterator[int]:
        for condition in self._table.fetch_orphaned_dependent_key_combos(self._relationship):
            self._table.report_remote_absence(condition)
            yield 1
