from enum import IntEnum
from typing import Callable

from nextcloud_sync.jobs.base import CombinedJob, ProgressiveJob
from nextcloud_sync.jobs.table_jobs import DependentPostDeleteJob, DependentPreDeleteJob, TrackingTableOpJob
from nextcloud_sync.tracking.op import Op, WRITE_OPS
from nextcloud_sync.tracking.table import TrackingTable


# Orphan cleanup runs after every delete job.
POST_DELETE_POSITION = 1000
DEPTH_STEP = 10


class Phase(IntEnum):
    DELETE = 0
    WRITE = 1


class JobCollector:
    def __init__(self):
        self._jobs: dict[Phase, dict[int, list[ProgressiveJob]]] = {}

    def add_job(self, phase: Phase, position: int, job: ProgressiveJob):
        self._jobs.setdefault(Phase(phase), {}).setdefault(int(position), []).append(job)

    def get_jobs(self) -> list[ProgressiveJob]:
        ordered: list[ProgressiveJob] = []
        for phase in sorted(self._jobs):
            positions = self._jobs[phase]
            for position in sorted(positions):
                ordered.extend(positions[position])
        return ordered

    def build_job(self) -> CombinedJob:
        return CombinedJob(self.get_jobs())


def collect_tracking_table_jobs(collector: JobCollector, table: TrackingTable, submit: Callable):
    """Adds the delete, cascade and write jobs of one tracking table."""
    depth = table.get_depth()
    relationships = table.get_relationships()

    # Dependents are deleted before the objects they depend on.
    delete_position = -DEPTH_STEP * depth
    for alias, relationship in relationships.items():
        if not relationship.auto_delete:
            collector.add_job(
                Phase.DELETE,
                delete_position,
                DependentPreDeleteJob(table, submit, relationships, alias),
            )
    collector.add_job(Phase.DELETE, delete_position, TrackingTableOpJob(table, submit, [Op.DELETE]))

    for relationship in relationships.values():
        if relationship.auto_delete:
            collector.add_job(
                Phase.DELETE,
                POST_DELETE_POSITION + DEPTH_STEP * depth,
                DependentPostDeleteJob(table, relationship),
            )

    # Parents are written before their dependents.
    collector.add_job(Phase.WRITE, DEPTH_STEP * depth, TrackingTableOpJob(table, submit, WRITE_OPS))
