import os
from typing import Callable, Dict, List, Optional

from nextcloud_sync import db
from nextcloud_sync.entity_hooks import EntityHookDispatcher
from nextcloud_sync.jobs.base import CombinedJob
from nextcloud_sync.jobs.collector import JobCollector
from nextcloud_sync.nextcloud_client import NextcloudClient, NextcloudNotAvailable
from nextcloud_sync.runtime_logger import emit
from nextcloud_sync.tracking.trackers import (
    GroupAndRoleNcGroupFolderGroupTracker,
    GroupAndRoleNcGroupTracker,
    GroupMembershipRoleNcUserGroupTracker,
    GroupNcGroupFolderTracker,
    GroupNcWorkspaceTracker,
    TrackerBase,
    UserNcUserTracker,
)


def is_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "t", "yes", "y", "on"}


NEXTCLOUD_KEEP_USERS = is_enabled(os.getenv("NEXTCLOUD_KEEP_USERS"), default=True)


def build_trackers(connect=None, keep_nc_users: bool = NEXTCLOUD_KEEP_USERS) -> List[TrackerBase]:
    users = UserNcUserTracker(connect, keep_nc_users=keep_nc_users)
    groups = GroupAndRoleNcGroupTracker(connect)
    group_folders = GroupNcGroupFolderTracker(connect)
    return [
        users,
        groups,
        group_folders,
        GroupAndRoleNcGroupFolderGroupTracker(group_folders.table, groups.table, connect),
        GroupMembershipRoleNcUserGroupTracker(users.table, groups.table, connect),
        GroupNcWorkspaceTracker(group_folders.table, connect),
    ]


class SyncServices:
    def __init__(
        self,
        trackers: List[TrackerBase],
        client_factory: Callable[[], NextcloudClient] = NextcloudClient.from_env,
        connect=None,
    ):
        self.trackers = list(trackers)
        self._client_factory = client_factory
        self._connect = connect
        callbacks: Dict[str, list] = {}
        for tracker in self.trackers:
            for kind, callback in tracker.entity_callbacks().items():
                callbacks.setdefault(kind, []).append(callback)
        self.dispatcher = EntityHookDispatcher(callbacks)

    def build_job(self) -> CombinedJob:
        """Fresh combined job over the current pending state of all tracking tables."""
        try:
            client = self._client_factory()
        except NextcloudNotAvailable as exc:
            emit("INFO", "NEXTCLOUD", f"Nextcloud not available, sync skipped: reason={exc}")
            return CombinedJob([])
        collector = JobCollector()
        for tracker in self.trackers:
            tracker.collect_jobs(collector, tracker.create_submit(client))
        return collector.build_job()

    def schema_statements(self) -> List[str]:
        statements: List[str] = []
        for tracker in self.trackers:
            for table_statements in tracker.get_schema().values():
                statements.extend(table_statements)
        return statements

    def install_schema(self) -> int:
        return db.execute_script(self.schema_statements(), connect=self._connect)

    def uninstall_blockers(self, owner: str) -> List[str]:
        reasons: List[str] = []
        for tracker in self.trackers:
            reasons.extend(tracker.uninstall_blockers(owner))
        return reasons


_services: Optional[SyncServices] = None


def get_services() -> SyncServices:
    global _services
    if _services is None:
        _services = SyncServices(build_trackers())
    return _services
