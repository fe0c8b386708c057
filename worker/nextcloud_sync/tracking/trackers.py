"""Tracking tables for each kind of Nextcloud object, and the entity event
handlers that queue changes into them.

Host entities arrive as plain mappings:

- user: uid, name, email, display_name, blocked, have_nextcloud_account
- group: gid, label, has_workspace, roles (list of group roles)
- group_role: id, label, permissions, groups (groups of the role's type)
- group_membership: uid, gid, roles (list of role ids)
"""

from functools import reduce
from typing import Any, Callable, Dict, Mapping

from nextcloud_sync.constants import GROUP_FOLDER_PERMISSIONS
from nextcloud_sync.endpoints import GroupEndpoint, GroupFolderEndpoint, UserEndpoint, WorkspaceEndpoint
from nextcloud_sync.jobs.collector import JobCollector, collect_tracking_table_jobs
from nextcloud_sync.nextcloud_client import NextcloudClient
from nextcloud_sync.runtime_logger import emit
from nextcloud_sync.tracking.submit import (
    NcGroupFolderGroupSubmit,
    NcGroupFolderSubmit,
    NcGroupSubmit,
    NcUserGroupSubmit,
    NcUserSubmit,
    NcWorkspaceSubmit,
)
from nextcloud_sync.tracking.table import Column, TrackingTable, TrackingTableRelationship


CORE_OWNER = "nextcloud_sync"
GROUP_FOLDER_OWNER = "nextcloud_sync_group_folder"
GROUP_WORKSPACE_OWNER = "nextcloud_sync_group_workspace"

UID = Column("uid", "BIGINT")
GID = Column("gid", "BIGINT")
GROUP_ROLE_ID = Column("group_role_id", "VARCHAR(254)")

EntityCallback = Callable[[Mapping[str, Any], str], None]


def role_permissions(role: Mapping[str, Any]) -> int:
    """Nextcloud group folder permission bits granted by a host group role."""
    granted = set(role.get("permissions") or [])
    return reduce(
        lambda bits, item: bits | item[1],
        (item for item in GROUP_FOLDER_PERMISSIONS.items() if item[0] in granted),
        0,
    )


def build_nc_group_id(gid, group_role_id: str) -> str:
    return f"DRUPAL-GROUP-{gid}-{group_role_id}"


def _is_delete(change: str) -> bool:
    if change not in ("insert", "update", "delete"):
        raise ValueError(f"Unexpected entity change '{change}'.")
    return change == "delete"


class TrackerBase:
    owner = CORE_OWNER

    def __init__(self, table: TrackingTable):
        self.table = table

    def create_submit(self, client: NextcloudClient) -> Callable:
        raise NotImplementedError

    def entity_callbacks(self) -> Dict[str, EntityCallback]:
        return {}

    def collect_jobs(self, collector: JobCollector, submit: Callable):
        collect_tracking_table_jobs(collector, self.table, submit)

    def get_schema(self) -> Dict[str, list[str]]:
        return {self.table.get_table_name(): self.table.get_schema_statements()}

    def uninstall_blockers(self, owner: str) -> list[str]:
        if owner != self.owner:
            return []
        table_name = self.table.get_table_name()
        try:
            count = self.table.count_tracked_remote_objects()
        except Exception as exc:
            # Table was never created, so nothing is tracked.
            emit("WARN", "TRACKING", f"Could not count tracked remote objects: table={table_name} error={exc}")
            return []
        if count <= 0:
            return []
        return [
            f"To uninstall {owner}, all remote objects have to be removed first. "
            f"There are still {count} remote objects in {table_name}."
        ]


class UserNcUserTracker(TrackerBase):
    TABLE_NAME = "nc_sync_user_nc_user"

    def __init__(self, connect=None, keep_nc_users: bool = True):
        super().__init__(
            TrackingTable(
                self.TABLE_NAME,
                local_key=[UID],
                remote_key=[Column("nc_user_id", "VARCHAR(64)")],
                data_fields=[
                    Column("nc_email", "VARCHAR(254)"),
                    Column("nc_display_name", "VARCHAR(64)"),
                ],
                connect=connect,
            )
        )
        self._keep_nc_users = keep_nc_users

    def create_submit(self, client: NextcloudClient) -> Callable:
        return NcUserSubmit(UserEndpoint(client), keep_nc_users=self._keep_nc_users)

    def entity_callbacks(self) -> Dict[str, EntityCallback]:
        return {"user": self.on_user}

    def on_user(self, user: Mapping[str, Any], change: str):
        if _is_delete(change) or not self.should_have_nextcloud_account(user):
            self.table.queue_delete({"uid": user["uid"]})
            return
        self.table.queue_write(
            {
                "uid": user["uid"],
                "nc_user_id": user["name"],
                "nc_email": user["email"],
                "nc_display_name": user.get("display_name") or user["name"],
            }
        )

    @staticmethod
    def should_have_nextcloud_account(user: Mapping[str, Any]) -> bool:
        if not user.get("have_nextcloud_account"):
            return False
        if user.get("blocked"):
            return False
        return bool(user.get("email")) and bool(user.get("name"))


class GroupAndRoleNcGroupTracker(TrackerBase):
    TABLE_NAME = "nc_sync_group_role_nc_group"
    owner = GROUP_FOLDER_OWNER

    def __init__(self, connect=None):
        super().__init__(
            TrackingTable(
                self.TABLE_NAME,
                local_key=[GID, GROUP_ROLE_ID],
                remote_key=[Column("nc_group_id", "VARCHAR(64)")],
                data_fields=[Column("nc_display_name", "VARCHAR(255)")],
                connect=connect,
            )
        )

    def create_submit(self, client: NextcloudClient) -> Callable:
        return NcGroupSubmit(GroupEndpoint(client))

    def entity_callbacks(self) -> Dict[str, EntityCallback]:
        return {"group": self.on_group, "group_role": self.on_group_role}

    def on_group(self, group: Mapping[str, Any], change: str):
        if _is_delete(change):
            self.table.queue_delete({"gid": group["gid"]})
            return
        for role in group.get("roles") or []:
            self._queue_group_and_role(group, role)

    def on_group_role(self, role: Mapping[str, Any], change: str):
        if _is_delete(change) or not role_permissions(role):
            self.table.queue_delete({"group_role_id": role["id"]})
            return
        for group in role.get("groups") or []:
            self._queue_group_and_role(group, role)

    def _queue_group_and_role(self, group: Mapping[str, Any], role: Mapping[str, Any]):
        if not role_permissions(role):
            self.table.queue_delete({"gid": group["gid"], "group_role_id": role["id"]})
            return
        self.table.queue_write(
            {
                "gid": group["gid"],
                "group_role_id": role["id"],
                "nc_group_id": build_nc_group_id(group["gid"], role["id"]),
                "nc_display_name": f"{group['label']}: {role['label']}",
            }
        )


class GroupNcGroupFolderTracker(TrackerBase):
    TABLE_NAME = "nc_sync_group_nc_group_folder"
    owner = GROUP_FOLDER_OWNER

    def __init__(self, connect=None):
        super().__init__(
            TrackingTable(
                self.TABLE_NAME,
                local_key=[GID],
                data_fields=[
                    Column("nc_mount_point", "VARCHAR(255)"),
                    Column("nc_group_folder_id", "BIGINT", nullable=True, remote_assigned=True),
                ],
                connect=connect,
            )
        )

    def create_submit(self, client: NextcloudClient) -> Callable:
        return NcGroupFolderSubmit(GroupFolderEndpoint(client))

    def entity_callbacks(self) -> Dict[str, EntityCallback]:
        return {"group": self.on_group}

    def on_group(self, group: Mapping[str, Any], change: str):
        if _is_delete(change):
            self.table.queue_delete({"gid": group["gid"]})
            return
        self.table.queue_write({"gid": group["gid"], "nc_mount_point": str(group["label"])})


class GroupAndRoleNcGroupFolderGroupTracker(TrackerBase):
    """Grants of Nextcloud groups on group folders, one per host group and role."""

    TABLE_NAME = "nc_sync_group_role_nc_group_folder_group"
    owner = GROUP_FOLDER_OWNER

    def __init__(self, group_folder_table: TrackingTable, group_table: TrackingTable, connect=None):
        super().__init__(
            TrackingTable(
                self.TABLE_NAME,
                local_key=[GID, GROUP_ROLE_ID],
                data_fields=[Column("nc_permissions", "INTEGER")],
                relationships={
                    # Nextcloud drops the grants along with the folder.
                    "gf": TrackingTableRelationship(
                        group_folder_table, {"gid": "gid"}, ("nc_group_folder_id",), auto_delete=True
                    ),
                    # The grant has to be removed before the group goes away.
                    "g": TrackingTableRelationship(
                        group_table,
                        {"gid": "gid", "group_role_id": "group_role_id"},
                        ("nc_group_id",),
                        auto_delete=False,
                    ),
                },
                connect=connect,
            )
        )

    def create_submit(self, client: NextcloudClient) -> Callable:
        return NcGroupFolderGroupSubmit(GroupFolderEndpoint(client))

    def entity_callbacks(self) -> Dict[str, EntityCallback]:
        return {"group": self.on_group, "group_role": self.on_group_role}

    def on_group(self, group: Mapping[str, Any], change: str):
        if _is_delete(change):
            self.table.queue_delete({"gid": group["gid"]})
            return
        for role in group.get("roles") or []:
            permissions = role_permissions(role)
            if permissions:
                self._queue_grant(group, role, permissions)
            else:
                self.table.queue_delete({"gid": group["gid"], "group_role_id": role["id"]})

    def on_group_role(self, role: Mapping[str, Any], change: str):
        permissions = role_permissions(role)
        if _is_delete(change) or not permissions:
            self.table.queue_delete({"group_role_id": role["id"]})
            return
        for group in role.get("groups") or []:
            self._queue_grant(group, role, permissions)

    def _queue_grant(self, group: Mapping[str, Any], role: Mapping[str, Any], permissions: int):
        self.table.queue_write({"gid": group["gid"], "group_role_id": role["id"], "nc_permissions": permissions})


class GroupMembershipRoleNcUserGroupTracker(TrackerBase):
    TABLE_NAME = "nc_sync_group_membership_role_nc_user_group"
    owner = GROUP_FOLDER_OWNER

    def __init__(self, user_table: TrackingTable, group_table: TrackingTable, connect=None):
        super().__init__(
            TrackingTable(
                self.TABLE_NAME,
                local_key=[UID, GID, GROUP_ROLE_ID],
                relationships={
                    "u": TrackingTableRelationship(user_table, {"uid": "uid"}, ("nc_user_id",)),
                    "g": TrackingTableRelationship(
                        group_table,
                        {"gid": "gid", "group_role_id": "group_role_id"},
                        ("nc_group_id",),
                    ),
                },
                connect=connect,
            )
        )

    def create_submit(self, client: NextcloudClient) -> Callable:
        return NcUserGroupSubmit(UserEndpoint(client))

    def entity_callbacks(self) -> Dict[str, EntityCallback]:
        return {"group_membership": self.on_group_membership, "group_role": self.on_group_role}

    def on_group_role(self, role: Mapping[str, Any], change: str):
        if _is_delete(change):
            self.table.queue_delete({"group_role_id": role["id"]})

    def on_group_membership(self, membership: Mapping[str, Any], change: str):
        condition = {"uid": membership["uid"], "gid": membership["gid"]}
        self.table.queue_delete(condition)
        if _is_delete(change):
            return
        # Roles still held are revived by the write.
        for role_id in membership.get("roles") or []:
            self.table.queue_write({**condition, "group_role_id": role_id})


class GroupNcWorkspaceTracker(TrackerBase):
    TABLE_NAME = "nc_sync_group_nc_workspace"
    owner = GROUP_WORKSPACE_OWNER

    def __init__(self, group_folder_table: TrackingTable, connect=None):
        super().__init__(
            TrackingTable(
                self.TABLE_NAME,
                local_key=[GID],
                data_fields=[
                    Column("nc_space_name", "VARCHAR(255)"),
                    Column("nc_workspace_id", "BIGINT", nullable=True, remote_assigned=True),
                ],
                relationships={
                    # The workspace goes away with its group folder.
                    "gf": TrackingTableRelationship(group_folder_table, {"gid": "gid"}, ("nc_group_folder_id",)),
                },
                connect=connect,
            )
        )

    def create_submit(self, client: NextcloudClient) -> Callable:
        return NcWorkspaceSubmit(WorkspaceEndpoint(client))

    def entity_callbacks(self) -> Dict[str, EntityCallback]:
        return {"group": self.on_group}

    def on_group(self, group: Mapping[str, Any], change: str):
        if _is_delete(change) or not group.get("has_workspace"):
            self.table.queue_delete({"gid": group["gid"]})
            return
        self.table.queue_write({"gid": group["gid"], "nc_space_name": str(group["label"])})
