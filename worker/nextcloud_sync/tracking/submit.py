"""Apply one pending tracking record to Nextcloud.

Each submitter is a callable ``submit(record, op)``. It returns a dict of
values generated by Nextcloud that should be stored in the tracking table,
or None when there is nothing to store. Failures raise.
"""

from typing import Any, Dict, Mapping, Optional

from nextcloud_sync.constants import OCS_USER_EXISTS, PERMISSION_ADVANCED, PERMISSION_ALL
from nextcloud_sync.endpoints import GroupEndpoint, GroupFolderEndpoint, UserEndpoint, WorkspaceEndpoint
from nextcloud_sync.nextcloud_client import FailureResponseError, NextcloudApiError
from nextcloud_sync.runtime_logger import emit
from nextcloud_sync.tracking.op import Op


def _group_folder_id(record: Mapping[str, Any]) -> Optional[int]:
    value = record.get("nc_group_folder_id")
    return int(value) if value else None


def _unexpected(op) -> ValueError:
    return ValueError(f"Unexpected operation {op!r}.")


class NcUserSubmit:
    def __init__(self, user_endpoint: UserEndpoint, keep_nc_users: bool = True):
        self._endpoint = user_endpoint
        self._keep_nc_users = keep_nc_users

    def __call__(self, record: Mapping[str, Any], op: Op) -> Optional[Dict[str, Any]]:
        user_id = record["nc_user_id"]
        email = record.get("nc_email")
        display_name = record.get("nc_display_name")
        if op == Op.UPDATE:
            self._endpoint.set_user_email(user_id, email)
            self._endpoint.set_user_display_name(user_id, display_name)
        elif op == Op.INSERT:
            try:
                self._endpoint.insert_with_email(user_id, email, display_name)
            except FailureResponseError as exc:
                if exc.status_code != OCS_USER_EXISTS:
                    raise
                if not self._keep_nc_users:
                    # Existing accounts with the same name are treated as a conflict.
                    raise NextcloudApiError(f"User already exists: nc_user_id={user_id}") from exc
                emit("INFO", "NEXTCLOUD", f"Adopting existing Nextcloud account: nc_user_id={user_id}")
                self._endpoint.set_user_email(user_id, email)
                self._endpoint.set_user_display_name(user_id, display_name)
        elif op == Op.DELETE:
            if self._keep_nc_users:
                # Report success without touching the account.
                return None
            self._endpoint.delete_if_exists(user_id)
        else:
            raise _unexpected(op)
        return None


class NcGroupSubmit:
    def __init__(self, group_endpoint: GroupEndpoint):
        self._endpoint = group_endpoint

    def __call__(self, record: Mapping[str, Any], op: Op) -> Optional[Dict[str, Any]]:
        group_id = record["nc_group_id"]
        display_name = record.get("nc_display_name")
        if op == Op.UPDATE:
            try:
                self._endpoint.set_display_name(group_id, display_name)
            except FailureResponseError:
                self._endpoint.insert(group_id, display_name)
        elif op == Op.INSERT:
            try:
                self._endpoint.insert(group_id, display_name)
            except FailureResponseError:
                # Likely exists already.
                self._endpoint.set_display_name(group_id, display_name)
        elif op == Op.DELETE:
            self._endpoint.delete(group_id)
        else:
            raise _unexpected(op)
        return None


class NcGroupFolderSubmit:
    def __init__(self, group_folder_endpoint: GroupFolderEndpoint):
        self._endpoint = group_folder_endpoint

    def __call__(self, record: Mapping[str, Any], op: Op) -> Optional[Dict[str, Any]]:
        mount_point = record.get("nc_mount_point")
        group_folder_id = _group_folder_id(record)
        if op == Op.INSERT:
            if group_folder_id is not None:
                raise ValueError(f"Tracking record marked for insert already has a group folder id: {group_folder_id}")
            new_id = self._endpoint.insert_with_mount_point(mount_point)
            return {"nc_group_folder_id": new_id}
        if group_folder_id is None:
            raise ValueError("Tracking record is missing the group folder id.")
        if op == Op.UPDATE:
            self._endpoint.set_mount_point(group_folder_id, mount_point)
        elif op == Op.DELETE:
            self._endpoint.delete_if_exists(group_folder_id)
        else:
            raise _unexpected(op)
        return None


class NcGroupFolderGroupSubmit:
    def __init__(self, group_folder_endpoint: GroupFolderEndpoint):
        self._endpoint = group_folder_endpoint

    def __call__(self, record: Mapping[str, Any], op: Op) -> Optional[Dict[str, Any]]:
        # The group folder id and group id come from the joined parent tables.
        group_folder_id = _group_folder_id(record)
        if group_folder_id is None:
            raise ValueError("Missing group folder id in tracking record.")
        group_id = record["nc_group_id"]
        if op in (Op.INSERT, Op.UPDATE):
            permissions = int(record["nc_permissions"])
            if op == Op.INSERT:
                self._endpoint.add_group(group_folder_id, group_id)
            self._endpoint.set_group_permissions(group_folder_id, group_id, permissions & PERMISSION_ALL)
            self._endpoint.set_manage_acl_group(group_folder_id, group_id, bool(permissions & PERMISSION_ADVANCED))
        elif op == Op.DELETE:
            self._endpoint.remove_group(group_folder_id, group_id)
        else:
            raise _unexpected(op)
        return None


class NcUserGroupSubmit:
    def __init__(self, user_endpoint: UserEndpoint):
        self._endpoint = user_endpoint

    def __call__(self, record: Mapping[str, Any], op: Op) -> Optional[Dict[str, Any]]:
        user_id = record["nc_user_id"]
        group_id = record["nc_group_id"]
        if op == Op.INSERT:
            self._endpoint.join_group(user_id, group_id)
        elif op == Op.DELETE:
            self._endpoint.leave_group(user_id, group_id)
        elif op != Op.UPDATE:
            # Membership rows have no data to update.
            raise _unexpected(op)
        return None


class NcWorkspaceSubmit:
    def __init__(self, workspace_endpoint: WorkspaceEndpoint):
        self._endpoint = workspace_endpoint

    def __call__(self, record: Mapping[str, Any], op: Op) -> Optional[Dict[str, Any]]:
        space_name = record.get("nc_space_name")
        if op == Op.INSERT:
            group_folder_id = _group_folder_id(record)
            if group_folder_id is None:
                raise ValueError("Missing group folder id in tracking record.")
            return {"nc_workspace_id": self._endpoint.insert_workspace(space_name, group_folder_id)}
        workspace_id = record.get("nc_workspace_id")
        if not workspace_id:
            raise ValueError("Tracking record is missing the workspace id.")
        if op == Op.UPDATE:
            self._endpoint.rename(int(workspace_id), space_name)
        elif op == Op.DELETE:
            self._endpoint.delete_if_exists(int(workspace_id))
        else:
            raise _unexpected(op)
        return None
