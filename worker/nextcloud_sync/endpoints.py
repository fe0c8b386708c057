from typing import Any, Dict, Optional
from urllib.parse import quote

from nextcloud_sync.constants import OCS_GROUP_NOT_FOUND, OCS_NOT_FOUND
from nextcloud_sync.nextcloud_client import (
    NextcloudApiError,
    NextcloudClient,
    UnexpectedResponseDataError,
)


def _segment(value: Any) -> str:
    return quote(str(value), safe="")


def _without_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


class UserEndpoint:
    PATH = "ocs/v1.php/cloud/users"

    def __init__(self, client: NextcloudClient):
        self._client = client

    def insert_with_email(self, user_id: str, email: str, display_name: Optional[str] = None) -> str:
        if not user_id:
            raise NextcloudApiError("User id is required when creating a new user.")
        values = _without_none({"userid": user_id, "email": email, "displayName": display_name})
        data = self._client.request_ocs("POST", self.PATH, values).throw_if_failure().data
        new_id = (data or {}).get("id") if isinstance(data, dict) else None
        if new_id != user_id:
            raise NextcloudApiError(f"Expected new id {user_id}, found {new_id}.")
        return new_id

    def delete_if_exists(self, user_id: str) -> bool:
        response = self._client.request_ocs("DELETE", self._user_path(user_id)).none_if_status_code(OCS_NOT_FOUND)
        if response is None:
            return False
        response.throw_if_failure()
        return True

    def set_user_email(self, user_id: str, email: Optional[str]):
        self.set_user_field(user_id, "email", email)

    def set_user_display_name(self, user_id: str, display_name: Optional[str]):
        self.set_user_field(user_id, "displayname", display_name)

    def set_user_field(self, user_id: str, field: str, value: Any):
        self._client.request_ocs(
            "PUT",
            self._user_path(user_id),
            {"key": field, "value": "" if value is None else value},
        ).throw_if_failure()

    def join_group(self, user_id: str, group_id: str):
        self._client.request_ocs(
            "POST", self._user_path(user_id, "/groups"), {"groupid": group_id}
        ).throw_if_failure()

    def leave_group(self, user_id: str, group_id: str):
        self._client.request_ocs(
            "DELETE", self._user_path(user_id, "/groups"), {"groupid": group_id}
        ).throw_if_failure()

    def _user_path(self, user_id: str, sub_path: str = "") -> str:
        return f"{self.PATH}/{_segment(user_id)}{sub_path}"


class GroupEndpoint:
    PATH = "ocs/v1.php/cloud/groups"

    def __init__(self, client: NextcloudClient):
        self._client = client

    def insert(self, group_id: str, display_name: Optional[str] = None):
        self._client.request_ocs(
            "POST", self.PATH, _without_none({"groupid": group_id, "displayname": display_name})
        ).throw_if_failure()

    def set_display_name(self, group_id: str, display_name: str):
        self._client.request_ocs(
            "PUT", self._group_path(group_id), {"key": "displayname", "value": display_name}
        ).throw_if_failure()

    def delete(self, group_id: str) -> bool:
        """Returns False if the group did not exist."""
        response = self._client.request_ocs("DELETE", self._group_path(group_id)).none_if_status_code(
            OCS_GROUP_NOT_FOUND
        )
        if response is None:
            return False
        response.throw_if_failure()
        return True

    def _group_path(self, group_id: str) -> str:
        return f"{self.PATH}/{_segment(group_id)}"


class GroupFolderEndpoint:
    PATH = "apps/groupfolders/folders"

    def __init__(self, client: NextcloudClient):
        self._client = client

    def insert_with_mount_point(self, mount_point: str) -> int:
        data = self._client.request_ocs("POST", self.PATH, {"mountpoint": mount_point}).throw_if_failure().data
        try:
            return int(data["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise UnexpectedResponseDataError(f"Missing group folder id in response data: {data!r}") from exc

    def delete_if_exists(self, group_folder_id: int) -> bool:
        response = self._client.request_ocs("DELETE", self._folder_path(group_folder_id))
        response = response.none_if_status_code(OCS_NOT_FOUND)
        if response is None:
            return False
        response.throw_if_failure()
        return True

    def set_mount_point(self, group_folder_id: int, mount_point: str):
        self._client.request_ocs(
            "PUT", self._folder_path(group_folder_id), {"mountPoint": mount_point}
        ).throw_if_failure()

    def add_group(self, group_folder_id: int, group_id: str):
        self._client.request_ocs(
            "POST", self._folder_path(group_folder_id, "/groups"), {"group": group_id}
        ).throw_if_failure()

    def remove_group(self, group_folder_id: int, group_id: str):
        self._client.request_ocs(
            "DELETE", self._folder_path(group_folder_id, f"/groups/{_segment(group_id)}")
        ).throw_if_failure()

    def set_group_permissions(self, group_folder_id: int, group_id: str, permissions: int):
        self._client.request_ocs(
            "POST",
            self._folder_path(group_folder_id, f"/groups/{_segment(group_id)}"),
            {"permissions": permissions},
        ).throw_if_failure()

    def set_manage_acl_group(self, group_folder_id: int, group_id: str, manage_acl: bool):
        self.set_manage_acl(group_folder_id, "group", group_id, manage_acl)

    def set_manage_acl(self, group_folder_id: int, mapping_type: str, mapping_id: str, manage_acl: bool):
        self._client.request_ocs(
            "POST",
            self._folder_path(group_folder_id, "/manageACL"),
            {"mappingType": mapping_type, "mappingId": mapping_id, "manageAcl": int(manage_acl)},
        ).throw_if_failure()

    def _folder_path(self, group_folder_id: int, sub_path: str = "") -> str:
        return f"{self.PATH}/{int(group_folder_id)}{sub_path}"


class WorkspaceEndpoint:
    PATH = "apps/workspace"

    def __init__(self, client: NextcloudClient):
        self._client = client

    def insert_workspace(self, workspace_name: str, group_folder_id: int) -> int:
        data = self._client.request_json(
            "POST",
            f"{self.PATH}/spaces",
            {"spaceName": workspace_name, "folderId": int(group_folder_id)},
        )
        if not isinstance(data, dict) or data.get("id_space") is None or data.get("statuscode") != 201:
            raise UnexpectedResponseDataError(
                f"Unexpected response data from attempt to create workspace '{workspace_name}' "
                f"for group folder {group_folder_id}."
            )
        return int(data["id_space"])

    def rename(self, workspace_id: int, name: str):
        data = self._client.request_json(
            "PATCH",
            f"{self.PATH}/api/space/rename",
            {"workspace": {"id": int(workspace_id)}, "newSpaceName": name},
        )
        if not isinstance(data, dict) or not data.get("space"):
            raise NextcloudApiError(f"Failed to rename workspace {workspace_id} to {name}.")

    def delete_if_exists(self, workspace_id: int) -> bool:
        # The group folder of the workspace is left in place.
        response = self._client.request("DELETE", f"{self.PATH}/spaces/{int(workspace_id)}")
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise NextcloudApiError(
                f"Failed to delete workspace {workspace_id}: status={response.status_code}."
            )
        return True
