import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from nextcloud_sync.runtime_logger import emit


NEXTCLOUD_CONNECT_TIMEOUT = float(os.getenv("NEXTCLOUD_CONNECT_TIMEOUT", "10"))
NEXTCLOUD_READ_TIMEOUT = float(os.getenv("NEXTCLOUD_READ_TIMEOUT", "60"))

_BASE_URL_PATTERN = re.compile(r"^https?://[\w.\-]+(?::\d+)?/(?:[\w.\-]+/)*$")
PASSWORD_CONFIRMATION_MESSAGE = "Password confirmation is required"


class NextcloudNotAvailable(Exception):
    """Nextcloud is not configured, so nothing can be synced."""


class NextcloudApiError(Exception):
    pass


class FailureResponseError(NextcloudApiError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"Nextcloud failure response {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ResponseInvalidJsonError(NextcloudApiError):
    pass


class UnexpectedResponseDataError(NextcloudApiError):
    pass


def _to_int_if_possible(value: Any) -> Any:
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value):
        return int(value)
    return value


@dataclass(frozen=True)
class OcsResponse:
    status: str
    status_code: int
    message: str
    data: Any
    total_items: Optional[int] = None
    items_per_page: Optional[int] = None

    @classmethod
    def from_response_data(cls, payload: Any) -> "OcsResponse":
        try:
            meta = payload["ocs"]["meta"]
            return cls(
                status=meta["status"],
                status_code=_to_int_if_possible(meta["statuscode"]),
                message=meta.get("message") or "",
                data=payload["ocs"]["data"],
                total_items=_to_int_if_possible(meta.get("totalitems")),
                items_per_page=_to_int_if_possible(meta.get("itemsperpage")),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise UnexpectedResponseDataError(f"Unexpected response data. Message: {exc!r}.") from exc

    def is_failure(self) -> bool:
        return self.status == "failure"

    def throw_if_failure(self) -> "OcsResponse":
        if self.is_failure():
            raise FailureResponseError(self.status_code, self.message)
        return self

    def none_if_status_code(self, status_code: int) -> Optional["OcsResponse"]:
        return None if self.status_code == status_code else self


class NextcloudClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        session: Optional[requests.Session] = None,
        connect_timeout: float = NEXTCLOUD_CONNECT_TIMEOUT,
        read_timeout: float = NEXTCLOUD_READ_TIMEOUT,
    ):
        if not base_url or not username or not password:
            raise NextcloudNotAvailable("Nextcloud configuration is incomplete.")
        base_url = base_url.rstrip("/") + "/"
        if not _BASE_URL_PATTERN.match(base_url):
            raise NextcloudNotAvailable("Nextcloud url does not have the expected format.")

        self._base_url = base_url
        self._username = username
        self._timeout = (connect_timeout, read_timeout)
        self._session = session or requests.Session()
        self._session.auth = (username, password)
        self._session.headers.update(
            {
                "OCS-APIRequest": "true",
                "Accept": "application/json",
            }
        )

    @classmethod
    def from_env(cls) -> "NextcloudClient":
        values = {
            "NEXTCLOUD_URL": os.getenv("NEXTCLOUD_URL", ""),
            "NEXTCLOUD_USER": os.getenv("NEXTCLOUD_USER", ""),
            "NEXTCLOUD_PASS": os.getenv("NEXTCLOUD_PASS", ""),
        }
        missing = [key for key, value in values.items() if not value]
        if missing:
            raise NextcloudNotAvailable(f"Missing or empty configuration keys: {', '.join(missing)}.")
        return cls(values["NEXTCLOUD_URL"], values["NEXTCLOUD_USER"], values["NEXTCLOUD_PASS"])

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def username(self) -> str:
        return self._username

    def build_url(self, path: str = "") -> str:
        if not path:
            return self._base_url
        return self._base_url + path.lstrip("/")

    def request(self, method: str, path: str = "", params: Optional[Dict[str, Any]] = None, json: Any = None):
        url = self.build_url(path)
        kwargs: Dict[str, Any] = {"timeout": self._timeout}
        if params:
            if method == "GET":
                kwargs["params"] = params
            else:
                kwargs["data"] = params
        if json is not None:
            kwargs["json"] = json
        try:
            return self._session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            # Parameter names only, values may be secrets.
            names = sorted((params or {}).keys())
            emit("ERROR", "NEXTCLOUD", f"Nextcloud request failed: method={method} url={url} params={names} error={exc}")
            raise NextcloudApiError(f"Failed {method} request to {url} with {names}: {exc}") from exc

    def request_ocs(self, method: str, path: str = "", params: Optional[Dict[str, Any]] = None) -> OcsResponse:
        response = self._request_ocs_once(method, path, params)
        if (
            response.is_failure()
            and response.status_code == 403
            and response.message == PASSWORD_CONFIRMATION_MESSAGE
        ):
            # Start a new session, basic auth on a fresh login is enough.
            emit("WARN", "NEXTCLOUD", f"Nextcloud wants password confirmation, retrying: method={method} path={path}")
            self._session.cookies.clear()
            response = self._request_ocs_once(method, path, params)
        return response

    def _request_ocs_once(self, method: str, path: str, params: Optional[Dict[str, Any]]) -> OcsResponse:
        resp = self.request(method, path, params)
        try:
            payload = resp.json()
        except ValueError as exc:
            emit("ERROR", "NEXTCLOUD", f"Nextcloud response invalid JSON: method={method} path={path} status={resp.status_code}")
            raise ResponseInvalidJsonError(
                f"Invalid json returned for {method} request to {path} with parameters {sorted((params or {}).keys())}."
            ) from exc
        return OcsResponse.from_response_data(payload)

    def request_json(self, method: str, path: str = "", json: Any = None) -> Any:
        resp = self.request(method, path, json=json)
        try:
            return resp.json()
        except ValueError as exc:
            emit("ERROR", "NEXTCLOUD", f"Nextcloud response invalid JSON: method={method} path={path} status={resp.status_code}")
            raise ResponseInvalidJsonError(f"Invalid json returned for {method} request to {path}.") from exc
