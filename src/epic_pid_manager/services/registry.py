"""Handle registry REST client."""

from __future__ import annotations

import json
import logging
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional
from urllib.parse import quote

import httpx

from epic_pid_manager.config import Settings
from epic_pid_manager.models import HandleValue

logger = logging.getLogger(__name__)

RC_SUCCESS = 1
RC_ERROR = 2
RC_SERVER_TOO_BUSY = 3
RC_HANDLE_NOT_FOUND = 100
RC_HANDLE_ALREADY_EXISTS = 101
RC_INVALID_HANDLE = 102
RC_VALUES_NOT_FOUND = 200
RC_INSUFFICIENT_PERMISSIONS = 401
RC_AUTHENTICATION_NEEDED = 402
RC_AUTHENTICATION_FAILED = 403

_RESPONSE_MESSAGES = {
    RC_SUCCESS: "success",
    RC_ERROR: "error",
    RC_SERVER_TOO_BUSY: "server too busy",
    RC_HANDLE_NOT_FOUND: "handle not found",
    RC_HANDLE_ALREADY_EXISTS: "handle already exists",
    RC_INVALID_HANDLE: "invalid handle",
    RC_VALUES_NOT_FOUND: "values not found",
    RC_INSUFFICIENT_PERMISSIONS: "insufficient permissions",
    RC_AUTHENTICATION_NEEDED: "authentication needed",
    RC_AUTHENTICATION_FAILED: "authentication failed",
}

JOURNAL_FILE = "requests.jsonl"


class HandleRegistryError(RuntimeError):
    """Raised when a call to the handle registry fails."""


def response_code_message(code: int) -> str:
    return _RESPONSE_MESSAGES.get(code, f"response code {code}")


@dataclass
class RegistryResponse:
    """Outcome of one registry request, keyed by the Handle response code."""

    code: int
    http_status: int
    handle: Optional[str] = None
    values: list[dict[str, Any]] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == RC_SUCCESS

    def describe(self) -> str:
        text = f"{response_code_message(self.code)} (HTTP {self.http_status})"
        if self.message:
            text += f": {self.message}"
        return text


class HandleRegistryClient:
    """Session wrapper around the Handle.net JSON REST API."""

    def __init__(
        self,
        settings: Settings,
        work_dir: Path,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.work_dir = work_dir
        self._client = httpx.Client(
            base_url=settings.handle_api_url.rstrip("/"),
            headers=self._headers(),
            auth=self._auth(),
            verify=self._verify(),
            transport=transport,
        )

    def resolve(self, handle: str) -> RegistryResponse:
        return self._request("GET", handle)

    def create(self, handle: str, values: Iterable[HandleValue]) -> RegistryResponse:
        response = self._request(
            "PUT",
            handle,
            params={"overwrite": "false"},
            payload={"values": [self._value_payload(value) for value in values]},
        )
        self._record("create", handle, response)
        return response

    def modify(self, handle: str, values: Iterable[HandleValue]) -> RegistryResponse:
        response = self._request(
            "PUT",
            handle,
            params={"index": "various"},
            payload={"values": [self._value_payload(value) for value in values]},
        )
        self._record("modify", handle, response)
        return response

    def delete(self, handle: str) -> RegistryResponse:
        response = self._request("DELETE", handle)
        self._record("delete", handle, response)
        return response

    def close(self) -> None:
        self._client.close()

    def _path(self, handle: str) -> str:
        return f"/api/handles/{quote(handle, safe='/')}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.handle_certificate and not self.settings.handle_password:
            headers["Authorization"] = 'Handle clientCert="true"'
        return headers

    def _auth(self) -> httpx.BasicAuth | None:
        if not self.settings.handle_password:
            return None
        username = quote(f"{self.settings.handle_admin_index}:{self.settings.handle_user}", safe="")
        return httpx.BasicAuth(username, self.settings.handle_password)

    def _verify(self) -> ssl.SSLContext | bool:
        if not self.settings.handle_certificate:
            return self.settings.handle_verify_tls
        context = ssl.create_default_context()
        if not self.settings.handle_verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        try:
            context.load_cert_chain(
                certfile=self.settings.handle_certificate,
                keyfile=self.settings.handle_private_key,
            )
        except OSError as exc:
            logger.error("Could not load client certificate %s: %s", self.settings.handle_certificate, exc)
            raise HandleRegistryError(
                f"Could not load client certificate {self.settings.handle_certificate}: {exc}"
            ) from exc
        return context

    def _request(
        self,
        method: str,
        handle: str,
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> RegistryResponse:
        logger.debug("%s %s", method, handle)
        try:
            response = self._client.request(method, self._path(handle), params=params, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Handle registry request %s %s failed: %s", method, handle, exc)
            raise HandleRegistryError(f"Handle registry unreachable for {handle}: {exc}") from exc
        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> RegistryResponse:
        try:
            data = response.json()
        except ValueError as exc:
            raise HandleRegistryError(
                f"Handle registry returned HTTP {response.status_code} without a JSON body"
            ) from exc
        code = data.get("responseCode") if isinstance(data, dict) else None
        if not isinstance(code, int):
            raise HandleRegistryError(
                f"Handle registry returned HTTP {response.status_code} without a response code"
            )
        values = data.get("values") or []
        return RegistryResponse(
            code=code,
            http_status=response.status_code,
            handle=data.get("handle"),
            values=values if isinstance(values, list) else [],
            message=data.get("message"),
        )

    def _record(self, action: str, handle: str, response: RegistryResponse) -> None:
        entry = {
            "action": action,
            "handle": handle,
            "responseCode": response.code,
            "at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            with (self.work_dir / JOURNAL_FILE).open("a", encoding="utf-8") as journal:
                journal.write(json.dumps(entry) + "\n")
        except OSError as exc:
            raise HandleRegistryError(f"Could not journal {action} of {handle}: {exc}") from exc

    @staticmethod
    def _value_payload(value: HandleValue) -> dict[str, Any]:
        if value.type == "HS_ADMIN":
            data = {"format": "admin", "value": value.data}
        else:
            data = {"format": "string", "value": str(value.data)}
        payload: dict[str, Any] = {"index": value.index, "type": value.type, "data": data}
        if value.timestamp is not None:
            stamp = value.timestamp.astimezone(timezone.utc)
            payload["timestamp"] = stamp.strftime("%Y-%m-%dT%H:%M:%SZ")
        return payload
