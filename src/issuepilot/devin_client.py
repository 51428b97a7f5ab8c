from __future__ import annotations

import logging
from typing import cast

import httpx

from issuepilot.agent_client import AgentClient, AgentMessage, AgentSessionSnapshot
from issuepilot.errors import RemoteUnavailable, raise_for_status
from issuepilot.observability import log_event


LOGGER = logging.getLogger("issuepilot.devin_client")

DEFAULT_BASE_URL = "https://api.devin.ai/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0
_SERVICE = "devin"


class DevinClient(AgentClient):
    """HTTP client for the Devin sessions API."""

    service_name = _SERVICE

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def create_session(self, prompt: str, *, idempotent: bool) -> AgentSessionSnapshot:
        payload = self._request_json(
            "POST", "/sessions", json_body={"prompt": prompt, "idempotent": idempotent}
        )
        snapshot = _snapshot_from_payload(payload, default_status="working")
        log_event(
            LOGGER,
            "devin_session_created",
            session_id=snapshot.session_id,
            native_status=snapshot.native_status,
            idempotent=idempotent,
        )
        return snapshot

    def get_session(self, session_id: str) -> AgentSessionSnapshot:
        payload = self._request_json("GET", f"/session/{session_id}")
        snapshot = _snapshot_from_payload(payload, default_session_id=session_id)
        log_event(
            LOGGER,
            "devin_session_read",
            session_id=session_id,
            native_status=snapshot.native_status,
            message_count=len(snapshot.messages),
        )
        return snapshot

    def send_message(self, session_id: str, message: str) -> AgentSessionSnapshot:
        payload = self._request_json(
            "POST", f"/session/{session_id}/message", json_body={"message": message}
        )
        log_event(LOGGER, "devin_message_sent", session_id=session_id)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None or ("status_enum" not in payload_obj and "status" not in payload_obj):
            # The message endpoint may answer with an empty body.
            return self.get_session(session_id)
        return _snapshot_from_payload(payload_obj, default_session_id=session_id)

    def close(self) -> None:
        self._client.close()

    def _request_json(
        self, method: str, path: str, *, json_body: dict[str, object] | None = None
    ) -> object:
        try:
            response = self._client.request(method, path, json=json_body)
        except httpx.TimeoutException as exc:
            log_event(LOGGER, "devin_request_failed", path=path, error_type="timeout")
            raise RemoteUnavailable(_SERVICE, f"request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            log_event(
                LOGGER,
                "devin_request_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise RemoteUnavailable(_SERVICE, f"request to {path} failed: {exc}") from exc

        if not response.is_success:
            log_event(
                LOGGER,
                "devin_request_failed",
                path=path,
                status_code=response.status_code,
            )
        raise_for_status(_SERVICE, response.status_code, _error_message(response))

        if not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteUnavailable(
                _SERVICE, f"response from {path} is not valid JSON", status_code=response.status_code
            ) from exc


def _error_message(response: httpx.Response) -> str:
    text = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        return text or response.reason_phrase or "<empty>"
    payload_obj = _as_object_dict(payload)
    if payload_obj is not None:
        for key in ("detail", "message", "error"):
            value = payload_obj.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return text or "<empty>"


def _snapshot_from_payload(
    payload: object,
    *,
    default_session_id: str | None = None,
    default_status: str | None = None,
) -> AgentSessionSnapshot:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise RemoteUnavailable(_SERVICE, "unexpected response: expected object for session")

    session_id = payload_obj.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        if default_session_id is None:
            raise RemoteUnavailable(_SERVICE, "unexpected response: missing session_id")
        session_id = default_session_id

    native_status = _native_status(payload_obj) or default_status
    if native_status is None:
        raise RemoteUnavailable(_SERVICE, f"unexpected response: missing status for {session_id}")

    error_message = payload_obj.get("error_message")
    return AgentSessionSnapshot(
        session_id=session_id,
        native_status=native_status,
        structured_output=payload_obj.get("structured_output"),
        messages=_messages_from_payload(payload_obj.get("messages")),
        error_message=error_message if isinstance(error_message, str) else None,
    )


def _native_status(payload_obj: dict[str, object]) -> str | None:
    # status_enum is the machine-readable field; status is a human sentence on newer API revisions.
    for key in ("status_enum", "status"):
        value = payload_obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _messages_from_payload(value: object) -> tuple[AgentMessage, ...]:
    if not isinstance(value, list):
        return ()
    messages: list[AgentMessage] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        messages.append(
            AgentMessage(
                timestamp=_as_string(entry_obj.get("timestamp")),
                type=_as_string(entry_obj.get("type")),
                message=_as_string(entry_obj.get("message")),
            )
        )
    return tuple(messages)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)
