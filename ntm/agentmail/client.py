"""Async client for the MCP Agent Mail server.

Every call is a JSON-RPC 2.0 POST to the MCP endpoint. Tool results arrive
in an MCP envelope that `extract_mcp_content` unwraps; failures surface as
NtmError with a kind the refresh orchestrator and coordinator act on.
"""

from __future__ import annotations

import itertools
import json
from typing import Any, Optional
from urllib.parse import quote

import httpx
from instrukt_ai_logging import get_logger
from pydantic import TypeAdapter, ValidationError

from ntm.agentmail.models import (
    Agent,
    FileReservation,
    ForceReleaseResult,
    HealthStatus,
    InboxMessage,
    Project,
    SendResult,
)
from ntm.constants import AGENT_MAIL_DEFAULT_URL, AGENT_MAIL_TIMEOUT_S
from ntm.core.errors import ErrorKind, NtmError, from_http_status, wrap_error

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_S = 2.0


def extract_mcp_content(operation: str, result: Any) -> Any:
    """Unwrap an MCP tool result envelope.

    Bare results (anything without `content`/`structuredContent`/`isError`)
    pass through unchanged. `structuredContent` wins over text content; text
    content is parsed as JSON when possible and returned raw otherwise.

    Raises:
        NtmError: when the envelope carries isError=true
    """
    if not isinstance(result, dict) or not result:
        return result
    if not any(key in result for key in ("content", "structuredContent", "isError")):
        return result

    text = _first_text(result.get("content"))
    if result.get("isError"):
        raise NtmError(ErrorKind.UNKNOWN, operation, text or "tool returned error")

    structured = result.get("structuredContent")
    if structured is not None:
        return structured
    if text is None:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _first_text(content: Any) -> Optional[str]:
    if not isinstance(content, list):
        return None
    for item in content:
        if isinstance(item, dict) and item.get("type", "text") == "text" and isinstance(item.get("text"), str):
            return item["text"]
    return None


def _unwrap_list(data: Any) -> Any:
    """Tool lists come either bare or wrapped as {"result": [...]}."""
    if isinstance(data, dict) and isinstance(data.get("result"), list):
        return data["result"]
    return data


class AgentMailClient:
    """JSON-RPC client for Agent Mail tools and resources."""

    def __init__(
        self,
        base_url: str = AGENT_MAIL_DEFAULT_URL,
        token: str = "",
        timeout: float = AGENT_MAIL_TIMEOUT_S,
        project_key: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: MCP endpoint URL
            token: Bearer token; omitted from requests when empty
            timeout: Default request timeout in seconds
            project_key: Default project key (absolute project path)
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.token = token
        self.timeout = timeout
        self.project_key = project_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        if self._client is not None:
            return
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(headers=headers, timeout=self.timeout, transport=self._transport)

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AgentMailClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # --- Transport ---

    async def _rpc(self, operation: str, method: str, params: dict[str, Any], timeout: Optional[float] = None) -> Any:
        """POST one JSON-RPC request and return its `result` member.

        Raises:
            NtmError: transport, timeout, HTTP status or RPC error
        """
        await self.connect()
        assert self._client is not None
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}
        try:
            resp = await self._client.post(self.base_url, json=body, timeout=timeout or self.timeout)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise from_http_status(operation, e.response.status_code, e.response.text) from e
        except httpx.HTTPError as e:
            raise wrap_error(operation, e) from e

        try:
            payload = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise NtmError(ErrorKind.VALIDATION, operation, f"invalid JSON-RPC response: {e}") from e
        if not isinstance(payload, dict):
            raise NtmError(ErrorKind.VALIDATION, operation, "invalid JSON-RPC response")

        error = payload.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            data = error.get("data") if isinstance(error, dict) else None
            text = f"JSON-RPC error {code}: {message}"
            if data:
                text += f" ({data})"
            raise NtmError(ErrorKind.UNKNOWN, operation, text, status_code=code, detail=data)
        return payload.get("result")

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Invoke an MCP tool and return its unwrapped content."""
        result = await self._rpc(name, "tools/call", {"name": name, "arguments": arguments or {}}, timeout=timeout)
        return extract_mcp_content(name, result)

    async def read_resource(self, uri: str, timeout: Optional[float] = None) -> Any:
        return await self._rpc(uri.split("?", 1)[0], "resources/read", {"uri": uri}, timeout=timeout)

    def _key(self, project_key: str) -> str:
        key = project_key or self.project_key
        if not key:
            raise NtmError(ErrorKind.VALIDATION, "agentmail", "project key is required")
        return key

    # --- Health ---

    async def health_check(self) -> HealthStatus:
        data = await self.call_tool("health_check", {}, timeout=HEALTH_CHECK_TIMEOUT_S)
        if isinstance(data, dict):
            return HealthStatus.model_validate(data)
        return HealthStatus(status=str(data or ""))

    async def is_available(self) -> bool:
        """True when the server answers a health check."""
        try:
            await self.health_check()
        except NtmError as e:
            logger.debug("Agent Mail unavailable at %s: %s", self.base_url, e)
            return False
        return True

    # --- Projects and agents ---

    async def ensure_project(self, project_key: str = "") -> Project:
        data = await self.call_tool("ensure_project", {"human_key": self._key(project_key)})
        return _validate(Project, data, "ensure_project")

    async def register_agent(
        self,
        program: str,
        model: str,
        name: str = "",
        task_description: str = "",
        project_key: str = "",
    ) -> Agent:
        args: dict[str, Any] = {"project_key": self._key(project_key), "program": program, "model": model}
        if name:
            args["name"] = name
        if task_description:
            args["task_description"] = task_description
        data = await self.call_tool("register_agent", args)
        return _validate(Agent, data, "register_agent")

    async def list_project_agents(self, project_key: str = "") -> list[Agent]:
        uri = f"resource://agents/{quote(self._key(project_key), safe='')}"
        text = _resource_text(await self.read_resource(uri))
        if not text:
            return []
        data = _parse_resource_json(uri, text)
        if isinstance(data, dict) and isinstance(data.get("agents"), list):
            data = data["agents"]
        return _validate_list(Agent, data, "list_agents")

    # --- Reservations ---

    async def list_reservations(
        self, project_key: str = "", agent_name: str = "", all_agents: bool = False
    ) -> list[FileReservation]:
        """Active file reservations of a project.

        Reads the reservation resource view; older servers without it are
        served by the `list_file_reservations` then `list_reservations` tools.
        When both fallbacks fail the resource error is raised.
        """
        key = self._key(project_key)
        uri = f"resource://file_reservations/{quote(key, safe='')}?active_only=true&format=json"
        try:
            result = await self.read_resource(uri)
        except NtmError as resource_err:
            if resource_err.kind in (ErrorKind.UNAUTHORIZED, ErrorKind.CANCELED):
                raise
            return await self._list_reservations_via_tools(key, agent_name, all_agents, resource_err)

        text = _resource_text(result)
        if not text or not text.strip():
            return []
        reservations = _validate_list(FileReservation, _parse_resource_json(uri, text), "list_reservations")
        if agent_name and not all_agents:
            reservations = [r for r in reservations if r.agent_name == agent_name]
        return reservations

    async def _list_reservations_via_tools(
        self, key: str, agent_name: str, all_agents: bool, resource_err: NtmError
    ) -> list[FileReservation]:
        args: dict[str, Any] = {"project_key": key}
        if agent_name:
            args["agent_name"] = agent_name
        if all_agents:
            args["all_agents"] = True
        for tool in ("list_file_reservations", "list_reservations"):
            try:
                data = await self.call_tool(tool, args)
            except NtmError as e:
                logger.debug("Reservation fallback %s failed: %s", tool, e)
                continue
            return _validate_list(FileReservation, _unwrap_list(data), tool)
        raise resource_err

    async def force_release_reservation(
        self,
        reservation_id: int,
        agent_name: str,
        note: str = "",
        notify_previous: bool = True,
        project_key: str = "",
    ) -> ForceReleaseResult:
        args: dict[str, Any] = {
            "project_key": self._key(project_key),
            "agent_name": agent_name,
            "file_reservation_id": reservation_id,
            "notify_previous": notify_previous,
        }
        if note:
            args["note"] = note
        data = await self.call_tool("force_release_file_reservation", args)
        return _validate(ForceReleaseResult, data, "force_release_file_reservation")

    # --- Messaging ---

    async def send_message(
        self,
        sender_name: str,
        to: list[str],
        subject: str,
        body_md: str,
        importance: str = "normal",
        ack_required: bool = False,
        thread_id: str = "",
        cc: Optional[list[str]] = None,
        project_key: str = "",
    ) -> SendResult:
        args: dict[str, Any] = {
            "project_key": self._key(project_key),
            "sender_name": sender_name,
            "to": to,
            "subject": subject,
            "body_md": body_md,
        }
        if cc:
            args["cc"] = cc
        if importance:
            args["importance"] = importance
        if ack_required:
            args["ack_required"] = True
        if thread_id:
            args["thread_id"] = thread_id
        data = await self.call_tool("send_message", args)
        if not isinstance(data, dict):
            return SendResult()
        return _validate(SendResult, data, "send_message")

    async def fetch_inbox(
        self,
        agent_name: str,
        limit: int = 0,
        urgent_only: bool = False,
        include_bodies: bool = False,
        project_key: str = "",
        timeout: Optional[float] = None,
    ) -> list[InboxMessage]:
        args: dict[str, Any] = {"project_key": self._key(project_key), "agent_name": agent_name}
        if urgent_only:
            args["urgent_only"] = True
        if limit > 0:
            args["limit"] = limit
        if include_bodies:
            args["include_bodies"] = True
        data = await self.call_tool("fetch_inbox", args, timeout=timeout)
        return _validate_list(InboxMessage, _unwrap_list(data), "fetch_inbox")

    async def mark_message_read(self, agent_name: str, message_id: int, project_key: str = "") -> None:
        await self.call_tool(
            "mark_message_read",
            {"project_key": self._key(project_key), "agent_name": agent_name, "message_id": message_id},
        )

    async def acknowledge_message(self, agent_name: str, message_id: int, project_key: str = "") -> None:
        await self.call_tool(
            "acknowledge_message",
            {"project_key": self._key(project_key), "agent_name": agent_name, "message_id": message_id},
        )


def _resource_text(result: Any) -> str:
    """First `contents[].text` of a resources/read result."""
    if not isinstance(result, dict):
        return ""
    contents = result.get("contents")
    if not isinstance(contents, list) or not contents:
        return ""
    first = contents[0]
    if isinstance(first, dict) and isinstance(first.get("text"), str):
        return first["text"]
    return ""


def _parse_resource_json(uri: str, text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise NtmError(ErrorKind.VALIDATION, uri, f"invalid resource JSON: {e}") from e


def _validate(model: Any, data: Any, operation: str) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise NtmError(ErrorKind.VALIDATION, operation, str(e)) from e


def _validate_list(model: Any, data: Any, operation: str) -> list[Any]:
    if data is None:
        return []
    try:
        return TypeAdapter(list[model]).validate_python(data)
    except ValidationError as e:
        raise NtmError(ErrorKind.VALIDATION, operation, str(e)) from e


__all__ = ["AgentMailClient", "extract_mcp_content"]
