"""
Tool Service Client
-------------------
httpx client for the tool service, with local dual-mode execution.

run() executes a tool in-process with an UNTRUSTED context when the local
registry has an unprivileged handler for it; everything else goes to the
server, where the privileged handler and its secrets live. Local runs are
appended to the audit log when one is given.

stream() consumes /api/tools/stream and yields each server-sent event as
{"event": ..., "data": ...}.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Any, AsyncIterator, Dict, List, Optional
import json as jsonlib
import logging

import httpx

from infra.audit import AuditAction, AuditLog
from tools.context import CallerContext, TrustLevel
from tools.executor import ToolExecutor
from tools.registry import ToolRegistry


class ClientStatus(Enum):
    """Outcome of a client call."""
    SUCCESS = auto()
    VALIDATION_ERROR = auto()
    NOT_FOUND = auto()
    POLICY_BLOCKED = auto()
    RATE_LIMITED = auto()
    UNAUTHORIZED = auto()
    SERVER_ERROR = auto()
    TIMEOUT = auto()
    NETWORK_ERROR = auto()


@dataclass
class ToolClientResponse:
    """Response from a tool call."""
    status: ClientStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    status_code: int = 0
    response_time_ms: float = 0.0
    local: bool = False
    retry_after: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == ClientStatus.SUCCESS


_LOCAL_STATUS = {
    None: ClientStatus.SUCCESS,
    "validation_error": ClientStatus.VALIDATION_ERROR,
    "not_found": ClientStatus.NOT_FOUND,
    "execution_failed": ClientStatus.SERVER_ERROR,
}


class ToolClient:
    """
    Client for /api/tools.

    Rules:
    - Local execution only ever uses unprivileged handlers
    - No secrets are held or sent by the client
    """

    def __init__(
        self,
        base_url: str,
        registry: Optional[ToolRegistry] = None,
        identity: str = "client",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        audit_log: Optional[AuditLog] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.identity = identity
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._registry = registry
        self.audit = audit_log
        self._local = ToolExecutor(registry, secrets={}) if registry is not None else None
        self._logger = logging.getLogger("toolgate.api.client")

    async def run(self, tool_name: str, tool_input: Any) -> ToolClientResponse:
        """Run locally when an unprivileged handler exists, otherwise remotely."""
        descriptor = self._registry.get(tool_name) if self._registry is not None else None
        if (
            descriptor is not None
            and descriptor.has_client_handler
            and not descriptor.should_confirm(tool_input)
        ):
            return await self._run_local(tool_name, tool_input)
        return await self.execute(tool_name, tool_input)

    async def _run_local(self, tool_name: str, tool_input: Any) -> ToolClientResponse:
        caller = CallerContext(identity=self.identity, trust=TrustLevel.UNTRUSTED)
        pending = None
        if self.audit is not None:
            pending = self.audit.create_entry(
                AuditAction.TOOL_EXECUTE, tool_name, caller.identity, caller.request_id
            )
        result = await self._local.run(tool_name, tool_input, caller)
        if pending is not None:
            self.audit.log(pending.finish(
                success=result.success,
                reason=result.internal_error or result.error,
                error_kind=result.error_kind,
            ))
        kind = result.public_kind.value if result.public_kind else None
        return ToolClientResponse(
            status=_LOCAL_STATUS.get(kind, ClientStatus.SERVER_ERROR),
            data=result.to_response(),
            error=result.error,
            response_time_ms=result.execution_time_ms,
            local=True,
        )

    async def execute(self, tool_name: str, tool_input: Any) -> ToolClientResponse:
        """Unconfirmed remote execution."""
        return await self._request("POST", "/api/tools/execute", json={"tool": tool_name, "input": tool_input})

    async def confirm(self, tool_name: str, tool_input: Any) -> ToolClientResponse:
        """Confirmed remote execution (after a human approved it)."""
        return await self._request("POST", "/api/tools/confirm", json={"tool": tool_name, "input": tool_input})

    async def propose(self, tool_name: str, tool_input: Any) -> ToolClientResponse:
        return await self._request("POST", "/api/tools/propose", json={"tool": tool_name, "input": tool_input})

    async def resolve(self, proposal_id: str, approved: bool) -> ToolClientResponse:
        return await self._request("POST", f"/api/tools/proposals/{proposal_id}", json={"approved": approved})

    async def batch(self, calls: List[Dict[str, Any]]) -> ToolClientResponse:
        return await self._request("POST", "/api/tools/batch", json={"calls": calls})

    async def list_tools(self) -> ToolClientResponse:
        return await self._request("GET", "/api/tools")

    async def stream(self, tool_name: str, tool_input: Any) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield {"event", "data"} per server-sent event until the stream ends.

        Rejections answered with plain JSON, and network failures, come
        through as a single "error" event.
        """
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", "/api/tools/stream", json={"tool": tool_name, "input": tool_input}
                ) as response:
                    content_type = response.headers.get("content-type", "")
                    if not content_type.startswith("text/event-stream"):
                        body = await response.aread()
                        try:
                            data = jsonlib.loads(body) if body else None
                        except ValueError:
                            data = None
                        yield {"event": "error", "data": data, "status_code": response.status_code}
                        return

                    event, data_lines = "message", []
                    async for line in response.aiter_lines():
                        if line.startswith("event:"):
                            event = line[6:].strip()
                        elif line.startswith("data:"):
                            data_lines.append(line[5:].strip())
                        elif not line and data_lines:
                            yield {"event": event, "data": jsonlib.loads("\n".join(data_lines))}
                            event, data_lines = "message", []
                    if data_lines:
                        yield {"event": event, "data": jsonlib.loads("\n".join(data_lines))}
        except httpx.HTTPError as e:
            self._logger.error(f"Stream of {tool_name} failed: {e}")
            yield {"event": "error", "data": {"error": f"Network error: {e}"}}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={"User-Agent": "toolgate-client/0.1"},
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict] = None
    ) -> ToolClientResponse:
        """Make an HTTP request and map the status code."""
        start_time = datetime.now()

        try:
            async with self._client() as client:
                response = await client.request(method, endpoint, json=json)
        except httpx.TimeoutException:
            return ToolClientResponse(status=ClientStatus.TIMEOUT, error="Request timed out")
        except httpx.HTTPError as e:
            self._logger.error(f"Request to {endpoint} failed: {e}")
            return ToolClientResponse(status=ClientStatus.NETWORK_ERROR, error=f"Network error: {e}")

        response_time = (datetime.now() - start_time).total_seconds() * 1000
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None

        code = response.status_code
        if code == 200:
            status = ClientStatus.SUCCESS
        elif code == 429:
            status = ClientStatus.RATE_LIMITED
        elif code == 401:
            status = ClientStatus.UNAUTHORIZED
        elif code == 404:
            status = ClientStatus.NOT_FOUND
        elif code == 400:
            kind = body.get("kind") if isinstance(body, dict) else None
            if kind in ("confirmation_required", "policy_blocked"):
                status = ClientStatus.POLICY_BLOCKED
            else:
                status = ClientStatus.VALIDATION_ERROR
        else:
            status = ClientStatus.SERVER_ERROR

        retry_after = response.headers.get("Retry-After")
        return ToolClientResponse(
            status=status,
            data=body,
            error=error if status != ClientStatus.SUCCESS else None,
            status_code=code,
            response_time_ms=response_time,
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
        )

    def close(self) -> None:
        if self._local is not None:
            self._local.shutdown()
