"""
FastAPI Service Bus
-------------------
HTTP surface of the tool engine.

Routes:
    POST /api/tools/execute         unconfirmed execution
    POST /api/tools/confirm         confirmed execution (gated tools only)
    POST /api/tools/propose         park a gated call for approval
    POST /api/tools/proposals/{id}  approve or deny a proposal
    POST /api/tools/batch           several unconfirmed calls
    POST /api/tools/stream          unconfirmed execution as server-sent events
    GET  /api/tools                 discovery
    GET  /api/tools/{name}          one tool
    GET  /health

Handlers always run server-side here (TRUSTED), so secrets stay on the
server. Caller identity comes from X-Forwarded-For, X-Real-IP, or the peer.
An optional auth resolver maps each request to a user (401 when it raises).
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Union
import inspect
import json
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from api.rate_limiter import RateLimiter
from core.errors import AuthenticationError, ErrorKind
from core.resilience import RetryPolicy
from tools.builtin import create_default_tools
from tools.cache import ResultCache
from tools.confirmation import ConfirmationGate
from tools.context import CallerContext, InvocationRequest, TrustLevel
from tools.executor import ExecutionResult, StreamChunk, ToolExecutor
from tools.registry import ToolRegistry

from .audit import AuditLog
from .config import Settings, load_audit_key, load_secrets
from .logging import RequestContext, generate_request_id


VERSION = "0.1.0"

# Maps a request to its user; raising means 401
AuthResolver = Callable[[Request], Union[Any, Awaitable[Any]]]

STATUS_CODES: Dict[Optional[ErrorKind], int] = {
    None: 200,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFIRMATION_REQUIRED: 400,
    ErrorKind.POLICY_BLOCKED: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TIMEOUT: 500,
    ErrorKind.EXECUTION_FAILED: 500,
}


# Request/Response Models

class ToolCallBody(BaseModel):
    """Body of execute/confirm/propose."""
    tool: Optional[str] = None
    input: Any = None


class ResolveBody(BaseModel):
    approved: bool


class ToolInfo(BaseModel):
    """Discovery entry."""
    name: str
    description: str
    tags: List[str] = Field(default_factory=list)
    input_schema: Dict[str, Any]
    output_schema: Optional[Dict[str, Any]] = None
    requires_confirmation: bool
    conditional_confirmation: bool
    hints: Dict[str, bool]
    cached: bool
    cache_ttl_seconds: Optional[float] = None
    retry_count: int
    timeout_seconds: Optional[float] = None
    has_client_handler: bool
    has_stream_handler: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ToolListResponse(BaseModel):
    tools: List[ToolInfo]
    count: int


class HealthResponse(BaseModel):
    status: str
    version: str = VERSION
    tools: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def caller_identity(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "anonymous"


def user_from_headers(request: Request) -> Optional[Any]:
    """
    User from the X-User JSON header, or None.

    Only safe behind a proxy that sets the header itself.
    """
    raw = request.headers.get("x-user")
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def sse_event(chunk: StreamChunk) -> str:
    """One server-sent event: partial, done or error."""
    if not chunk.done:
        event = "partial"
    elif chunk.result.success:
        event = "done"
    else:
        event = "error"
    data = json.dumps(chunk.to_dict(), default=str)
    return f"event: {event}\ndata: {data}\n\n"


async def _read_json_object(request: Request) -> Dict[str, Any]:
    """Body as a dict; anything else (invalid JSON, arrays, scalars) is {}."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def result_response(result: ExecutionResult) -> JSONResponse:
    headers = {}
    if result.request_id:
        headers["X-Request-ID"] = result.request_id
    if result.rate_limit is not None:
        headers.update(result.rate_limit.headers())
        headers["Retry-After"] = str(result.rate_limit.retry_after)
    return JSONResponse(
        status_code=STATUS_CODES.get(result.error_kind, 500),
        content=result.to_response(),
        headers=headers,
    )


class ServiceBus:
    """
    Wires registry, executor, confirmation gate and audit log into FastAPI.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        settings: Optional[Settings] = None,
        audit_log: Optional[AuditLog] = None,
        secrets: Optional[Mapping[str, str]] = None,
        execute_limiter: Optional[RateLimiter] = None,
        confirm_limiter: Optional[RateLimiter] = None,
        auth: Optional[AuthResolver] = None,
        require_auth: bool = False
    ):
        self.settings = settings or Settings()
        self.registry = registry
        if auth is None and self.settings.server.trust_user_header:
            auth = user_from_headers
        self.auth = auth
        self.require_auth = require_auth or self.settings.server.require_auth
        self.audit = audit_log if audit_log is not None else AuditLog(
            key=load_audit_key(self.settings), emit=self.settings.audit.emit_log
        )

        exec_settings = self.settings.executor
        self.executor = ToolExecutor(
            registry,
            cache=ResultCache(max_entries=exec_settings.cache_max_entries),
            retry_policy=RetryPolicy(
                base_delay=exec_settings.retry_base_delay_seconds,
                max_delay=exec_settings.retry_max_delay_seconds,
            ),
            default_timeout=exec_settings.default_timeout_seconds,
            default_cache_ttl=exec_settings.default_cache_ttl_seconds,
            secrets=secrets if secrets is not None else load_secrets(self.settings),
            max_workers=exec_settings.max_workers,
        )
        self.gate = ConfirmationGate(
            registry,
            self.executor,
            audit_log=self.audit,
            execute_limiter=execute_limiter or RateLimiter(
                self.settings.execute_rate_limit.to_config(), name="execute"
            ),
            confirm_limiter=confirm_limiter or RateLimiter(
                self.settings.confirm_rate_limit.to_config(), name="confirm"
            ),
            proposal_ttl=self.settings.proposal_ttl_seconds,
            max_pending_proposals=self.settings.proposal_max_pending,
        )
        self._logger = logging.getLogger("toolgate.infra.service_bus")
        self._app: Optional[FastAPI] = None

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            self._logger.info(f"Service bus starting with {len(self.registry)} tools")
            self.gate.execute_limiter.start()
            self.gate.confirm_limiter.start()
            self.gate.start_sweeper(self.settings.proposal_sweep_interval_seconds)
            yield
            self._logger.info("Service bus shutting down")
            self.gate.execute_limiter.stop()
            self.gate.confirm_limiter.stop()
            self.gate.stop_sweeper()
            self.executor.shutdown()

        app = FastAPI(
            title="toolgate",
            description="Schema-validated tool invocation with confirmation gates",
            version=VERSION,
            lifespan=lifespan
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.server.cors_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

        @app.exception_handler(AuthenticationError)
        async def authentication_failed(request: Request, exc: AuthenticationError):
            return JSONResponse(status_code=401, content={"error": exc.message or "Authentication failed"})

        self._register_routes(app)

        self._app = app
        return app

    async def _resolve_user(self, request: Request) -> Optional[Any]:
        if self.auth is None:
            return None
        try:
            user = self.auth(request)
            if inspect.isawaitable(user):
                user = await user
        except Exception as e:
            self._logger.warning(f"Authentication failed for {caller_identity(request)}: {e}")
            raise AuthenticationError("Authentication failed") from e
        if user is None and self.require_auth:
            raise AuthenticationError("Authentication required")
        return user

    async def _caller(self, request: Request) -> CallerContext:
        return CallerContext(
            identity=caller_identity(request),
            trust=TrustLevel.TRUSTED,
            request_id=request.headers.get("x-request-id") or generate_request_id(),
            headers=dict(request.headers),
            user=await self._resolve_user(request),
        )

    async def _invocation(self, request: Request) -> InvocationRequest:
        caller = await self._caller(request)
        body = await _read_json_object(request)
        try:
            call = ToolCallBody.model_validate(body)
        except ValidationError:
            call = ToolCallBody(tool=None, input=body.get("input"))
        return InvocationRequest(tool=call.tool, input=call.input, caller=caller)

    def _register_routes(self, app: FastAPI) -> None:
        """Register all API routes."""

        @app.get("/health", response_model=HealthResponse, tags=["System"])
        async def health_check():
            return HealthResponse(status="healthy", tools=len(self.registry))

        @app.get("/api/tools", response_model=ToolListResponse, tags=["Tools"])
        async def list_tools():
            """List registered tools with their schemas."""
            tools = [ToolInfo(**info) for info in self.registry.describe()]
            return ToolListResponse(tools=tools, count=len(tools))

        @app.get("/api/tools/{name}", tags=["Tools"])
        async def describe_tool(name: str):
            descriptor = self.registry.get(name)
            if descriptor is None:
                return JSONResponse(status_code=404, content={"error": "Tool not found"})
            return ToolInfo(**descriptor.describe())

        @app.post("/api/tools/execute", tags=["Tools"])
        async def execute_tool(request: Request):
            """Unconfirmed execution. Confirmation-gated tools are rejected."""
            invocation = await self._invocation(request)
            with RequestContext(invocation.caller.request_id):
                result = await self.gate.execute(invocation)
            return result_response(result)

        @app.post("/api/tools/confirm", tags=["Tools"])
        async def confirm_tool(request: Request):
            """Confirmed execution. Only confirmation-gated tools are accepted."""
            invocation = await self._invocation(request)
            with RequestContext(invocation.caller.request_id):
                result = await self.gate.confirm(invocation)
            return result_response(result)

        @app.post("/api/tools/propose", tags=["Proposals"])
        async def propose_tool(request: Request):
            invocation = await self._invocation(request)
            with RequestContext(invocation.caller.request_id):
                result = await self.gate.propose(invocation)
            return result_response(result)

        @app.post("/api/tools/proposals/{proposal_id}", tags=["Proposals"])
        async def resolve_proposal(proposal_id: str, request: Request):
            caller = await self._caller(request)
            body = await _read_json_object(request)
            try:
                decision = ResolveBody.model_validate(body)
            except ValidationError:
                return JSONResponse(
                    status_code=400,
                    content={"error": "Invalid input", "details": [{"path": "approved", "message": "Field required"}]},
                    headers={"X-Request-ID": caller.request_id},
                )
            with RequestContext(caller.request_id):
                result = await self.gate.resolve(proposal_id, decision.approved, caller)
            return result_response(result)

        @app.post("/api/tools/batch", tags=["Tools"])
        async def batch_tools(request: Request):
            """Run several unconfirmed calls; each one is gated and audited."""
            caller = await self._caller(request)
            body = await _read_json_object(request)
            calls = body.get("calls")
            if not isinstance(calls, list) or not calls:
                return JSONResponse(
                    status_code=400,
                    content={"error": "Missing calls"},
                    headers={"X-Request-ID": caller.request_id},
                )

            invocations = []
            for call in calls:
                call = call if isinstance(call, dict) else {}
                tool_name = call.get("tool") if isinstance(call.get("tool"), str) else None
                invocations.append(InvocationRequest(tool=tool_name, input=call.get("input"), caller=caller))

            with RequestContext(caller.request_id):
                results = await self.gate.execute_batch(invocations)

            return JSONResponse(
                status_code=200,
                content={
                    "results": [
                        {"tool": r.tool_name, "status": STATUS_CODES.get(r.error_kind, 500), **r.to_response()}
                        for r in results
                    ]
                },
                headers={"X-Request-ID": caller.request_id},
            )

        @app.post("/api/tools/stream", tags=["Tools"])
        async def stream_tool(request: Request):
            """
            Unconfirmed execution as server-sent events.

            A call rejected before its first partial gets the usual JSON
            error and status code instead of a stream.
            """
            invocation = await self._invocation(request)
            request_id = invocation.caller.request_id
            chunks = self.gate.execute_stream(invocation)

            async def next_chunk() -> Optional[StreamChunk]:
                with RequestContext(request_id):
                    try:
                        return await chunks.__anext__()
                    except StopAsyncIteration:
                        return None

            first = await next_chunk()
            if first is not None and first.done and not first.result.success:
                await chunks.aclose()
                return result_response(first.result)

            async def events() -> AsyncIterator[str]:
                chunk = first
                try:
                    while chunk is not None:
                        yield sse_event(chunk)
                        if chunk.done:
                            break
                        chunk = await next_chunk()
                finally:
                    with RequestContext(request_id):
                        await chunks.aclose()

            return StreamingResponse(
                events(),
                media_type="text/event-stream",
                headers={"X-Request-ID": request_id, "Cache-Control": "no-cache"},
            )


def create_app(
    registry: Optional[ToolRegistry] = None,
    settings: Optional[Settings] = None,
    **kwargs
) -> FastAPI:
    """Create the FastAPI application (demo tools when no registry is given)."""
    settings = settings or Settings()
    if registry is None:
        registry = create_default_tools() if settings.server.demo_tools else ToolRegistry()
    bus = ServiceBus(registry, settings=settings, **kwargs)
    return bus.create_app()
