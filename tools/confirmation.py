"""
Confirmation Gate
-----------------
Human-in-the-loop separation between the unconfirmed and confirmed paths.

Security invariant:
- A tool that requires confirmation (statically, via its destructive hint,
  or because its predicate says so for this input) is never reachable
  through execute(). The attempt is rejected before validation, flagged
  in the audit log and logged as a bypass attempt.
- confirm() accepts only confirmation-gated tools and is the sole path
  that runs their side effects.

Proposals add an explicit two-step flow on top:

    PROPOSED -> CONFIRMED -> EXECUTED
    PROPOSED -> REJECTED        (denied or expired)

Every path appends exactly one finished audit entry, including paths
where the executor itself crashes and streams the client abandons.
"""

from dataclasses import dataclass, field
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple
import asyncio
import logging
import time
import uuid

from api.rate_limiter import RateLimitConfig, RateLimiter
from core.errors import ErrorKind, FieldError, InputValidationError, InvalidTransitionError
from infra.audit import AuditAction, AuditLog, PendingAuditEntry

from .context import CallerContext, InvocationRequest
from .executor import ExecutionResult, StreamChunk, ToolExecutor
from .registry import ToolDescriptor, ToolRegistry
from .validation import to_jsonable, validate_input


class ProposalState(str, Enum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"
    REJECTED = "rejected"


_TRANSITIONS = {
    ProposalState.PROPOSED: {ProposalState.CONFIRMED, ProposalState.REJECTED},
    ProposalState.CONFIRMED: {ProposalState.EXECUTED},
    ProposalState.EXECUTED: set(),
    ProposalState.REJECTED: set(),
}


@dataclass
class Proposal:
    """A gated tool call awaiting a human decision. No side effects yet."""
    id: str
    tool_name: str
    input: Any
    identity: str
    created_at: float
    expires_at: float
    state: ProposalState = ProposalState.PROPOSED
    result: Optional[ExecutionResult] = field(default=None, repr=False)

    def transition(self, new_state: ProposalState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Proposal {self.id}: {self.state.value} -> {new_state.value} not allowed"
            )
        self.state = new_state

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        data = {
            "proposal_id": self.id,
            "tool": self.tool_name,
            "input": to_jsonable(self.input),
            "state": self.state.value,
        }
        if now is not None:
            data["expires_in_seconds"] = round(max(0.0, self.expires_at - now), 3)
        return data


class ConfirmationGate:
    """
    Wraps the executor with rate limiting, the HITL policy and auditing.

    Two limiters: the unconfirmed path (default 10 per 10s) and the stricter
    confirmed path (default 5 per 10s).
    """

    def __init__(
        self,
        registry: ToolRegistry,
        executor: ToolExecutor,
        audit_log: Optional[AuditLog] = None,
        execute_limiter: Optional[RateLimiter] = None,
        confirm_limiter: Optional[RateLimiter] = None,
        proposal_ttl: float = 300.0,
        max_pending_proposals: int = 1000,
        clock: Callable[[], float] = time.monotonic
    ):
        self.registry = registry
        self.executor = executor
        self.audit = audit_log if audit_log is not None else AuditLog()
        self.execute_limiter = execute_limiter or RateLimiter(
            RateLimitConfig(max_requests=10, window_seconds=10.0), name="execute"
        )
        self.confirm_limiter = confirm_limiter or RateLimiter(
            RateLimitConfig(max_requests=5, window_seconds=10.0), name="confirm"
        )
        self.proposal_ttl = proposal_ttl
        self.max_pending_proposals = max_pending_proposals
        self._clock = clock
        self._proposals: Dict[str, Proposal] = {}
        self._lock = Lock()
        self._stop = Event()
        self._sweeper: Optional[Thread] = None
        self._logger = logging.getLogger("toolgate.tools.confirmation")

    # Paths

    async def execute(self, request: InvocationRequest) -> ExecutionResult:
        """Unconfirmed path. Rejects every confirmation-gated call."""
        caller = request.caller
        pending = self.audit.create_entry(
            AuditAction.TOOL_EXECUTE, _tool_label(request.tool), caller.identity, caller.request_id
        )

        descriptor, rejected = self._admit_unconfirmed(request, pending)
        if rejected is not None:
            return self._finish(pending, rejected)

        result = await self._run(descriptor.name, request.input, caller)
        return self._finish(pending, result)

    async def execute_stream(self, request: InvocationRequest) -> AsyncIterator[StreamChunk]:
        """
        Unconfirmed path, streamed. Same admission rules as execute().

        The audit entry is finished when the final chunk is produced, or
        with a failure when the consumer closes the stream early.
        """
        caller = request.caller
        pending = self.audit.create_entry(
            AuditAction.TOOL_EXECUTE, _tool_label(request.tool), caller.identity, caller.request_id
        )

        descriptor, rejected = self._admit_unconfirmed(request, pending)
        if rejected is not None:
            yield StreamChunk.final(self._finish(pending, rejected))
            return

        stream = self.executor.run_stream(descriptor.name, request.input, caller)
        try:
            try:
                async for chunk in stream:
                    if chunk.done:
                        self._finish(pending, chunk.result)
                    yield chunk
            except Exception as e:
                if not pending.finished:
                    yield StreamChunk.final(self._finish(pending, self._crashed(descriptor.name, caller, e)))
        finally:
            await stream.aclose()
            if not pending.finished:
                self._finish(pending, ExecutionResult.failure(
                    descriptor.name, ErrorKind.EXECUTION_FAILED,
                    request_id=caller.request_id,
                    internal_error="Stream closed before completion",
                ), flagged=False)

    async def confirm(self, request: InvocationRequest) -> ExecutionResult:
        """Confirmed path. Accepts only confirmation-gated tools."""
        caller = request.caller
        pending = self.audit.create_entry(
            AuditAction.TOOL_CONFIRM, _tool_label(request.tool), caller.identity, caller.request_id
        )

        early = self._precheck(self.confirm_limiter, request)
        if early is not None:
            return self._finish(pending, early)

        descriptor = self.registry.get(request.tool)
        if descriptor is None:
            return self._finish(pending, self._not_found(request))

        if not descriptor.confirmation_gated:
            result = ExecutionResult.failure(
                descriptor.name, ErrorKind.POLICY_BLOCKED,
                request_id=caller.request_id,
                internal_error="Non-gated tool requested on the confirmed path",
            )
            return self._finish(pending, result)

        result = await self._run(descriptor.name, request.input, caller)
        return self._finish(pending, result)

    async def execute_batch(self, requests: Iterable[InvocationRequest]) -> List[ExecutionResult]:
        """Unconfirmed path for each call, concurrently."""
        return list(await asyncio.gather(*(self.execute(r) for r in requests)))

    # Proposals

    async def propose(self, request: InvocationRequest) -> ExecutionResult:
        """Validate a gated call and park it for a human decision."""
        caller = request.caller
        pending = self.audit.create_entry(
            AuditAction.TOOL_PROPOSE, _tool_label(request.tool), caller.identity, caller.request_id
        )

        early = self._precheck(self.execute_limiter, request)
        if early is not None:
            return self._finish(pending, early)

        descriptor = self.registry.get(request.tool)
        if descriptor is None:
            return self._finish(pending, self._not_found(request))

        if not descriptor.confirmation_gated:
            result = ExecutionResult.failure(
                descriptor.name, ErrorKind.POLICY_BLOCKED,
                request_id=caller.request_id,
                internal_error="Proposal requested for a non-gated tool",
            )
            return self._finish(pending, result)

        try:
            validate_input(descriptor, request.input)
        except InputValidationError as e:
            result = ExecutionResult.failure(
                descriptor.name, ErrorKind.VALIDATION_ERROR,
                request_id=caller.request_id,
                internal_error=str(e),
                field_errors=e.field_errors,
            )
            return self._finish(pending, result)

        if not self._has_proposal_room():
            self._logger.warning(f"Proposal store full ({self.max_pending_proposals}), refusing {descriptor.name}")
            result = ExecutionResult.failure(
                descriptor.name, ErrorKind.RATE_LIMITED,
                request_id=caller.request_id,
                internal_error="Pending proposal limit reached",
                message="Too many pending proposals",
            )
            return self._finish(pending, result)

        proposal = self._create_proposal(descriptor, request)
        self._logger.info(f"Proposal {proposal.id} created for {descriptor.name}")
        result = ExecutionResult(
            tool_name=descriptor.name,
            output=proposal.to_dict(self._clock()),
            request_id=caller.request_id,
        )
        return self._finish(pending, result)

    async def resolve(
        self,
        proposal_id: str,
        approved: bool,
        caller: Optional[CallerContext] = None
    ) -> ExecutionResult:
        """Approve (execute) or deny a proposal. Only its creator may resolve it."""
        caller = caller or CallerContext()

        with self._lock:
            proposal = self._proposals.get(proposal_id)
            if proposal is not None and proposal.identity != caller.identity:
                proposal = None

        pending = self.audit.create_entry(
            AuditAction.TOOL_CONFIRM,
            proposal.tool_name if proposal else "unknown",
            caller.identity,
            caller.request_id,
        )

        if not self.confirm_limiter.check(caller.identity):
            return self._finish(pending, self._rate_limited(self.confirm_limiter, caller, pending.tool_name))

        if proposal is None:
            result = ExecutionResult.failure(
                "unknown", ErrorKind.NOT_FOUND,
                request_id=caller.request_id,
                internal_error=f"Unknown proposal: {proposal_id}",
                message="Proposal not found",
            )
            return self._finish(pending, result)

        with self._lock:
            try:
                if proposal.is_expired(self._clock()):
                    proposal.transition(ProposalState.REJECTED)
                    rejection = "Proposal expired"
                elif not approved:
                    proposal.transition(ProposalState.REJECTED)
                    rejection = "Proposal rejected"
                else:
                    proposal.transition(ProposalState.CONFIRMED)
                    rejection = None
            except InvalidTransitionError as e:
                result = ExecutionResult.failure(
                    proposal.tool_name, ErrorKind.POLICY_BLOCKED,
                    request_id=caller.request_id,
                    internal_error=str(e),
                    message="Proposal already resolved",
                )
                return self._finish(pending, result)
            if rejection is not None:
                self._proposals.pop(proposal.id, None)

        if rejection is not None:
            self._logger.info(f"{rejection}: {proposal.id} ({proposal.tool_name})")
            result = ExecutionResult.failure(
                proposal.tool_name, ErrorKind.POLICY_BLOCKED,
                request_id=caller.request_id,
                internal_error=rejection,
                message=rejection,
            )
            return self._finish(pending, result, flagged=False)

        result = await self._run(proposal.tool_name, proposal.input, caller)
        with self._lock:
            proposal.transition(ProposalState.EXECUTED)
            proposal.result = result
            self._proposals.pop(proposal.id, None)
        return self._finish(pending, result)

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self._lock:
            return self._proposals.get(proposal_id)

    def pending_proposals(self) -> List[Proposal]:
        with self._lock:
            return [p for p in self._proposals.values() if p.state is ProposalState.PROPOSED]

    def purge_expired(self) -> int:
        """Reject and drop proposals nobody resolved in time."""
        now = self._clock()
        with self._lock:
            # Confirmed proposals are mid-execution; resolve() drops them
            stale = [
                p for p in self._proposals.values()
                if p.state is ProposalState.PROPOSED and p.is_expired(now)
            ]
            for proposal in stale:
                proposal.transition(ProposalState.REJECTED)
                del self._proposals[proposal.id]
        return len(stale)

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Purge expired proposals every `interval` seconds (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = Thread(
            target=self._sweep_loop,
            args=(interval,),
            name="proposal-sweep",
            daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                purged = self.purge_expired()
                if purged:
                    self._logger.debug(f"Purged {purged} expired proposals")
            except Exception as e:
                self._logger.error(f"Proposal sweep failed: {e}")

    # Helpers

    def _admit_unconfirmed(
        self,
        request: InvocationRequest,
        pending: PendingAuditEntry
    ) -> Tuple[Optional[ToolDescriptor], Optional[ExecutionResult]]:
        """Rate limit, lookup and the HITL block for the unconfirmed path."""
        caller = request.caller
        early = self._precheck(self.execute_limiter, request)
        if early is not None:
            return None, early

        descriptor = self.registry.get(request.tool)
        if descriptor is None:
            return None, self._not_found(request)

        if descriptor.should_confirm(request.input):
            self._logger.warning(
                f"HITL bypass attempt: {descriptor.name} via unconfirmed path from {caller.identity}"
            )
            pending.action = AuditAction.TOOL_BLOCKED.value
            return descriptor, ExecutionResult.failure(
                descriptor.name, ErrorKind.CONFIRMATION_REQUIRED,
                request_id=caller.request_id,
                internal_error="Confirmation-gated tool requested on the unconfirmed path",
            )
        return descriptor, None

    async def _run(self, tool_name: str, raw_input: Any, caller: CallerContext) -> ExecutionResult:
        try:
            return await self.executor.run(tool_name, raw_input, caller)
        except Exception as e:
            return self._crashed(tool_name, caller, e)

    def _crashed(self, tool_name: str, caller: CallerContext, exc: Exception) -> ExecutionResult:
        self._logger.exception(f"Executor crashed running {tool_name}")
        return ExecutionResult.failure(
            tool_name, ErrorKind.EXECUTION_FAILED,
            request_id=caller.request_id,
            internal_error=f"{type(exc).__name__}: {exc}",
        )

    def _has_proposal_room(self) -> bool:
        with self._lock:
            if len(self._proposals) < self.max_pending_proposals:
                return True
        self.purge_expired()
        with self._lock:
            return len(self._proposals) < self.max_pending_proposals


    def _create_proposal(self, descriptor: ToolDescriptor, request: InvocationRequest) -> Proposal:
        now = self._clock()
        proposal = Proposal(
            id=uuid.uuid4().hex[:12],
            tool_name=descriptor.name,
            input=request.input,
            identity=request.caller.identity,
            created_at=now,
            expires_at=now + self.proposal_ttl,
        )
        with self._lock:
            self._proposals[proposal.id] = proposal
        return proposal

    def _precheck(self, limiter: RateLimiter, request: InvocationRequest) -> Optional[ExecutionResult]:
        """Rate limit, then the tool name. Both run before any lookup."""
        caller = request.caller
        if not limiter.check(caller.identity):
            return self._rate_limited(limiter, caller, _tool_label(request.tool))

        if not request.tool or not isinstance(request.tool, str):
            return ExecutionResult.failure(
                "unknown", ErrorKind.VALIDATION_ERROR,
                request_id=caller.request_id,
                internal_error="Missing tool name",
                message="Missing tool name",
                field_errors=[FieldError("tool", "Missing tool name")],
            )
        return None

    def _rate_limited(self, limiter: RateLimiter, caller: CallerContext, tool_name: str) -> ExecutionResult:
        info = limiter.info(caller.identity)
        return ExecutionResult.failure(
            tool_name, ErrorKind.RATE_LIMITED,
            request_id=caller.request_id,
            internal_error=f"{limiter.name} limit of {info.limit} reached",
            rate_limit=info,
        )

    def _not_found(self, request: InvocationRequest) -> ExecutionResult:
        return ExecutionResult.failure(
            request.tool, ErrorKind.NOT_FOUND,
            request_id=request.caller.request_id,
            internal_error=f"Unknown tool: {request.tool!r}",
        )

    def _finish(
        self,
        pending: PendingAuditEntry,
        result: ExecutionResult,
        flagged: Optional[bool] = None
    ) -> ExecutionResult:
        if flagged is None:
            flagged = result.error_kind is not None and result.error_kind.is_policy
        self.audit.log(pending.finish(
            success=result.success,
            reason=result.internal_error or result.error,
            error_kind=result.error_kind,
            flagged=flagged,
        ))
        return result


def _tool_label(tool: Any) -> str:
    return tool if isinstance(tool, str) and tool else "unknown"
