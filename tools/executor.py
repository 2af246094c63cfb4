"""
Tool Executor
-------------
Validation, handler selection and the resilience wrapper.

run() is the single entry point:
1. Look up the descriptor (NOT_FOUND)
2. Validate input (VALIDATION_ERROR with field detail)
3. Pick the handler from the caller's trust level
4. Cache lookup, then retry loop, each attempt racing a deadline
5. Non-fatal output validation

Timed-out attempts keep running in the background. Their late results
are discarded and never cached.

run_stream() is the streaming variant: partial outputs from the tool's
stream handler, then one final chunk carrying the ExecutionResult.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple
import asyncio
import contextvars
import functools
import inspect
import logging
import time

from core.errors import (
    ErrorHandler, ErrorKind, FieldError, HandlerMissingError,
    InputValidationError, ToolFailure, ToolTimeoutError, public_message,
)
from core.resilience import AbandonedAttempts, RetryPolicy, run_with_timeout

from .cache import ResultCache
from .context import CallerContext, HandlerContext
from .registry import Handler, StreamHandler, ToolDescriptor, ToolRegistry
from .validation import canonicalize, to_jsonable, validate_input, validate_output

if TYPE_CHECKING:
    from api.rate_limiter import RateLimitInfo


@dataclass
class ExecutionResult:
    """Result of one invocation: success payload or structured failure."""
    tool_name: str
    error_kind: Optional[ErrorKind] = None
    output: Any = None
    error: Optional[str] = None
    field_errors: List[FieldError] = field(default_factory=list)
    attempts: int = 0
    cached: bool = False
    execution_time_ms: float = 0.0
    rate_limit: Optional["RateLimitInfo"] = None
    request_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Full failure detail for logs and audit only
    internal_error: Optional[str] = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.error_kind is None

    @property
    def public_kind(self) -> Optional[ErrorKind]:
        return self.error_kind.public_kind if self.error_kind else None

    @property
    def needs_confirmation(self) -> bool:
        return self.error_kind is ErrorKind.CONFIRMATION_REQUIRED

    @classmethod
    def failure(
        cls,
        tool_name: str,
        kind: ErrorKind,
        request_id: Optional[str] = None,
        internal_error: Optional[str] = None,
        message: Optional[str] = None,
        **kwargs
    ) -> "ExecutionResult":
        return cls(
            tool_name=tool_name,
            error_kind=kind,
            error=message or public_message(kind),
            request_id=request_id,
            internal_error=internal_error,
            **kwargs
        )

    def to_response(self) -> Dict[str, Any]:
        """Caller-safe body."""
        if self.success:
            return {"result": self.output, "cached": self.cached}

        body: Dict[str, Any] = {"error": self.error, "kind": self.public_kind.value}
        if self.field_errors:
            body["details"] = [e.to_dict() for e in self.field_errors]
        if self.rate_limit is not None:
            body.update(self.rate_limit.to_dict())
        return body

    def __repr__(self) -> str:
        status = "✓" if self.success else "✗"
        detail = self.output if self.success else self.error_kind.value
        return f"ExecutionResult({status} {self.tool_name}: {detail})"


@dataclass
class StreamChunk:
    """One streamed item: a partial output, or the final result."""
    partial: Any = None
    done: bool = False
    result: Optional[ExecutionResult] = None

    @classmethod
    def final(cls, result: ExecutionResult) -> "StreamChunk":
        return cls(partial=result.output, done=True, result=result)

    def to_dict(self) -> Dict[str, Any]:
        if not self.done:
            return {"partial": self.partial, "done": False}
        return {**self.result.to_response(), "done": True}


_NOTHING = object()


class ToolExecutor:
    """
    Dual-mode tool executor.

    Rules:
    - Untrusted callers get the unprivileged handler when one exists
    - Only the privileged handler ever sees secrets
    - Failures are sanitized before reaching the caller
    """

    def __init__(
        self,
        registry: ToolRegistry,
        cache: Optional[ResultCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        default_timeout: Optional[float] = 30.0,
        default_cache_ttl: float = 60.0,
        secrets: Optional[Mapping[str, str]] = None,
        max_workers: int = 8,
        error_handler: Optional[ErrorHandler] = None
    ):
        self.registry = registry
        self.cache = cache if cache is not None else ResultCache()
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_timeout = default_timeout
        self.default_cache_ttl = default_cache_ttl
        self.errors = error_handler or ErrorHandler()
        self.abandoned = AbandonedAttempts()
        self._secrets = dict(secrets or {})
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="toolgate-handler")
        self._logger = logging.getLogger("toolgate.tools.executor")

    async def run(
        self,
        tool_name: str,
        raw_input: Any,
        caller: Optional[CallerContext] = None
    ) -> ExecutionResult:
        """Look up, validate and execute one tool call."""
        caller = caller or CallerContext()
        start = time.perf_counter()

        descriptor = self.registry.get(tool_name)
        if descriptor is None:
            self._logger.info(f"Unknown tool requested: {tool_name!r}")
            return ExecutionResult.failure(
                str(tool_name), ErrorKind.NOT_FOUND,
                request_id=caller.request_id,
                internal_error=f"Unknown tool: {tool_name!r}",
            )

        try:
            validated = validate_input(descriptor, raw_input)
        except InputValidationError as e:
            self._logger.info(f"Validation failed for {descriptor.name}: {e}")
            return ExecutionResult.failure(
                descriptor.name, ErrorKind.VALIDATION_ERROR,
                request_id=caller.request_id,
                internal_error=str(e),
                field_errors=e.field_errors,
                execution_time_ms=_elapsed_ms(start),
            )

        return await self._execute(descriptor, validated, caller, start)

    async def execute_batch(
        self,
        calls: Iterable[Tuple[str, Any]],
        caller: Optional[CallerContext] = None
    ) -> List[ExecutionResult]:
        """Run independent calls concurrently; order of results matches calls."""
        caller = caller or CallerContext()
        return list(await asyncio.gather(
            *(self.run(name, raw, caller) for name, raw in calls)
        ))

    async def run_stream(
        self,
        tool_name: str,
        raw_input: Any,
        caller: Optional[CallerContext] = None
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream partial outputs, then exactly one final chunk.

        Tools without a stream handler fall back to run() and yield only
        the final chunk, as do untrusted callers of tools that have an
        unprivileged handler. Streams are neither cached nor retried; the
        timeout bounds the whole stream.
        """
        caller = caller or CallerContext()
        descriptor = self.registry.get(tool_name)
        if (
            descriptor is None
            or not descriptor.has_stream_handler
            or (not caller.trusted and descriptor.has_client_handler)
        ):
            yield StreamChunk.final(await self.run(tool_name, raw_input, caller))
            return

        start = time.perf_counter()
        try:
            validated = validate_input(descriptor, raw_input)
        except InputValidationError as e:
            yield StreamChunk.final(ExecutionResult.failure(
                descriptor.name, ErrorKind.VALIDATION_ERROR,
                request_id=caller.request_id,
                internal_error=str(e),
                field_errors=e.field_errors,
                execution_time_ms=_elapsed_ms(start),
            ))
            return

        ctx = HandlerContext.privileged(caller, self._secrets)
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.ensure_future(_pump(descriptor.stream_handler, validated, ctx, queue))
        timeout = descriptor.timeout_seconds or self.default_timeout
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        # The newest partial is held back so the last one becomes the result
        last = _NOTHING
        partials = 0
        timed_out = False
        try:
            while True:
                if not queue.empty():
                    item = queue.get_nowait()
                elif pump.done():
                    break
                else:
                    remaining = None if deadline is None else deadline - loop.time()
                    getter = asyncio.ensure_future(queue.get())
                    done, _ = await asyncio.wait(
                        {getter, pump}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                    )
                    if getter not in done:
                        getter.cancel()
                        if not done:
                            timed_out = True
                            timeout_error = ToolTimeoutError(descriptor.name, timeout)
                            yield StreamChunk.final(
                                self._failure_result(descriptor, timeout_error, caller, attempts=1, start=start)
                            )
                            return
                        continue
                    item = getter.result()

                if last is not _NOTHING:
                    partials += 1
                    yield StreamChunk(partial=to_jsonable(last))
                last = item

            exc = pump.exception()
            if exc is not None:
                yield StreamChunk.final(self._failure_result(descriptor, exc, caller, attempts=1, start=start))
                return

            try:
                output = to_jsonable(validate_output(descriptor, None if last is _NOTHING else last))
            except Exception as e:
                yield StreamChunk.final(self._failure_result(descriptor, e, caller, attempts=1, start=start))
                return
        finally:
            # Timed-out streams keep running like any attempt; a stream the
            # consumer walked away from is cancelled
            if not pump.done():
                if timed_out:
                    self.abandoned.abandon(pump, label=descriptor.name)
                else:
                    pump.cancel()

        execution_time = _elapsed_ms(start)
        self._logger.info(
            f"Streamed {descriptor.name} in {execution_time:.1f}ms ({partials} partials)",
            extra={"tool_name": descriptor.name, "execution_time_ms": execution_time, "success": True}
        )
        yield StreamChunk.final(ExecutionResult(
            tool_name=descriptor.name,
            output=output,
            attempts=1,
            request_id=caller.request_id,
            execution_time_ms=execution_time,
        ))

    async def _execute(
        self,
        descriptor: ToolDescriptor,
        validated: Any,
        caller: CallerContext,
        start: float
    ) -> ExecutionResult:
        try:
            handler, ctx = self._select_handler(descriptor, caller)
        except HandlerMissingError as e:
            return self._failure_result(descriptor, e, caller, attempts=0, start=start)

        cache_key = None
        if descriptor.cache is not None:
            try:
                cache_key = self._cache_key(descriptor, validated)
            except Exception as e:
                return self._failure_result(descriptor, e, caller, attempts=0, start=start)
            hit, value = self.cache.get(cache_key)
            if hit:
                self._logger.debug(f"Cache hit for {descriptor.name}")
                return ExecutionResult(
                    tool_name=descriptor.name,
                    output=value,
                    cached=True,
                    request_id=caller.request_id,
                    execution_time_ms=_elapsed_ms(start),
                )

        try:
            output, attempts = await self._call_with_retry(descriptor, handler, validated, ctx)
        except Exception as e:
            return self._failure_result(
                descriptor, e, caller, attempts=descriptor.retry_count, start=start
            )

        try:
            output = to_jsonable(validate_output(descriptor, output))
        except Exception as e:
            return self._failure_result(descriptor, e, caller, attempts=attempts, start=start)

        if cache_key is not None:
            ttl = descriptor.cache.ttl_seconds or self.default_cache_ttl
            self.cache.set(cache_key, output, ttl)

        execution_time = _elapsed_ms(start)
        self._logger.info(
            f"Executed {descriptor.name} in {execution_time:.1f}ms (attempts={attempts})",
            extra={"tool_name": descriptor.name, "execution_time_ms": execution_time, "success": True}
        )
        return ExecutionResult(
            tool_name=descriptor.name,
            output=output,
            attempts=attempts,
            request_id=caller.request_id,
            execution_time_ms=execution_time,
        )

    def _select_handler(
        self,
        descriptor: ToolDescriptor,
        caller: CallerContext
    ) -> Tuple[Handler, HandlerContext]:
        if not caller.trusted and descriptor.has_client_handler:
            return descriptor.client_handler, HandlerContext.stripped(caller)
        if descriptor.has_handler:
            return descriptor.handler, HandlerContext.privileged(caller, self._secrets)
        raise HandlerMissingError(descriptor.name)

    def _cache_key(self, descriptor: ToolDescriptor, validated: Any) -> str:
        if descriptor.cache.key is not None:
            return descriptor.cache.key(descriptor.name, validated)
        return f"{descriptor.name}:{canonicalize(validated)}"

    async def _call_with_retry(
        self,
        descriptor: ToolDescriptor,
        handler: Handler,
        validated: Any,
        ctx: HandlerContext
    ) -> Tuple[Any, int]:
        """Return (output, attempts used). Only the last failure propagates."""
        timeout = descriptor.timeout_seconds or self.default_timeout
        total = descriptor.retry_count

        for attempt in range(total):
            future = self._start_attempt(handler, validated, ctx)
            try:
                output = await run_with_timeout(future, timeout, self.abandoned, label=descriptor.name)
                return output, attempt + 1
            except Exception as e:
                if attempt + 1 >= total:
                    raise
                self._logger.debug(f"Attempt {attempt + 1}/{total} of {descriptor.name} failed: {e!r}")
                await self.retry_policy.wait(attempt)

        raise RuntimeError("unreachable")

    def _start_attempt(self, handler: Handler, validated: Any, ctx: HandlerContext) -> asyncio.Future:
        """Start one attempt now as a task."""
        return asyncio.ensure_future(self._attempt(handler, validated, ctx))

    async def _attempt(self, handler: Handler, validated: Any, ctx: HandlerContext) -> Any:
        # Async handlers run on the loop, sync ones on the pool with the
        # caller's contextvars (request_id) copied over
        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(getattr(handler, "__call__", None)):
            result = await handler(validated, ctx)
        else:
            loop = asyncio.get_running_loop()
            call = functools.partial(contextvars.copy_context().run, handler, validated, ctx)
            result = await loop.run_in_executor(self._pool, call)
        # A plain callable may hand back a coroutine
        while inspect.isawaitable(result):
            result = await result
        return result

    def _failure_result(
        self,
        descriptor: ToolDescriptor,
        exc: BaseException,
        caller: CallerContext,
        attempts: int,
        start: float
    ) -> ExecutionResult:
        kind = ErrorKind.TIMEOUT if isinstance(exc, ToolTimeoutError) else ErrorKind.EXECUTION_FAILED
        failure = ToolFailure.from_exception(
            exc, kind=kind, tool_name=descriptor.name,
            details={"attempts": attempts, "request_id": caller.request_id},
        )
        message = self.errors.handle(failure)
        return ExecutionResult(
            tool_name=descriptor.name,
            error_kind=kind,
            error=message,
            attempts=attempts,
            request_id=caller.request_id,
            execution_time_ms=_elapsed_ms(start),
            internal_error=failure.message,
        )

    def shutdown(self) -> None:
        """Release the worker pool without waiting for abandoned attempts."""
        self._pool.shutdown(wait=False)


async def _pump(handler: StreamHandler, validated: Any, ctx: HandlerContext, queue: asyncio.Queue) -> None:
    async for partial in handler(validated, ctx):
        queue.put_nowait(partial)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
