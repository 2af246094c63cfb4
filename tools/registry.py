"""
Tool Registry
-------------
Immutable tool descriptors and the registry that owns them.

The registry is constructed once at process start and passed to the
executor, the confirmation gate and the service bus. There is no
module-level instance.
"""

from dataclasses import dataclass, field
from threading import RLock
from types import MappingProxyType
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Type, Union
import inspect
import logging

from pydantic import BaseModel

from .context import HandlerContext


Handler = Callable[[Any, HandlerContext], Union[Any, Awaitable[Any]]]
# Async generator function yielding partial outputs; the last one is the result
StreamHandler = Callable[[Any, HandlerContext], AsyncIterator[Any]]
ConfirmPredicate = Callable[[Any], bool]
CacheKeyFn = Callable[[str, BaseModel], str]

logger = logging.getLogger("toolgate.tools.registry")


@dataclass(frozen=True)
class ToolHints:
    """Behavioral hints exposed to agents."""
    destructive: bool = False   # Implies confirmation
    read_only: bool = False
    idempotent: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "destructive": self.destructive,
            "read_only": self.read_only,
            "idempotent": self.idempotent,
        }


@dataclass(frozen=True)
class CachePolicy:
    """Result caching for one tool."""
    ttl_seconds: Optional[float] = None  # None uses the executor default
    key: Optional[CacheKeyFn] = None

    def __post_init__(self):
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError("Cache TTL must be positive")


@dataclass(frozen=True)
class ToolDescriptor:
    """
    Tool definition.

    Each tool defines:
    - Name and description
    - pydantic input model (and optional output model)
    - A privileged handler and, optionally, an unprivileged one
    - An optional streaming handler (async generator of partial outputs)
    - Confirmation policy (static flag, predicate, destructive hint)
    - Resilience settings (cache, retry count, timeout)
    """
    name: str
    description: str = ""
    input_model: Optional[Type[BaseModel]] = None
    output_model: Optional[Type[BaseModel]] = None
    handler: Optional[Handler] = None
    client_handler: Optional[Handler] = None
    stream_handler: Optional[StreamHandler] = None
    requires_confirmation: bool = False
    confirm_predicate: Optional[ConfirmPredicate] = None
    hints: ToolHints = field(default_factory=ToolHints)
    tags: Tuple[str, ...] = ()
    cache: Optional[CachePolicy] = None
    retry_count: int = 1
    timeout_seconds: Optional[float] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Tool name must be a non-empty string")
        if self.retry_count < 1:
            raise ValueError(f"retry_count must be >= 1 (got {self.retry_count})")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.stream_handler is not None and not inspect.isasyncgenfunction(self.stream_handler):
            raise TypeError(f"stream handler for {self.name} must be an async generator function")
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def has_handler(self) -> bool:
        return self.handler is not None

    @property
    def has_client_handler(self) -> bool:
        return self.client_handler is not None

    @property
    def has_stream_handler(self) -> bool:
        return self.stream_handler is not None

    @property
    def confirmation_gated(self) -> bool:
        """True when any input could require confirmation."""
        return (
            self.requires_confirmation
            or self.hints.destructive
            or self.confirm_predicate is not None
        )

    def should_confirm(self, raw_input: Any) -> bool:
        """
        Decide whether this particular input requires confirmation.

        A predicate that raises counts as "requires confirmation".
        """
        if self.requires_confirmation or self.hints.destructive:
            return True
        if self.confirm_predicate is None or raw_input is None:
            return False
        try:
            return bool(self.confirm_predicate(raw_input))
        except Exception as e:
            logger.warning(f"Confirmation predicate for {self.name} raised {e!r}; requiring confirmation")
            return True

    def input_schema(self) -> Dict[str, Any]:
        if self.input_model is None:
            return {"type": "object", "properties": {}}
        return self.input_model.model_json_schema()

    def output_schema(self) -> Optional[Dict[str, Any]]:
        if self.output_model is None:
            return None
        return self.output_model.model_json_schema()

    def describe(self) -> Dict[str, Any]:
        """Discovery view. Handler objects never leave the process."""
        return {
            "name": self.name,
            "description": self.description,
            "tags": list(self.tags),
            "input_schema": self.input_schema(),
            "output_schema": self.output_schema(),
            "requires_confirmation": self.requires_confirmation,
            "conditional_confirmation": self.confirm_predicate is not None,
            "hints": self.hints.to_dict(),
            "cache_ttl_seconds": self.cache.ttl_seconds if self.cache else None,
            "cached": self.cache is not None,
            "retry_count": self.retry_count,
            "timeout_seconds": self.timeout_seconds,
            "has_client_handler": self.has_client_handler,
            "has_stream_handler": self.has_stream_handler,
            "metadata": dict(self.metadata),
        }

    def to_function_schema(self) -> Dict[str, Any]:
        """Function-calling format for agents."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema(),
            },
            "requires_confirmation": self.confirmation_gated,
        }

    def __repr__(self) -> str:
        flags = []
        if self.confirmation_gated:
            flags.append("confirm")
        if self.has_client_handler:
            flags.append("client")
        if self.has_stream_handler:
            flags.append("stream")
        return f"ToolDescriptor(name={self.name}{', ' + '/'.join(flags) if flags else ''})"


class ToolRegistry:
    """
    Registry for all available tools.

    Registration is guarded by a lock so tools can be hot-registered;
    lookups return immutable descriptors.
    """

    def __init__(self):
        self._tools: Dict[str, ToolDescriptor] = {}
        self._lock = RLock()
        self._logger = logging.getLogger("toolgate.tools.registry")

    def register(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        """Register a tool. Last write wins."""
        if not isinstance(descriptor, ToolDescriptor):
            raise TypeError(f"Expected ToolDescriptor, got {type(descriptor).__name__}")

        with self._lock:
            if descriptor.name in self._tools:
                self._logger.warning(f"Overwriting existing tool: {descriptor.name}")
            self._tools[descriptor.name] = descriptor

        if not (descriptor.has_handler or descriptor.has_client_handler or descriptor.has_stream_handler):
            self._logger.warning(f"Tool {descriptor.name} has no handler; calls will fail")
        self._logger.info(f"Registered tool: {descriptor.name}")
        return descriptor

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[ToolDescriptor]:
        """Get a tool by name."""
        if not isinstance(name, str):
            return None
        with self._lock:
            return self._tools.get(name)

    def list_tools(self) -> List[ToolDescriptor]:
        """List all registered tools, sorted by name."""
        with self._lock:
            return sorted(self._tools.values(), key=lambda t: t.name)

    def names(self) -> List[str]:
        return [t.name for t in self.list_tools()]

    def list_by_tag(self, tag: str) -> List[ToolDescriptor]:
        return [t for t in self.list_tools() if tag in t.tags]

    def describe(self) -> List[Dict[str, Any]]:
        return [t.describe() for t in self.list_tools()]

    def get_function_schemas(self) -> List[Dict[str, Any]]:
        """Get all tool schemas in function-calling format."""
        return [t.to_function_schema() for t in self.list_tools()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools
