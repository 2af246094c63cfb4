"""
Tool Builder
------------
Chainable construction of ToolDescriptor values.

    send_email = (
        tool("sendEmail")
        .description("Send an email")
        .input(SendEmailInput)
        .confirm()
        .server(send_email_handler)
        .build()
    )

`on_server`, `on_client` and `on_stream` are the decorator forms:

    builder = tool("getWeather").input(WeatherInput).cache(ttl_seconds=60)

    @builder.on_server
    async def get_weather(inp, ctx):
        ...

    registry.register(builder.build())
"""

from typing import Any, Dict, Iterable, Optional, Type, Union

from pydantic import BaseModel

from .registry import (
    CacheKeyFn, CachePolicy, ConfirmPredicate, Handler,
    StreamHandler, ToolDescriptor, ToolHints,
)


class ToolBuilder:
    """Accumulates descriptor fields; build() freezes them."""

    def __init__(self, name: str):
        self._fields: Dict[str, Any] = {"name": name}

    def description(self, text: str) -> "ToolBuilder":
        self._fields["description"] = text
        return self

    def input(self, model: Type[BaseModel]) -> "ToolBuilder":
        self._fields["input_model"] = model
        return self

    def output(self, model: Type[BaseModel]) -> "ToolBuilder":
        self._fields["output_model"] = model
        return self

    def tags(self, *tags: Union[str, Iterable[str]]) -> "ToolBuilder":
        flat = []
        for tag in tags:
            if isinstance(tag, str):
                flat.append(tag)
            else:
                flat.extend(tag)
        self._fields["tags"] = tuple(self._fields.get("tags", ())) + tuple(flat)
        return self

    def cache(self, ttl_seconds: Optional[float] = None, key: Optional[CacheKeyFn] = None) -> "ToolBuilder":
        self._fields["cache"] = CachePolicy(ttl_seconds=ttl_seconds, key=key)
        return self

    def retry(self, attempts: int) -> "ToolBuilder":
        """Total attempts, including the first."""
        if attempts < 1:
            raise ValueError(f"retry attempts must be >= 1 (got {attempts})")
        self._fields["retry_count"] = attempts
        return self

    def timeout(self, seconds: float) -> "ToolBuilder":
        if seconds <= 0:
            raise ValueError("timeout must be positive")
        self._fields["timeout_seconds"] = seconds
        return self

    def confirm(self, when: Union[bool, ConfirmPredicate] = True) -> "ToolBuilder":
        """Always require confirmation, or only when `when(input)` is true."""
        if callable(when):
            self._fields["confirm_predicate"] = when
            self._fields["requires_confirmation"] = False
        else:
            self._fields["requires_confirmation"] = bool(when)
            self._fields["confirm_predicate"] = None
        return self

    def hints(
        self,
        destructive: bool = False,
        read_only: bool = False,
        idempotent: bool = False
    ) -> "ToolBuilder":
        self._fields["hints"] = ToolHints(
            destructive=destructive, read_only=read_only, idempotent=idempotent
        )
        return self

    def metadata(self, **values: Any) -> "ToolBuilder":
        merged = dict(self._fields.get("metadata", {}))
        merged.update(values)
        self._fields["metadata"] = merged
        return self

    def server(self, handler: Handler) -> "ToolBuilder":
        """Set the privileged handler."""
        self._fields["handler"] = handler
        return self

    def client(self, handler: Handler) -> "ToolBuilder":
        """Set the unprivileged handler."""
        self._fields["client_handler"] = handler
        return self

    def stream(self, handler: StreamHandler) -> "ToolBuilder":
        """Set the streaming handler (an async generator of partial outputs)."""
        self._fields["stream_handler"] = handler
        return self

    def on_server(self, handler: Handler) -> Handler:
        """Decorator form of server()."""
        self.server(handler)
        return handler

    def on_client(self, handler: Handler) -> Handler:
        """Decorator form of client()."""
        self.client(handler)
        return handler

    def on_stream(self, handler: StreamHandler) -> StreamHandler:
        self.stream(handler)
        return handler

    def build(self) -> ToolDescriptor:
        return ToolDescriptor(**self._fields)


def tool(name: str) -> ToolBuilder:
    """Start building a tool."""
    return ToolBuilder(name)
