"""
Registry and Builder Tests
--------------------------
Tests cover:
- Registration, overwrite, lookup, listing
- Builder chaining and frozen descriptors
- Streaming handlers
- Confirmation policy (static, predicate, destructive hint)
- Discovery output never exposing handlers
"""

import dataclasses
from pathlib import Path
import sys

import pytest
from pydantic import BaseModel

sys.path.insert(0, str(Path(__file__).parent.parent))

from tools.builder import tool
from tools.builtin import create_default_tools
from tools.registry import CachePolicy, ToolDescriptor, ToolRegistry


class ItemInput(BaseModel):
    name: str
    count: int = 0


def noop(inp, ctx):
    return None


class TestRegistry:
    """Tests for ToolRegistry basics."""

    def test_register_and_get(self):
        """Registered tools can be looked up by name."""
        reg = ToolRegistry()
        reg.register(ToolDescriptor(name="a", handler=noop))

        assert reg.get("a").name == "a"
        assert "a" in reg
        assert len(reg) == 1

    def test_get_unknown_returns_none(self):
        reg = ToolRegistry()

        assert reg.get("nonexistent") is None
        assert reg.get(None) is None

    def test_last_write_wins(self):
        """Re-registering a name replaces the earlier descriptor."""
        reg = ToolRegistry()
        reg.register(ToolDescriptor(name="a", description="first", handler=noop))
        reg.register(ToolDescriptor(name="a", description="second", handler=noop))

        assert len(reg) == 1
        assert reg.get("a").description == "second"

    def test_handlerless_descriptor_registers(self):
        """Missing handlers fail at invocation, not registration."""
        reg = ToolRegistry()
        reg.register(ToolDescriptor(name="bare"))

        assert reg.get("bare") is not None
        assert not reg.get("bare").has_handler

    def test_list_sorted_by_name(self):
        reg = ToolRegistry()
        for name in ("zeta", "alpha", "mid"):
            reg.register(ToolDescriptor(name=name, handler=noop))

        assert reg.names() == ["alpha", "mid", "zeta"]

    def test_unregister(self):
        reg = ToolRegistry()
        reg.register(ToolDescriptor(name="a", handler=noop))

        assert reg.unregister("a") is True
        assert reg.unregister("a") is False
        assert reg.get("a") is None

    def test_rejects_non_descriptor(self):
        with pytest.raises(TypeError):
            ToolRegistry().register({"name": "a"})

    def test_list_by_tag(self):
        reg = create_default_tools()

        names = [t.name for t in reg.list_by_tag("weather")]
        assert names == ["getWeather"]


class TestDescriptor:
    """Tests for descriptor validation and immutability."""

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            ToolDescriptor(name="")

    def test_retry_count_must_be_positive(self):
        with pytest.raises(ValueError):
            ToolDescriptor(name="a", retry_count=0)

    def test_frozen(self):
        descriptor = ToolDescriptor(name="a", handler=noop)

        with pytest.raises(dataclasses.FrozenInstanceError):
            descriptor.name = "b"

    def test_metadata_read_only(self):
        descriptor = ToolDescriptor(name="a", metadata={"owner": "ops"})

        with pytest.raises(TypeError):
            descriptor.metadata["owner"] = "someone-else"

    def test_cache_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            CachePolicy(ttl_seconds=0)


class TestConfirmationPolicy:
    """Tests for should_confirm / confirmation_gated."""

    def test_static_flag(self):
        descriptor = tool("a").confirm().server(noop).build()

        assert descriptor.confirmation_gated
        assert descriptor.should_confirm({"anything": 1})
        assert descriptor.should_confirm(None)

    def test_predicate(self):
        descriptor = tool("a").confirm(lambda raw: raw["count"] > 10).server(noop).build()

        assert descriptor.confirmation_gated
        assert not descriptor.requires_confirmation
        assert descriptor.should_confirm({"count": 11})
        assert not descriptor.should_confirm({"count": 3})

    def test_predicate_none_input_is_false(self):
        descriptor = tool("a").confirm(lambda raw: True).server(noop).build()

        assert descriptor.should_confirm(None) is False

    def test_raising_predicate_requires_confirmation(self):
        """A predicate that blows up fails closed."""
        descriptor = tool("a").confirm(lambda raw: raw["missing"]).server(noop).build()

        assert descriptor.should_confirm({"count": 1}) is True

    def test_destructive_hint_implies_confirmation(self):
        descriptor = tool("a").hints(destructive=True).server(noop).build()

        assert descriptor.confirmation_gated
        assert descriptor.should_confirm({})

    def test_plain_tool_not_gated(self):
        descriptor = tool("a").server(noop).build()

        assert not descriptor.confirmation_gated
        assert not descriptor.should_confirm({"x": 1})


class TestBuilder:
    """Tests for the chainable builder."""

    def test_full_chain(self):
        descriptor = (
            tool("lookup")
            .description("Look things up")
            .input(ItemInput)
            .tags("search", "data")
            .cache(ttl_seconds=30)
            .retry(3)
            .timeout(2.5)
            .metadata(owner="search-team")
            .server(noop)
            .client(noop)
            .build()
        )

        assert descriptor.name == "lookup"
        assert descriptor.input_model is ItemInput
        assert descriptor.tags == ("search", "data")
        assert descriptor.cache.ttl_seconds == 30
        assert descriptor.retry_count == 3
        assert descriptor.timeout_seconds == 2.5
        assert descriptor.metadata["owner"] == "search-team"
        assert descriptor.has_handler and descriptor.has_client_handler

    def test_decorator_forms(self):
        builder = tool("decorated").input(ItemInput)

        @builder.on_server
        def server_side(inp, ctx):
            return "server"

        @builder.on_client
        def client_side(inp, ctx):
            return "client"

        descriptor = builder.build()
        assert descriptor.handler is server_side
        assert descriptor.client_handler is client_side
        assert server_side(None, None) == "server"

    def test_stream_handler(self):
        builder = tool("live").input(ItemInput)

        @builder.on_stream
        async def partials(inp, ctx):
            yield 1

        descriptor = builder.server(noop).build()

        assert descriptor.stream_handler is partials
        assert descriptor.has_stream_handler
        assert "stream" in repr(descriptor)

    def test_stream_handler_must_be_async_generator(self):
        async def not_a_generator(inp, ctx):
            return 1

        with pytest.raises(TypeError):
            tool("a").stream(not_a_generator).build()

    def test_confirm_false_clears_gate(self):
        descriptor = tool("a").confirm().confirm(False).server(noop).build()

        assert not descriptor.confirmation_gated

    def test_invalid_retry(self):
        with pytest.raises(ValueError):
            tool("a").retry(0)

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            tool("a").timeout(0)


class TestDiscovery:
    """Tests for describe() and function schemas."""

    def test_describe_has_schema_not_handlers(self):
        reg = create_default_tools()
        listing = {entry["name"]: entry for entry in reg.describe()}

        email = listing["sendEmail"]
        assert email["requires_confirmation"] is True
        assert "to" in email["input_schema"]["properties"]
        assert "handler" not in email
        assert "client_handler" not in email

        assert listing["searchDocs"]["has_client_handler"] is True
        assert listing["searchDocs"]["has_stream_handler"] is True
        assert listing["getTime"]["has_stream_handler"] is False
        assert listing["deleteRecords"]["conditional_confirmation"] is True
        assert listing["getWeather"]["cached"] is True

    def test_function_schemas_mark_gated_tools(self):
        reg = create_default_tools()
        schemas = {s["function"]["name"]: s for s in reg.get_function_schemas()}

        assert schemas["sendEmail"]["requires_confirmation"] is True
        assert schemas["deleteRecords"]["requires_confirmation"] is True
        assert schemas["getTime"]["requires_confirmation"] is False
        assert schemas["getWeather"]["function"]["parameters"]["type"] == "object"
