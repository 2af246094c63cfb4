"""
Built-in Demo Tools
-------------------
A small default tool set that exercises every engine feature:

- sendEmail      always requires confirmation
- deleteRecords  requires confirmation only for bulk deletes (> 10)
- getWeather     cached, retried
- searchDocs     privileged, unprivileged and streaming handlers
- getTime        read-only, no input
"""

from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional
import logging
import uuid

from pydantic import BaseModel, EmailStr, Field

from .builder import tool
from .context import HandlerContext
from .registry import ToolRegistry


logger = logging.getLogger("toolgate.tools.builtin")

BULK_DELETE_THRESHOLD = 10


class SendEmailInput(BaseModel):
    to: EmailStr
    subject: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., max_length=10_000)


class SendEmailOutput(BaseModel):
    status: str
    message_id: str
    to: str


async def send_email(inp: SendEmailInput, ctx: HandlerContext) -> SendEmailOutput:
    # Delivery is delegated to whatever transport the deployment wires in;
    # here we only record that the message was accepted.
    transport = "smtp" if ctx.secret("smtp_password") else "log"
    logger.info(f"Sending email to {inp.to} via {transport}")
    return SendEmailOutput(status="sent", message_id=uuid.uuid4().hex[:16], to=str(inp.to))


class DeleteRecordsInput(BaseModel):
    table: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    count: int = Field(..., ge=1)


def _is_bulk_delete(raw: Any) -> bool:
    return isinstance(raw, dict) and int(raw.get("count", 0)) > BULK_DELETE_THRESHOLD


def delete_records(inp: DeleteRecordsInput, ctx: HandlerContext) -> Dict[str, Any]:
    logger.info(f"Deleting {inp.count} records from {inp.table}")
    return {"table": inp.table, "deleted": inp.count}


class WeatherInput(BaseModel):
    city: str = Field(..., min_length=1)
    units: str = Field("metric", pattern=r"^(metric|imperial)$")


class WeatherOutput(BaseModel):
    city: str
    temperature: float
    units: str
    conditions: str


def get_weather(inp: WeatherInput, ctx: HandlerContext) -> WeatherOutput:
    # Deterministic stand-in for an upstream weather API
    seed = sum(ord(c) for c in inp.city.lower())
    celsius = 5 + seed % 25
    temperature = celsius if inp.units == "metric" else celsius * 9 / 5 + 32
    conditions = ["sunny", "cloudy", "rain", "windy"][seed % 4]
    return WeatherOutput(city=inp.city, temperature=temperature, units=inp.units, conditions=conditions)


class SearchDocsInput(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(5, ge=1, le=50)


DOCS: List[Dict[str, str]] = [
    {"id": "rate-limits", "title": "Rate limits", "text": "Sliding window limits per caller identity."},
    {"id": "confirmation", "title": "Confirmation", "text": "Gated tools run only through the confirmed path."},
    {"id": "caching", "title": "Caching", "text": "Successful results are cached for the tool's TTL."},
    {"id": "audit", "title": "Audit log", "text": "Every gated attempt produces one audit entry."},
]


def _search(query: str, limit: int) -> List[Dict[str, str]]:
    terms = query.lower().split()
    hits = [
        doc for doc in DOCS
        if any(term in (doc["title"] + " " + doc["text"]).lower() for term in terms)
    ]
    return hits[:limit]


def search_docs_server(inp: SearchDocsInput, ctx: HandlerContext) -> Dict[str, Any]:
    return {"query": inp.query, "results": _search(inp.query, inp.limit), "source": "server"}


def search_docs_client(inp: SearchDocsInput, ctx: HandlerContext) -> Dict[str, Any]:
    return {"query": inp.query, "results": _search(inp.query, inp.limit), "source": "client"}


async def search_docs_stream(inp: SearchDocsInput, ctx: HandlerContext) -> AsyncIterator[Dict[str, Any]]:
    # One partial per hit, each carrying the hits so far
    hits = _search(inp.query, inp.limit)
    for count in range(1, len(hits) + 1):
        yield {"query": inp.query, "results": hits[:count], "source": "server"}
    if not hits:
        yield {"query": inp.query, "results": [], "source": "server"}


def get_time(inp: Dict[str, Any], ctx: HandlerContext) -> Dict[str, str]:
    return {"utc": datetime.now(timezone.utc).isoformat()}


def create_default_tools(registry: Optional[ToolRegistry] = None) -> ToolRegistry:
    """Register the demo tools (into a new registry unless one is given)."""
    registry = registry if registry is not None else ToolRegistry()

    registry.register(
        tool("sendEmail")
        .description("Send an email. Requires human confirmation.")
        .input(SendEmailInput)
        .output(SendEmailOutput)
        .confirm()
        .tags("communication")
        .timeout(10.0)
        .server(send_email)
        .build()
    )

    registry.register(
        tool("deleteRecords")
        .description(f"Delete records from a table. More than {BULK_DELETE_THRESHOLD} needs confirmation.")
        .input(DeleteRecordsInput)
        .confirm(_is_bulk_delete)
        .tags("data")
        .server(delete_records)
        .build()
    )

    registry.register(
        tool("getWeather")
        .description("Current weather for a city")
        .input(WeatherInput)
        .output(WeatherOutput)
        .cache(ttl_seconds=60)
        .retry(3)
        .timeout(5.0)
        .hints(read_only=True, idempotent=True)
        .tags("weather")
        .server(get_weather)
        .build()
    )

    registry.register(
        tool("searchDocs")
        .description("Search the documentation")
        .input(SearchDocsInput)
        .hints(read_only=True)
        .tags("search")
        .server(search_docs_server)
        .client(search_docs_client)
        .stream(search_docs_stream)
        .build()
    )

    registry.register(
        tool("getTime")
        .description("Current UTC time")
        .hints(read_only=True)
        .tags("utility")
        .server(get_time)
        .build()
    )

    return registry
