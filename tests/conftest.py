"""
toolgate Test Configuration
---------------------------
Shared fixtures and configuration for all tests.
"""

import os
import sys
from pathlib import Path

import pytest
from pydantic import BaseModel

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from tools.builder import tool
from tools.context import CallerContext, TrustLevel
from tools.registry import ToolRegistry


# =============================================================================
# Test Isolation
# =============================================================================

@pytest.fixture(autouse=True)
def clean_toolgate_env(monkeypatch):
    """
    Strip TOOLGATE_* variables so a developer's shell can't change limits,
    keys or timeouts under the tests.
    """
    for key in list(os.environ):
        if key.startswith("TOOLGATE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TOOLGATE_AUDIT_KEY", "test-audit-key")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# Tools
# =============================================================================

class EchoInput(BaseModel):
    text: str
    count: int = 1


class CallCounter:
    """Handler that records every call it receives."""

    def __init__(self, result=None):
        self.calls = []
        self.result = result

    def __call__(self, inp, ctx):
        self.calls.append((inp, ctx))
        if self.result is not None:
            return self.result
        return {"echo": inp.text * inp.count}


@pytest.fixture
def counter():
    return CallCounter()


@pytest.fixture
def registry(counter):
    """Registry with one plain tool and one confirmation-gated tool."""
    reg = ToolRegistry()
    reg.register(
        tool("echo").description("Echo text").input(EchoInput).server(counter).build()
    )
    reg.register(
        tool("dangerousEcho")
        .description("Echo, but gated")
        .input(EchoInput)
        .confirm()
        .server(counter)
        .build()
    )
    return reg


@pytest.fixture
def trusted_caller():
    return CallerContext(identity="10.0.0.1", trust=TrustLevel.TRUSTED)


@pytest.fixture
def untrusted_caller():
    return CallerContext(identity="10.0.0.2", trust=TrustLevel.UNTRUSTED)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root path."""
    return PROJECT_ROOT
