# Tools module - registry, validation, dual-mode execution and the HITL gate
# The registry is built once at startup and passed explicitly; no globals

from .registry import ToolRegistry, ToolDescriptor, ToolHints, CachePolicy
from .builder import ToolBuilder, tool
from .context import CallerContext, HandlerContext, InvocationRequest, TrustLevel
from .cache import ResultCache
from .executor import ToolExecutor, ExecutionResult, StreamChunk
from .confirmation import ConfirmationGate, Proposal, ProposalState
from .builtin import create_default_tools

__all__ = [
    "ToolRegistry",
    "ToolDescriptor",
    "ToolHints",
    "CachePolicy",
    "ToolBuilder",
    "tool",
    "CallerContext",
    "HandlerContext",
    "InvocationRequest",
    "TrustLevel",
    "ResultCache",
    "ToolExecutor",
    "ExecutionResult",
    "StreamChunk",
    "ConfirmationGate",
    "Proposal",
    "ProposalState",
    "create_default_tools",
]
