"""
Invocation Context
------------------
Who is calling, from where, and what a handler is allowed to see.

Trust is an explicit enum on the caller, never inferred. Only a TRUSTED
call routed to the privileged handler receives secrets, headers, user
and session; the unprivileged handler gets a stripped context.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from infra.logging import generate_request_id, get_request_id


class TrustLevel(str, Enum):
    """Origin of an invocation."""
    TRUSTED = "trusted"      # Server-side origin
    UNTRUSTED = "untrusted"  # Client/caller-controlled origin


def current_or_new_request_id() -> str:
    return get_request_id() or generate_request_id()


@dataclass(frozen=True)
class CallerContext:
    """Caller identity plus privileged-only request data."""
    identity: str = "anonymous"
    trust: TrustLevel = TrustLevel.TRUSTED
    request_id: str = field(default_factory=current_or_new_request_id)
    headers: Mapping[str, str] = field(default_factory=dict)
    user: Optional[Any] = None
    session: Optional[Any] = None

    @property
    def trusted(self) -> bool:
        return self.trust is TrustLevel.TRUSTED

    @classmethod
    def untrusted(cls, identity: str = "anonymous", **kwargs) -> "CallerContext":
        return cls(identity=identity, trust=TrustLevel.UNTRUSTED, **kwargs)


@dataclass(frozen=True)
class InvocationRequest:
    """One incoming call. Never persisted."""
    tool: Optional[str]
    input: Any
    caller: CallerContext = field(default_factory=CallerContext)


@dataclass(frozen=True)
class HandlerContext:
    """What a handler receives alongside its validated input."""
    identity: str
    request_id: str
    trusted: bool
    secrets: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    user: Optional[Any] = None
    session: Optional[Any] = None

    @classmethod
    def privileged(cls, caller: CallerContext, secrets: Mapping[str, str]) -> "HandlerContext":
        return cls(
            identity=caller.identity,
            request_id=caller.request_id,
            trusted=True,
            secrets=dict(secrets),
            headers=dict(caller.headers),
            user=caller.user,
            session=caller.session,
        )

    @classmethod
    def stripped(cls, caller: CallerContext) -> "HandlerContext":
        return cls(
            identity=caller.identity,
            request_id=caller.request_id,
            trusted=False,
        )

    def secret(self, name: str) -> Optional[str]:
        return self.secrets.get(name)

    def to_dict(self) -> Dict[str, Any]:
        """Loggable view. Secret values are never included."""
        return {
            "identity": self.identity,
            "request_id": self.request_id,
            "trusted": self.trusted,
            "secret_names": sorted(self.secrets),
        }
