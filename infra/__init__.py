# Infrastructure module - audit trail and logging
# The service bus and server import the tools package; load them explicitly:
#   from infra.service_bus import create_app

from .audit import AuditLog, AuditEntry, AuditAction, PendingAuditEntry, VerifyResult
from .logging import (
    get_logger, configure_logging, RequestContext,
    get_request_id, generate_request_id
)

__all__ = [
    # Audit
    "AuditLog",
    "AuditEntry",
    "AuditAction",
    "PendingAuditEntry",
    "VerifyResult",
    # Logging
    "get_logger",
    "configure_logging",
    "RequestContext",
    "get_request_id",
    "generate_request_id",
]
