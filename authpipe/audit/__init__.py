"""
Audit module initialization
"""

from .logger import (
    AuditLogger,
    LoggingAuditLogger,
    LoginEvent,
    LoginEventType,
    MemoryAuditLogger,
    create_audit_logger,
)

__all__ = [
    "AuditLogger",
    "LoggingAuditLogger",
    "LoginEvent",
    "LoginEventType",
    "MemoryAuditLogger",
    "create_audit_logger",
]
