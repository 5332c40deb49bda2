"""
Login audit trail for the authpipe pipeline.

Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any
from datetime import datetime
import asyncio
import json
import logging
import uuid
from collections import deque

from ..common.utils import get_current_time


class LoginEventType(Enum):
    """Lifecycle events recorded for a login attempt"""
    LOGIN_STARTED = "login_started"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    SESSION_REJECTED = "session_rejected"
    KEYS_REFRESHED = "keys_refreshed"


@dataclass
class LoginEvent:
    """
    One audit record. Never carries tokens, codes, state or nonce values.
    """
    event_type: LoginEventType
    client_id: str
    subject: Optional[str] = None
    diagnostic_code: Optional[str] = None
    session_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=get_current_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "client_id": self.client_id,
            "subject": self.subject,
            "diagnostic_code": self.diagnostic_code,
            "session_id": self.session_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditLogger(ABC):
    """Destination for login audit events"""

    @abstractmethod
    async def log(self, event: LoginEvent) -> None:
        """Log an audit event"""
        pass

    @abstractmethod
    async def get_events(
        self,
        subject: Optional[str] = None,
        event_type: Optional[LoginEventType] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[LoginEvent]:
        """Return recorded events matching every given filter"""
        pass

    async def close(self) -> None:
        """Release any resources held by the logger"""
        pass


class MemoryAuditLogger(AuditLogger):
    """Bounded in-memory audit trail; oldest events are dropped first"""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self.events: deque = deque(maxlen=max_entries)
        self._lock = asyncio.Lock()

    async def log(self, event: LoginEvent) -> None:
        async with self._lock:
            self.events.append(event)

    async def get_events(
        self,
        subject: Optional[str] = None,
        event_type: Optional[LoginEventType] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[LoginEvent]:
        async with self._lock:
            return [
                event for event in self.events
                if (subject is None or event.subject == subject)
                and (event_type is None or event.event_type == event_type)
                and (start_time is None or event.timestamp >= start_time)
                and (end_time is None or event.timestamp <= end_time)
            ]


class LoggingAuditLogger(AuditLogger):
    """Writes each event as one JSON line to a standard logger"""

    def __init__(self, logger_name: str = "authpipe.audit", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self.level = level

    async def log(self, event: LoginEvent) -> None:
        self._logger.log(self.level, json.dumps(event.to_dict(), sort_keys=True))

    async def get_events(
        self,
        subject: Optional[str] = None,
        event_type: Optional[LoginEventType] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[LoginEvent]:
        # Events are handed to the logging system and not retained.
        return []


def create_audit_logger(logger_type: str = "memory", **kwargs) -> AuditLogger:
    """
    Build an audit logger by name

    Args:
        logger_type: Type of logger ("memory" or "logging")
        **kwargs: ``max_entries`` or ``logger_name``

    Returns:
        AuditLogger instance
    """
    if logger_type == "memory":
        return MemoryAuditLogger(kwargs.get("max_entries", 1000))
    elif logger_type == "logging":
        return LoggingAuditLogger(kwargs.get("logger_name", "authpipe.audit"))
    else:
        raise ValueError(f"Unknown logger type: {logger_type}")
