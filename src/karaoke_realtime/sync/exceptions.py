"""Custom exceptions for the real-time transport layer."""

from typing import Optional, Dict, Any
from datetime import datetime


class TransportError(Exception):
    """Base exception for transport errors."""

    def __init__(self, message: str, error_code: str = "transport_error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class ConnectionFailedError(TransportError):
    """Raised when a connection cannot be opened or is lost. Transient."""

    def __init__(self, reason: str, connection_id: Optional[str] = None):
        if connection_id:
            message = f"Connection error for {connection_id}: {reason}"
        else:
            message = f"Connection error: {reason}"
        details = {
            "connection_id": connection_id,
            "reason": reason
        }
        super().__init__(message, "connection_error", details)


class CredentialError(TransportError):
    """Raised when the server rejects the credential at handshake time."""

    def __init__(self, reason: str):
        message = f"Credential rejected: {reason}"
        details = {
            "reason": reason,
            "refresh_required": True
        }
        super().__init__(message, "credential_rejected", details)


class ProtocolError(TransportError):
    """Raised for malformed, oversized or unsafe payloads. Never retried."""

    def __init__(self, reason: str, event: Optional[str] = None, size: Optional[int] = None):
        message = f"Protocol violation: {reason}"
        details = {
            "reason": reason,
            "event": event,
            "size": size
        }
        super().__init__(message, "protocol_error", details)


class DataIntegrityError(TransportError):
    """Raised when a topic checksum does not match the expected value."""

    def __init__(self, topic: str, expected: Optional[str], actual: Optional[str]):
        message = f"Data integrity violation for topic {topic}: expected {expected}, got {actual}"
        details = {
            "topic": topic,
            "expected_checksum": expected,
            "actual_checksum": actual
        }
        super().__init__(message, "data_integrity_error", details)


class QueueCapacityError(TransportError):
    """Describes an offline queue overflow. Logged, not raised to callers."""

    def __init__(self, capacity: int, dropped_event: str):
        message = f"Offline queue full (capacity {capacity}): dropped oldest message {dropped_event}"
        details = {
            "capacity": capacity,
            "dropped_event": dropped_event
        }
        super().__init__(message, "queue_capacity_exceeded", details)


class ChannelClosed(TransportError):
    """Raised by a channel when the underlying connection has closed."""

    def __init__(self, server_initiated: bool, code: Optional[int] = None, reason: str = ""):
        initiator = "server" if server_initiated else "transport"
        message = f"Channel closed by {initiator} (code={code}, reason={reason or 'n/a'})"
        details = {
            "server_initiated": server_initiated,
            "code": code,
            "reason": reason
        }
        super().__init__(message, "channel_closed", details)
        self.server_initiated = server_initiated
        self.code = code
        self.reason = reason


class CircuitBreakerError(TransportError):
    """Raised when circuit breaker is open."""

    def __init__(self, service_name: str, failure_count: int, threshold: int):
        message = f"Circuit breaker open for {service_name}: {failure_count} failures (threshold: {threshold})"
        details = {
            "service_name": service_name,
            "failure_count": failure_count,
            "threshold": threshold,
            "circuit_state": "open"
        }
        super().__init__(message, "circuit_breaker_open", details)
