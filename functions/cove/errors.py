"""
Typed errors for connector failures. Each carries the tool id so logs show
which connector instance failed.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    def __init__(
        self,
        tool_id: str,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(f"[{tool_id}] {message}")
        self.tool_id = tool_id
        self.status_code = status_code
        self.response_body = response_body


class ConnectorAuthError(ConnectorError):
    """The session token is invalid/expired, or credentials are missing."""

    def __init__(self, tool_id: str, message: str = "Authentication failed"):
        super().__init__(tool_id, message, 401)


class ConnectorTransportError(ConnectorError):
    """The request never produced an HTTP response (timeout, reset, DNS)."""


class ConnectorRateLimitError(ConnectorError):
    def __init__(self, tool_id: str, retry_after_ms: Optional[int] = None):
        suffix = f" (retry after {retry_after_ms}ms)" if retry_after_ms else ""
        super().__init__(tool_id, f"Rate limit exceeded{suffix}", 429)
        self.retry_after_ms = retry_after_ms


class ConnectorNotConfiguredError(ConnectorError):
    def __init__(self, tool_id: str):
        super().__init__(
            tool_id,
            f'Integration "{tool_id}" is not configured. '
            "Set COVE_PARTNER, COVE_USERNAME and COVE_PASSWORD.",
        )


class DeviceNotFoundError(ConnectorError):
    def __init__(self, tool_id: str, device_id: str):
        super().__init__(tool_id, f"Device {device_id} not found", 404)
        self.device_id = device_id


class MappingError(ValueError):
    """A statistics row could not be decoded into the device model."""


class ArtifactDecodeError(ValueError):
    """A recovery artifact could not be decoded by any known encoding."""
