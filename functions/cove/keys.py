"""
Shared-store key namespaces. Every key is scoped by the connector instance id.
"""

from __future__ import annotations


def visa_key(tool_id: str) -> str:
    return f"cove:visa:{tool_id}"


def lock_key(tool_id: str) -> str:
    return f"cove:visa:lock:{tool_id}"


def partner_id_key(tool_id: str) -> str:
    return f"cove:partnerid:{tool_id}"


def root_partner_key(tool_id: str) -> str:
    return f"cove:rootpartner:{tool_id}"


def rate_limit_key(tool_id: str) -> str:
    return f"ratelimit:connector:{tool_id}"


def devices_key(tool_id: str) -> str:
    return f"cove:devices:{tool_id}"


def partners_key(tool_id: str) -> str:
    return f"cove:partners:{tool_id}"


def summary_key(tool_id: str) -> str:
    return f"cove:summary:{tool_id}"


def history_key(tool_id: str, device_id: str, days: int) -> str:
    return f"cove:history:{tool_id}:{device_id}:{days}"


def storage_node_key(tool_id: str, device_id: int | str) -> str:
    return f"cove:storagenode:{tool_id}:{device_id}"


def errors_key(tool_id: str, device_id: str) -> str:
    return f"cove:errors:{tool_id}:{device_id}"


def recovery_key(tool_id: str, device_id: str) -> str:
    return f"cove:recovery:{tool_id}:{device_id}"


def recovery_devices_key(tool_id: str) -> str:
    return f"cove:draas-devices:{tool_id}"
