"""Permission gate, AskUser broker and CEL permission rules."""

from gosling.permissions.gate import GateResult, PermissionBroker, PermissionGate
from gosling.permissions.rules import PermissionRules

__all__ = [
    "GateResult",
    "PermissionBroker",
    "PermissionGate",
    "PermissionRules",
]
