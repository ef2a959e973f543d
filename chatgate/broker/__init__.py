"""Single-resolution brokers for out-of-band operator decisions."""

from chatgate.broker.ask import AskBroker, AskRequest
from chatgate.broker.permissions import Allow, Deny, PermissionBroker, PermissionDecision, PermissionRequest

__all__ = [
    "Allow",
    "AskBroker",
    "AskRequest",
    "Deny",
    "PermissionBroker",
    "PermissionDecision",
    "PermissionRequest",
]
