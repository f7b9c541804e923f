"""Daraja API client and callback payload parsing."""
from .callbacks import MalformedCallback, ParsedCallback, StkCallback, parse_callback
from .daraja_client import (
    DarajaClient,
    DarajaError,
    GatewayAuthError,
    GatewayTransportError,
    PushResult,
    StatusQueryResult,
)

__all__ = [
    "DarajaClient",
    "DarajaError",
    "GatewayAuthError",
    "GatewayTransportError",
    "MalformedCallback",
    "ParsedCallback",
    "PushResult",
    "StatusQueryResult",
    "StkCallback",
    "parse_callback",
]
