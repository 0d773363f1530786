#!/usr/bin/env python3
"""
Gateway error taxonomy.

Every failure the dispatch boundary can report is a GatewayError subclass.
Teardown failures are deliberately absent: they are logged, never raised.
"""


class GatewayError(Exception):
    """Base class for errors surfaced to the upstream client"""


class UnknownServerError(GatewayError):
    """Requested identity is not in the directory"""

    def __init__(self, name: str):
        super().__init__(f"Unknown server: {name}")
        self.name = name


class ConnectError(GatewayError):
    """Transport could not be established"""


class UnsupportedTransportError(ConnectError):
    """Transport kind is declared but not implemented"""


class ConnectTimeoutError(ConnectError):
    """Connect phase exceeded the identity's budget"""


class DiscoveryError(GatewayError):
    """Downstream server failed to list its tools"""


class InvocationError(GatewayError):
    """Downstream tool call raised or returned unusable data"""


class InvocationTimeoutError(InvocationError):
    """Downstream tool call exceeded the invoke timeout"""


def root_cause(exc: BaseException) -> BaseException:
    """Unwrap single-member exception groups raised by anyio task groups."""
    while True:
        members = getattr(exc, "exceptions", None)
        if not members or len(members) != 1:
            return exc
        exc = members[0]


def describe(exc: BaseException) -> str:
    """Human readable message for an exception, unwrapping task groups."""
    exc = root_cause(exc)
    if isinstance(exc, GatewayError):
        return str(exc)
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
