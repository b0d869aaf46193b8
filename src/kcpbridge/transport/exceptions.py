"""Tunnel transport exception classes."""


class TunnelError(Exception):
    """Base exception for tunnel transport operations."""

    pass


class TunnelConnectError(TunnelError):
    """Opening a tunnel session failed (refused or no handshake reply)."""

    def __init__(self, message: str, address: tuple | None = None):
        self.address = address
        super().__init__(message)


class TunnelTimeoutError(TunnelError):
    """The peer stopped acknowledging data and the session was declared dead."""

    pass


class TunnelClosedError(TunnelError):
    """Operation on a session or listener that is already closed."""

    pass


class ProtocolError(TunnelError):
    """A malformed or unexpected segment was received."""

    pass
