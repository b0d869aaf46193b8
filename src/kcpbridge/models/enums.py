"""
Enumeration types for kcpbridge.

This module defines the enumeration types used throughout the bridge for
role selection, session lifecycle tracking and outcome classification.
"""

from enum import Enum


# =============================================================================
# Role Enums
# =============================================================================


class RelayMode(str, Enum):
    """
    Operating role of the process.

    - SERVER: Accepts tunnel sessions over UDP, dials the upstream TCP address
    - CLIENT: Accepts TCP connections, dials the remote tunnel endpoint
    """

    SERVER = "server"
    CLIENT = "client"


# =============================================================================
# Session-Related Enums
# =============================================================================


class SessionState(str, Enum):
    """
    Session bridge lifecycle state.

    State transitions (strictly in this order):
        PAIRED -> RELAYING -> SHUTTING_DOWN -> CLOSED
    """

    PAIRED = "paired"  # Both halves known, nothing relayed yet
    RELAYING = "relaying"  # Both directions active
    SHUTTING_DOWN = "shutting_down"  # Terminal condition seen, halves closing
    CLOSED = "closed"  # Outcome recorded


class Direction(str, Enum):
    """Relay direction inside a session."""

    STREAM_TO_TUNNEL = "stream->tunnel"
    TUNNEL_TO_STREAM = "tunnel->stream"


class OutcomeStatus(str, Enum):
    """Primary classification of a session outcome."""

    SUCCESS = "success"
    FAILURE = "failure"


class FailureKind(str, Enum):
    """
    Where a failed session broke down.

    - DIAL: Outbound half could not be established, no bridge was created
    - READ: Reading from a half raised
    - WRITE: Writing or draining into a half raised
    - CANCELLED: The session task was cancelled (process shutdown)
    """

    DIAL = "dial"
    READ = "read"
    WRITE = "write"
    CANCELLED = "cancelled"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels for kcpbridge.

    Levels (from most to least verbose):
        - FULL: Debug messages with rich tracebacks and source locations
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
