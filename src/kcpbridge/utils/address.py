"""Parsing of ``host:port`` command line addresses."""

import ipaddress


def parse_address(text: str) -> tuple[str, int]:
    """
    Split a ``host:port`` string.

    IPv6 hosts must be bracketed (``[::1]:8080``); brackets are stripped from
    the returned host.

    Args:
        text: Address as given on the command line.

    Returns:
        Tuple of (host, port).

    Raises:
        ValueError: If the host or port is missing or the port is out of range.
    """
    text = text.strip()
    host, sep, port_str = text.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Invalid address {text!r}: expected HOST:PORT")

    if host.startswith("["):
        if not host.endswith("]"):
            raise ValueError(f"Invalid address {text!r}: unbalanced brackets")
        host = host[1:-1]
        try:
            ipaddress.IPv6Address(host)
        except ValueError as e:
            raise ValueError(f"Invalid address {text!r}: {e}") from e
    elif ":" in host:
        raise ValueError(f"Invalid address {text!r}: IPv6 hosts must be bracketed")

    if not host:
        raise ValueError(f"Invalid address {text!r}: empty host")

    if not port_str.isdigit():
        raise ValueError(f"Invalid address {text!r}: port must be a number")
    port = int(port_str)
    if port > 65535:
        raise ValueError(f"Invalid address {text!r}: port out of range")

    return host, port


def format_address(address: tuple) -> str:
    """Format a socket address tuple for log output."""
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
