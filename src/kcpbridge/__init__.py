"""
kcpbridge: bridge TCP connections over a reliable UDP tunnel.

One process runs either the server role (tunnel sessions in, TCP upstream
out) or the client role (TCP connections in, tunnel sessions out).
"""

__version__ = "0.1.0"
