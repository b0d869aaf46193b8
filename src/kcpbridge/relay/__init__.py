"""
Bridge roles.

``create_role`` picks the role named by ``BridgeConfig.MODE``; ``run_role``
binds it and runs its accept loop until cancelled.
"""

from kcpbridge.config import BridgeConfig, TransportConfig
from kcpbridge.models.enums import RelayMode
from kcpbridge.relay.bridge import SessionBridge, SessionOutcome
from kcpbridge.relay.client import TunnelClient
from kcpbridge.relay.dispatch import OutcomeSink, SessionDispatcher
from kcpbridge.relay.server import TunnelServer


def create_role(
    config: BridgeConfig,
    transport_config: TransportConfig,
    on_outcome: OutcomeSink | None = None,
) -> TunnelServer | TunnelClient:
    """
    Build the role selected by ``config.MODE``.

    Raises:
        ValueError: If an address in the configuration is malformed.
    """
    mode = RelayMode(config.MODE)
    if mode == RelayMode.SERVER:
        return TunnelServer(config, transport_config, on_outcome)
    return TunnelClient(config, transport_config, on_outcome)


async def run_role(
    config: BridgeConfig,
    transport_config: TransportConfig,
    on_outcome: OutcomeSink | None = None,
) -> None:
    """
    Bind the selected role and serve until cancelled.

    Raises:
        OSError: If the listen address cannot be bound.
    """
    role = create_role(config, transport_config, on_outcome)
    await role.start()
    try:
        await role.serve_forever()
    finally:
        await role.stop()


__all__ = [
    "OutcomeSink",
    "SessionBridge",
    "SessionDispatcher",
    "SessionOutcome",
    "TunnelClient",
    "TunnelServer",
    "create_role",
    "run_role",
]
