"""
kcpbridge CLI entry point.

Usage:
    kcpbridge --server --proxy-addr 127.0.0.1:25565 [--listen-addr 0.0.0.0:25565]
    kcpbridge --client --proxy-addr 203.0.113.7:25565 [--listen-addr 127.0.0.1:25565]

Example:
    # Expose a local TCP service through a tunnel endpoint on UDP 4000
    kcpbridge --server -p 127.0.0.1:25565 -l 0.0.0.0:4000

    # Reach it from another machine on local TCP port 25565
    kcpbridge --client -p 203.0.113.7:4000 -l 127.0.0.1:25565
"""

import asyncio
import errno
from typing import Annotated

import typer

from kcpbridge.cli.output import console, print_error
from kcpbridge.config import BridgeConfig, DEFAULT_TRANSPORT_CONFIG
from kcpbridge.models.enums import LogLevel, RelayMode
from kcpbridge.relay import run_role
from kcpbridge.utils.address import parse_address
from kcpbridge.utils.logger import configure_logging

app = typer.Typer(
    name="kcpbridge",
    help="Bridge TCP connections over a reliable UDP tunnel",
    add_completion=False,
    rich_markup_mode="rich",
)


def _check_address(value: str, option: str) -> str:
    try:
        parse_address(value)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint=f"'{option}'")
    return value


@app.command()
def main(
    proxy_addr: Annotated[
        str,
        typer.Option(
            "--proxy-addr",
            "-p",
            help="Server mode: upstream TCP address. Client mode: remote tunnel endpoint.",
            envvar="KCPBRIDGE_PROXY_ADDR",
        ),
    ],
    server: Annotated[
        bool,
        typer.Option(
            "--server",
            help="Accept tunnel sessions on UDP and forward them to --proxy-addr",
        ),
    ] = False,
    client: Annotated[
        bool,
        typer.Option(
            "--client",
            help="Accept TCP connections and tunnel them to --proxy-addr",
        ),
    ] = False,
    listen_addr: Annotated[
        str,
        typer.Option(
            "--listen-addr",
            "-l",
            help="Server mode: local UDP bind address. Client mode: local TCP listen address.",
            envvar="KCPBRIDGE_LISTEN_ADDR",
        ),
    ] = "0.0.0.0:25565",
    log_level: Annotated[
        LogLevel,
        typer.Option("--log-level", help="Logging verbosity", case_sensitive=False),
    ] = LogLevel.INFO,
    dial_timeout: Annotated[
        float,
        typer.Option(
            "--dial-timeout",
            min=0.1,
            help="Seconds allowed for each outbound connection attempt",
        ),
    ] = 10.0,
):
    """
    Run one side of the TCP <-> tunnel bridge.

    Exactly one of [bold]--server[/bold] or [bold]--client[/bold] is required.
    """
    if server == client:
        raise typer.BadParameter(
            "specify exactly one of --server or --client",
            param_hint="'--server' / '--client'",
        )

    config = BridgeConfig(
        MODE=RelayMode.SERVER if server else RelayMode.CLIENT,
        PROXY_ADDR=_check_address(proxy_addr, "--proxy-addr"),
        LISTEN_ADDR=_check_address(listen_addr, "--listen-addr"),
        DIAL_TIMEOUT=dial_timeout,
        LOG_LEVEL=log_level,
    )

    configure_logging(config.LOG_LEVEL)
    console.print(f"[bold]Run in {config.MODE.value} mode...[/bold]")

    try:
        asyncio.run(run_role(config, DEFAULT_TRANSPORT_CONFIG))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
    except OSError as e:
        if e.errno in (errno.EADDRINUSE, errno.EADDRNOTAVAIL):
            print_error(f"Cannot bind {config.LISTEN_ADDR}: {e.strerror}")
        else:
            print_error(str(e))
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
