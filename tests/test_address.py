"""Tests for host:port parsing."""

import pytest

from kcpbridge.utils.address import format_address, parse_address


@pytest.mark.parametrize(
    "text,expected",
    [
        ("127.0.0.1:25565", ("127.0.0.1", 25565)),
        ("0.0.0.0:0", ("0.0.0.0", 0)),
        ("example.com:443", ("example.com", 443)),
        ("[::1]:8080", ("::1", 8080)),
        (" localhost:22 ", ("localhost", 22)),
    ],
)
def test_parse_valid(text, expected):
    assert parse_address(text) == expected


@pytest.mark.parametrize(
    "text",
    [
        "",
        "25565",
        ":25565",
        "localhost:",
        "localhost:http",
        "localhost:65536",
        "::1:8080",
        "[::1:8080",
        "[not-ipv6]:8080",
        "[]:80",
    ],
)
def test_parse_invalid(text):
    with pytest.raises(ValueError):
        parse_address(text)


def test_format_address():
    assert format_address(("127.0.0.1", 80)) == "127.0.0.1:80"
    assert format_address(("::1", 80, 0, 0)) == "[::1]:80"
