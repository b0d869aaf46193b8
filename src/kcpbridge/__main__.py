"""Allow ``python -m kcpbridge``."""

from kcpbridge.cli.main import app

app(prog_name="kcpbridge")
