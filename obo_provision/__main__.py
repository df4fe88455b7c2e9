"""Allow ``python -m obo_provision``."""
from __future__ import annotations

import sys

RUNTIME_PACKAGES = {
    "typer": "typer",
    "yaml": "PyYAML",
    "msal": "msal",
    "requests": "requests",
    "azure": "azure-identity",
    "azure.identity": "azure-identity",
}

try:
    from .cli import run
except ModuleNotFoundError as exc:  # pragma: no cover
    package = RUNTIME_PACKAGES.get(getattr(exc, "name", None) or "")
    if package is None:
        raise
    sys.stderr.write(f"obo-provision needs '{package}'. Install it with\n    pip install -e .\n")
    raise SystemExit(1) from exc

run()
