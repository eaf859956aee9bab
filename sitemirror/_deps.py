"""Startup check for the HTTP/HTML stack: auto-install it once, or explain how."""

import os
import subprocess
import sys
from importlib.util import find_spec

# "0", "false" or "no" turns auto-install off
AUTO_INSTALL_ENV = "SITEMIRROR_AUTO_INSTALL_DEPS"

# import name -> distribution name on PyPI
REQUIRED = {
    "httpx": "httpx",
    "bs4": "beautifulsoup4",
    "lxml": "lxml",
}


def missing_required() -> list[str]:
    return [dist for module, dist in REQUIRED.items() if find_spec(module) is None]


def _auto_install(missing: list[str]) -> None:
    if os.environ.get(AUTO_INSTALL_ENV, "1").lower() in ("0", "false", "no"):
        return
    print(f"Installing {', '.join(missing)}...", file=sys.stderr)
    try:
        subprocess.run([sys.executable, "-m", "pip", "install", "-q", *missing], check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        print(f"Auto-install failed: {e}", file=sys.stderr)
        sys.exit(1)
    print("Done. Run sitemirror again.", file=sys.stderr)
    sys.exit(0)


def check_required() -> None:
    """Return quietly when the stack imports; otherwise install it or exit with a hint."""
    missing = missing_required()
    if not missing:
        return
    _auto_install(missing)
    print(
        f"sitemirror needs {', '.join(missing)}. Install with `pip install sitemirror` "
        f"(or `pip install -e .` from a checkout), or unset {AUTO_INSTALL_ENV} to install on first run.",
        file=sys.stderr,
    )
    sys.exit(1)
