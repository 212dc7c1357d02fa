#!/usr/bin/env python3
"""iav: verify the sigstore attestations attached to container images.

Each subcommand lives in its own module and exposes
``main(argv, prog) -> exit code``; this wrapper only picks the module.
"""

from __future__ import annotations

import importlib
import sys
from importlib import metadata
from typing import List, Optional

DISTRIBUTION = "image-attestation-verify"

# Subcommand -> implementing module. Modules are imported on demand so that
# ``iav --help`` works without the sigstore stack loaded.
COMMANDS = {
    "verify": "iav_verify",
    "fetch": "iav_registry",
    "trust-root": "iav_trust",
}

SUMMARIES = {
    "verify": "Verify the attestations attached to an image against a signer identity",
    "fetch": "List the sigstore bundles attached to an image",
    "trust-root": "Fetch the sigstore trusted_root.json through TUF",
}


def version() -> str:
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "0+unknown"


def usage() -> str:
    width = max(len(name) for name in COMMANDS) + 2
    lines = [f"iav {version()}: image attestation verification", "", "Usage:", "  iav <command> [options]", ""]
    lines.append("Commands:")
    lines.extend(f"  {name:<{width}}{SUMMARIES[name]}" for name in COMMANDS)
    lines.extend(["", "Run 'iav <command> --help' for the options of one command."])
    return "\n".join(lines)


def run(command: str, argv: List[str]) -> int:
    """Run one subcommand and turn argparse exits into exit codes."""
    module = importlib.import_module(COMMANDS[command])
    try:
        result = module.main(argv, prog=f"iav {command}")
    except SystemExit as exc:
        if exc.code is None:
            return 0
        return exc.code if isinstance(exc.code, int) else 2
    return 0 if result is None else int(result)


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)

    if not args or args[0] in {"-h", "--help"}:
        print(usage())
        return 0
    if args[0] == "--version":
        print(f"iav {version()}")
        return 0

    command, rest = args[0], args[1:]
    if command not in COMMANDS:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(usage())
        return 2
    return run(command, rest)


if __name__ == "__main__":
    sys.exit(main())
