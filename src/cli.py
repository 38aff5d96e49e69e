#!/usr/bin/env python3
"""CLI entry point for stackops.

Noun-action subcommands:
- stackops stack plan --stack web --template web.yaml
- stackops stack apply --stack web --changeset cs-...
- stackops callback send --url ... --request-id ... --token ... --status SUCCESS

Nouns:
- stack: Stack lifecycle (plan/apply/destroy/drift/status/recover/discard)
- callback: Custom provider callbacks (send/list/serve)
"""

import logging
import subprocess
import sys
from importlib import metadata
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Stack lifecycle (plan/apply/destroy/drift/status/recover/discard)",
    "callback": "Custom provider callbacks (send/list/serve)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack", "callback")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        from engine.cli import stack_main
        rc: int = stack_main(argv)
        return rc

    if noun == "callback":
        from engine.cli import callback_main
        rc = callback_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Installed package version, else the latest git tag, else 'dev'."""
    try:
        return metadata.version('stackops')
    except metadata.PackageNotFoundError:
        pass
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
    except OSError:
        return 'dev'
    return result.stdout.strip() if result.returncode == 0 else 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"stackops {get_version()}")
    print()
    print("Usage: stackops <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'stackops <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stackops stack plan --stack web --template web.yaml")
    print("  stackops stack apply --stack web --template web.yaml --yes")
    print("  stackops stack drift --stack web")
    print("  stackops stack recover --stack web")
    print("  stackops callback serve --port 44480")


def main():
    """CLI entry point: dispatch to noun-action handlers."""
    if len(sys.argv) == 1:
        print_usage()
        return 0

    first_arg = sys.argv[1]
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, sys.argv[2:])

    if first_arg == '--version':
        print(f"stackops {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
