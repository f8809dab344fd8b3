#!/usr/bin/env python3
"""CLI entry point for reconcile.

Dispatches verbs to their handlers in reconciler.cli:
- reconcile plan -c web.yaml
- reconcile apply -c web.yaml --yes
- reconcile destroy --state .states/web/state.json
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

# Verb commands
VERB_COMMANDS = {
    "plan": "Show changes required to reach the configuration",
    "apply": "Apply configuration changes",
    "destroy": "Destroy every resource recorded in state",
    "validate": "Validate configuration and references",
    "output": "Show outputs from the last apply",
    "state": "Inspect recorded state (list/show)",
}


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if verb == "plan":
        from reconciler.cli import plan_main
        rc: int = plan_main(argv)
        return rc
    if verb == "apply":
        from reconciler.cli import apply_main
        rc = apply_main(argv)
        return rc
    if verb == "destroy":
        from reconciler.cli import destroy_main
        rc = destroy_main(argv)
        return rc
    if verb == "validate":
        from reconciler.cli import validate_main
        rc = validate_main(argv)
        return rc
    if verb == "output":
        from reconciler.cli import output_main
        rc = output_main(argv)
        return rc
    if verb == "state":
        from reconciler.cli import state_main
        rc = state_main(argv)
        return rc

    print(f"Error: Verb '{verb}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, 'dev' outside a tagged checkout."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"reconcile {get_version()}")
    print()
    print("Usage: reconcile <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'reconcile <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  reconcile validate -c web.yaml")
    print("  reconcile plan -c web.yaml --detailed-exitcode")
    print("  reconcile apply -c web.yaml --workers 4 --yes")
    print("  reconcile output network_id -c web.yaml")
    print("  reconcile destroy -c web.yaml")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to verb handlers."""
    args = sys.argv[1:] if argv is None else list(argv)

    if not args or args[0] in ('-h', '--help'):
        print_usage()
        return 0

    if args[0] == '--version':
        print(f"reconcile {get_version()}")
        return 0

    verb = args[0]
    if verb in VERB_COMMANDS:
        return dispatch_verb(verb, args[1:])

    print(f"Error: Unknown command '{verb}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
