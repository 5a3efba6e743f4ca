"""Script to run database migrations.

Usage:
    python scripts/migrate.py                   # upgrade to head
    python scripts/migrate.py downgrade <rev>   # downgrade to a revision
    python scripts/migrate.py current           # show the applied revision
    python scripts/migrate.py create <message>  # autogenerate a revision
"""

import sys

from alembic import command
from alembic.config import Config

ALEMBIC_INI = "alembic.ini"


def _run(description: str, action, *args, **kwargs) -> None:
    alembic_cfg = Config(ALEMBIC_INI)
    try:
        print(f"{description}...")
        action(alembic_cfg, *args, **kwargs)
        print("✓ Done")
    except Exception as e:
        print(f"✗ {description} failed: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv: list[str]) -> None:
    """Dispatch the requested alembic command."""
    if not argv:
        _run("Upgrading to head", command.upgrade, "head")
    elif argv[0] == "downgrade" and len(argv) == 2:
        _run(f"Downgrading to {argv[1]}", command.downgrade, argv[1])
    elif argv[0] == "current":
        _run("Reading current revision", command.current, verbose=True)
    elif argv[0] == "create" and len(argv) > 1:
        message = " ".join(argv[1:])
        _run(f"Creating migration '{message}'", command.revision, message=message, autogenerate=True)
    else:
        print(__doc__)
        sys.exit(2)


if __name__ == "__main__":
    main(sys.argv[1:])
