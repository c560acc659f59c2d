"""Create the monitor database and apply its schema.

Usage:
    python -m scripts.init_db
"""

import logging
import sys

from chief_monitor.config import get_settings
from chief_monitor.store import get_connection, init_schema

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)


def main() -> None:
    """Apply the schema to the configured database file."""
    db_path = get_settings().monitor_db_path
    try:
        conn = get_connection(db_path)
    except ValueError as e:
        print(f"Failed to open database: {e}", file=sys.stderr)
        sys.exit(1)
    try:
        init_schema(conn)
    finally:
        conn.close()
    print(f"Schema applied to {db_path}")


if __name__ == "__main__":
    main()
