"""Initialize the primary database schema and, optionally, the blob store bucket."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure src/ is on sys.path so we can import shared logging and DB helpers.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.append(str(SRC_ROOT))

from utils.logging import get_logger  # noqa: E402
from equipment_vision.blob_store import MinioBlobStore  # noqa: E402
from equipment_vision.config import load_settings  # noqa: E402
from equipment_vision.db import open_primary_session  # noqa: E402

LOGGER = get_logger(__name__)


def _init_primary_db(target: str | Path) -> None:
    """Open one session so the engine creates the schema (and the vector extension on PostgreSQL)."""

    session = open_primary_session(target)
    session.close()
    LOGGER.info("init_primary_db_ok", extra={"target": str(target)})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the primary database schema.")
    parser.add_argument(
        "--data-db",
        type=str,
        default=None,
        help="Primary database URL or path. Defaults to databases.primary_url in settings.yaml.",
    )
    parser.add_argument(
        "--ensure-bucket",
        action="store_true",
        help="Also create the configured blob store bucket when it does not exist.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings()
    primary_target = args.data_db or settings.databases.primary_url
    _init_primary_db(primary_target)
    if args.ensure_bucket:
        MinioBlobStore(settings.blob_store).ensure_bucket()
        LOGGER.info("init_bucket_ok", extra={"bucket": settings.blob_store.bucket})
    LOGGER.info("init_databases_complete", extra={"primary": str(primary_target)})


if __name__ == "__main__":
    main()
