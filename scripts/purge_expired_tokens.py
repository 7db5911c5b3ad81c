#!/usr/bin/env python
"""Delete single-use tokens that expired or were used a while ago.

Daily send caps count rows created in the last 24 hours, so the default
cutoff keeps a day of dead rows around.

Example usage:

    python scripts/purge_expired_tokens.py --older-than-hours 48
"""

from __future__ import annotations

import argparse
from datetime import timedelta

from authcore.config import get_settings
from authcore.database import make_engine, make_session_factory
from authcore.logging import configure_logging
from authcore.tokens import SecureTokenService


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--older-than-hours",
        type=int,
        default=24,
        help=(
            "Only delete tokens that expired or were used at least this many hours ago "
            "(default: 24)"
        ),
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging()
    settings = get_settings()
    engine = make_engine(settings)
    session_factory = make_session_factory(engine)
    try:
        with session_factory() as db:
            tokens = SecureTokenService.from_settings(db, settings)
            cutoff = tokens.now() - timedelta(hours=max(0, args.older_than_hours))
            removed = tokens.purge_expired(cutoff)
            db.commit()
    finally:
        engine.dispose()
    print(f"Removed {removed} dead tokens")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
