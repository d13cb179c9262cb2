"""
Entry point: run the scheduled publication engine.

Usage::

    python run.py           # run until interrupted
    python run.py --once    # run a single tick and print its report
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import asdict

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("run")


async def main(once: bool = False) -> int:
    from publication_engine.config import get_settings, validate_env
    from publication_engine.database import create_supabase_client
    from publication_engine.encryption import CredentialCipher
    from publication_engine.engine import build_engine

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    validate_env(strict=True)
    client = await create_supabase_client()
    engine = build_engine(settings, client, CredentialCipher.from_env())

    if once:
        report = await engine.run_once()
        print(asdict(report))
        return 0

    try:
        await engine.start()
    finally:
        await engine.stop()
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scheduled publication engine")
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single scheduler tick and exit",
    )
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    try:
        sys.exit(asyncio.run(main(once=args.once)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
