from __future__ import annotations

import argparse
import asyncio
import sys

from quotagate.core.logging import configure_logging
from quotagate.persistence.db import get_session, reset_engine
from quotagate.services.maintenance import deactivate_expired_overrides


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mark expired special access grants inactive")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    return parser


async def _deactivate(args: argparse.Namespace) -> int:
    try:
        async with get_session() as session:
            deactivated = await deactivate_expired_overrides(session)
    finally:
        await reset_engine()
    print(f"deactivated_overrides={deactivated}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(args.log_level)
    try:
        return asyncio.run(_deactivate(args))
    except Exception as exc:  # noqa: BLE001 - surface maintenance failures clearly
        print(f"deactivate_expired_overrides failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
