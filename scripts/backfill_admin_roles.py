from __future__ import annotations

import argparse
import asyncio
import sys

from quotagate.core.logging import configure_logging
from quotagate.persistence.db import get_session, reset_engine
from quotagate.services.roles import backfill_admin_roles


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Assign org_admin/admin roles to organizations that have none"
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    return parser


async def _backfill(args: argparse.Namespace) -> int:
    try:
        async with get_session() as session:
            updated = await backfill_admin_roles(session)
    finally:
        await reset_engine()
    print(f"backfilled_organizations={updated}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(args.log_level)
    try:
        return asyncio.run(_backfill(args))
    except Exception as exc:  # noqa: BLE001 - surface migration failures clearly
        print(f"backfill_admin_roles failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
