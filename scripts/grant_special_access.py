from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys

from quotagate.core.logging import configure_logging
from quotagate.persistence.db import get_session, reset_engine
from quotagate.services.plans import Capability
from quotagate.services.special_access import (
    ACCESS_CUSTOM,
    ACCESS_TYPE_PRESETS,
    grant_override,
    revoke_override,
)


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit so grants are always attributable.
    parser = argparse.ArgumentParser(description="Grant or revoke special access for a subject")
    parser.add_argument("--subject", required=True, help="Subject identifier")
    parser.add_argument("--organization", required=True, help="Organization identifier")
    parser.add_argument("--granted-by", required=True, help="Operator recorded on the grant")
    parser.add_argument(
        "--access-type",
        default=ACCESS_CUSTOM,
        choices=sorted(ACCESS_TYPE_PRESETS),
        help="Preset limits to start from",
    )
    for capability in Capability:
        parser.add_argument(
            f"--{capability.value}",
            type=int,
            default=None,
            help=f"Monthly {capability.value} limit (-1 for unbounded)",
        )
    parser.add_argument("--expires-in-days", type=int, default=None, help="Grant lifetime in days")
    parser.add_argument("--reason", default=None, help="Reason recorded on the grant")
    parser.add_argument("--revoke", action="store_true", help="Revoke instead of granting")
    return parser


def _limits_from_args(args: argparse.Namespace) -> dict[str, int]:
    return {
        capability.value: getattr(args, capability.value)
        for capability in Capability
        if getattr(args, capability.value) is not None
    }


async def _apply(args: argparse.Namespace) -> int:
    try:
        async with get_session() as session:
            if args.revoke:
                await revoke_override(
                    session,
                    subject_id=args.subject,
                    organization_id=args.organization,
                    revoked_by=args.granted_by,
                )
                print(f"special_access_revoked subject={args.subject} organization={args.organization}")
                return 0

            expires_at = None
            if args.expires_in_days is not None:
                expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_in_days)
            override = await grant_override(
                session,
                subject_id=args.subject,
                organization_id=args.organization,
                limits=_limits_from_args(args),
                granted_by=args.granted_by,
                expires_at=expires_at,
                access_type=args.access_type,
                reason=args.reason,
            )
    finally:
        await reset_engine()

    print("Special access granted:")
    print(f"  subject: {override.subject_id}")
    print(f"  organization: {override.organization_id}")
    print(f"  limits: {override.limits}")
    print(f"  expires_at: {override.expires_at.isoformat() if override.expires_at else 'never'}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_apply(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"grant_special_access failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
