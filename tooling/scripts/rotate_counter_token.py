#!/usr/bin/env python3
"""Rotate counter QR tokens for one program or every active program."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rotate loyalty counter QR tokens")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--public-id", help="Public id of the program to rotate.")
    target.add_argument(
        "--all-active",
        action="store_true",
        help="Rotate every program currently in the active state.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the programs that would be rotated without changing them.",
    )
    return parser.parse_args()


async def _rotate(public_id: str | None, all_active: bool, dry_run: bool) -> int:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from sqlalchemy import select  # type: ignore import-position

    from stampline_api.db.session import async_session  # type: ignore import-position
    from stampline_api.models.loyalty import LoyaltyProgram, LoyaltyProgramStatus  # type: ignore import-position
    from stampline_api.services.loyalty import ProgramRegistry  # type: ignore import-position

    async with async_session() as session:
        registry = ProgramRegistry(session)
        if public_id:
            program = await registry.get_by_public_id(public_id)
            if program is None:
                logger.error("Program not found", public_id=public_id)
                return 0
            targets = [(program.id, program.public_id)]
        else:
            result = await session.execute(
                select(LoyaltyProgram.id, LoyaltyProgram.public_id).where(
                    LoyaltyProgram.status == LoyaltyProgramStatus.ACTIVE
                )
            )
            targets = [(row.id, row.public_id) for row in result]
        await session.commit()

        rotated = 0
        for program_id, program_public_id in targets:
            if dry_run:
                logger.info("Would rotate counter token", public_id=program_public_id)
                continue
            await registry.rotate_token(program_id)
            rotated += 1
            logger.info("Rotated counter token", public_id=program_public_id)
        return rotated


def main() -> int:
    args = parse_args()
    rotated = asyncio.run(_rotate(args.public_id, args.all_active, args.dry_run))
    logger.info("Counter token rotation complete", rotated=rotated, dry_run=args.dry_run)
    if args.public_id and not args.dry_run and rotated == 0:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
