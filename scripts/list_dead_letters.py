from __future__ import annotations

import argparse
import asyncio

from opsuite.persistence.db import SessionLocal
from opsuite.services.dead_letter import list_dead_letters


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List dead-lettered jobs, newest first")
    parser.add_argument("--queue", default=None, help="Original queue name")
    parser.add_argument("--tenant", default=None, help="Tenant identifier")
    parser.add_argument("--limit", type=int, default=50)
    return parser


async def _list(args: argparse.Namespace) -> None:
    async with SessionLocal() as session:
        rows = await list_dead_letters(
            session=session,
            queue_name=args.queue,
            tenant_id=args.tenant,
            limit=args.limit,
        )
    for row in rows:
        print(
            f"{row.failed_at.isoformat()} queue={row.original_queue} job_id={row.original_job_id} "
            f"tenant_id={row.tenant_id} attempts={row.attempts_made} reason={row.failure_reason}"
        )


if __name__ == "__main__":
    asyncio.run(_list(_build_parser().parse_args()))
