from __future__ import annotations

import argparse
import asyncio
import json

from opsuite.core.logging import configure_logging
from opsuite.services.queue import TriggerSweepJobPayload, enqueue_trigger_sweep
from opsuite.services.triggers import run_trigger_sweep


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Evaluate trigger rules for one tenant or all tenants")
    parser.add_argument("--tenant", default=None, help="Tenant identifier; omit to sweep every tenant")
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Queue the sweep for the trigger worker instead of running it in this process",
    )
    return parser


async def _main(args: argparse.Namespace) -> None:
    configure_logging()
    if args.enqueue:
        job_id = await enqueue_trigger_sweep(TriggerSweepJobPayload(tenant_id=args.tenant, triggered_by="cli"))
        print(f"enqueued_trigger_sweep job_id={job_id}")
        return
    summary = await run_trigger_sweep(tenant_id=args.tenant)
    print(json.dumps(summary.as_dict(), indent=2))


if __name__ == "__main__":
    asyncio.run(_main(_build_parser().parse_args()))
