"""
Artis Sales — Lance un batch à la main (équivalent cron).
Run: cd backend && python3 scripts/run_job.py {sla-sweep|outbox|auto-checkout|dsr-compile} [--date YYYY-MM-DD]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

JOBS = ("sla-sweep", "outbox", "auto-checkout", "dsr-compile")


async def run(job: str, date: str = None):
    from services.event_dispatcher import run_dispatcher
    from services.sla_sweeper import run_sla_sweep
    from services.dsr_compiler import compile_daily_reports
    from services.attendance import run_auto_checkout

    if job == "sla-sweep":
        return await run_sla_sweep()
    if job == "outbox":
        return await run_dispatcher()
    if job == "auto-checkout":
        return await run_auto_checkout(date=date)
    return await compile_daily_reports(date=date)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one Artis Sales batch job")
    parser.add_argument("job", choices=JOBS)
    parser.add_argument("--date", help="Local day (YYYY-MM-DD), defaults to today in APP_TIMEZONE")
    args = parser.parse_args(argv)

    if args.date and args.job not in ("dsr-compile", "auto-checkout"):
        parser.error("--date only applies to dsr-compile and auto-checkout")

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    results = asyncio.run(run(args.job, args.date))
    for key, value in results.items():
        print(f"  {key}: {value}")
    return 1 if results.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
