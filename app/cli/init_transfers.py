#!/usr/bin/env python3
"""
Create the payout (transfer) rows for existing sols.

Usage:
    python -m app.cli.init_transfers --sol-id 3
    python -m app.cli.init_transfers            # every active sol

Safe to run repeatedly: tours that already have a transfer are skipped.
"""
import asyncio
import argparse
import sys

from sqlalchemy import select

from app.cli.manage_users import cli_session
from app.core.exceptions import SolNumeriqueError
from app.db.models import Sol, SolStatus
from app.services.transfer_service import TransferService


async def init_transfers(sol_id: int = None) -> int:
    """Returns the number of transfers created."""
    created = 0
    async with cli_session() as session:
        if sol_id:
            sol_ids = [sol_id]
        else:
            result = await session.execute(
                select(Sol.id).where(Sol.statut == SolStatus.ACTIVE).order_by(Sol.id)
            )
            sol_ids = list(result.scalars().all())

        for current_id in sol_ids:
            transfers = await TransferService.initialize_transfers_for_sol(session, current_id)
            print(f"  Sol {current_id}: {len(transfers)} transfer(s) created")
            created += len(transfers)

    print(f"[SUCCESS] {created} transfer(s) created for {len(sol_ids)} sol(s)")
    return created


def main():
    parser = argparse.ArgumentParser(description='Initialize transfers for sols')
    parser.add_argument('--sol-id', type=int, help='Only this sol (default: every active sol)')
    args = parser.parse_args()

    try:
        asyncio.run(init_transfers(args.sol_id))
    except SolNumeriqueError as e:
        print(f"[ERROR] {e.message}")
        sys.exit(1)


if __name__ == '__main__':
    main()
