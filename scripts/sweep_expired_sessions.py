#!/usr/bin/env python3
import argparse
import asyncio

from src.config import get_settings
from src.db import Database
from src import session as session_module


async def run(args: argparse.Namespace) -> int:
    db = Database()
    try:
        session_module.init_session_manager(db)
        closed = await session_module.sweep_expired_sessions(batch_size=args.batch_size)
        print(f"sweep: closed={closed}")
        return 0
    finally:
        await db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Close active sessions past their time budget.")
    parser.add_argument("--batch-size", type=int, default=get_settings().expiry_sweep_batch_size)
    args = parser.parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
