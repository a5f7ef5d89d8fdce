#!/usr/bin/env python3
import argparse
import asyncio

from src.db import Database
from src.errors import InvalidStateError
from src.models import SummaryStatus
from src import session as session_module


async def run(args: argparse.Namespace) -> int:
    db = Database()
    try:
        mgr = session_module.init_session_manager(db)
        sessions = await mgr.store.find_sessions_with_failed_summary(limit=args.limit)

        completed = 0
        failed = 0
        for chat_session in sessions:
            if args.room_id and chat_session.room_id != args.room_id:
                continue
            if args.dry_run:
                print(f"would resummarize {chat_session.session_id}")
                continue
            try:
                summary = await mgr.generate_summary_now(chat_session.session_id)
            except InvalidStateError as e:
                print(f"skip {chat_session.session_id}: {e}")
                continue
            if summary.status == SummaryStatus.COMPLETED:
                completed += 1
            else:
                failed += 1
                print(f"failed {chat_session.session_id}: {summary.error_message}")

        print(f"resummarize: found={len(sessions)} completed={completed} failed={failed}")
        return 0
    finally:
        await db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry summaries for closed sessions whose latest summary failed.")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--room-id")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
