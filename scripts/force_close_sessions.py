#!/usr/bin/env python3
import argparse
import asyncio

from src.db import Database
from src.models import CloseReason, SessionStatus
from src import session as session_module


async def run(args: argparse.Namespace) -> int:
    db = Database()
    try:
        mgr = session_module.init_session_manager(db)
        sessions = await mgr.store.list_sessions(
            status=SessionStatus.ACTIVE,
            room_id=args.room_id,
            owner_id=args.owner_id,
            limit=args.limit
        )

        closed = 0
        for chat_session in sessions:
            if args.dry_run:
                print(f"would close {chat_session.session_id} (room={chat_session.room_id})")
                continue
            result = await mgr.close_session(
                chat_session.session_id,
                reason=CloseReason.MANUAL,
                attempt_summary=not args.no_summary
            )
            if result.status == SessionStatus.CLOSED:
                closed += 1

        print(f"force_close: found={len(sessions)} closed={closed}")
        return 0
    finally:
        await db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Force close active chat sessions.")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--room-id")
    parser.add_argument("--owner-id")
    parser.add_argument("--no-summary", action="store_true", help="Close without generating summaries")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
