#!/usr/bin/env python3
"""
Manually merge a session's audio chunks.

Runs the same reconciliation the API runs when the last chunk arrives.
Use it when a merge failed (mergeError in the upload response) or when
the terminal chunk never made it to the server.

Usage:
    python scripts/reconcile_session.py 42
    python scripts/reconcile_session.py 42 --expected-chunks 12
    python scripts/reconcile_session.py 42 --dry-run

Requires:
    - .env file with Snowflake and S3 credentials
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from src.api.dependencies import build_reconciler, init_object_store, open_db_connection
from src.config.settings import get_settings
from src.core.audio import USE_ALL_CHUNKS, AudioProcessingError
from src.infrastructure.snowflake.repositories import ChunkRepository, SessionRepository


def show_chunks(chunks: ChunkRepository, session_id: int) -> None:
    """Print what the repository knows about a session."""
    sentinel = chunks.find_sentinel(session_id)
    fragments = chunks.find_ordered_by_session(session_id)

    if sentinel:
        print(f"Merged: {sentinel.remote_locator}")
    else:
        print("Merged: (none)")

    print(f"Pending chunks: {len(fragments)}")
    for chunk in fragments:
        marker = " (last)" if chunk.is_terminal else ""
        print(f"  [{chunk.chunk_index}] {chunk.remote_locator}{marker}")


async def reconcile(session_id: int, expected_chunks: int, dry_run: bool) -> bool:
    settings = get_settings()
    store = init_object_store(settings)

    with open_db_connection(settings) as conn:
        if SessionRepository(conn).find_session_by_id(session_id) is None:
            print(f"ERROR: Session {session_id} not found")
            return False

        chunks = ChunkRepository(conn)
        show_chunks(chunks, session_id)

        if dry_run:
            print("\n=== DRY RUN - Nothing will be merged ===")
            return True

        reconciler = build_reconciler(settings, store, chunks)
        try:
            locator = await reconciler.reconcile(session_id, expected_chunks)
        except AudioProcessingError as e:
            print(f"[ERR] Reconciliation failed: {e}")
            return False

    print(f"\n[OK] Merged audio: {locator}")
    return True


def main():
    parser = argparse.ArgumentParser(description='Merge the audio chunks of a session')
    parser.add_argument('session_id', type=int, help='Session to reconcile')
    parser.add_argument(
        '--expected-chunks',
        type=int,
        default=USE_ALL_CHUNKS,
        help='Index of the last chunk + 1. Rebuilds keys for chunks missing from the database.',
    )
    parser.add_argument('--dry-run', action='store_true', help='Show chunks only, don\'t merge')
    args = parser.parse_args()

    success = asyncio.run(reconcile(args.session_id, args.expected_chunks, args.dry_run))

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
