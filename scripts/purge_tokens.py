#!/usr/bin/env python3
"""Delete revoked or expired refresh tokens and used or expired one-time tokens.

Meant to run from cron against the PostgreSQL store:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/purge_tokens.py
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    from authsvc.service.runtime import get_runtime
    from authsvc.storage.errors import StoreUnavailable

    runtime = get_runtime()
    try:
        purged = runtime.store.purge_expired(runtime.clock.now())
    except StoreUnavailable as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        asyncio.run(runtime.close())
    print(f"Purged {purged} token rows")
    return 0


if __name__ == "__main__":
    sys.exit(main())
