# scripts/run_cleanup_once.py
"""手動跑一次 token / session GC（例如 cron 或維運時）"""
import asyncio

from app.core.logging import setup_logging
from app.services.token_gc import run_gc_once

async def main():
    setup_logging()
    deleted = await run_gc_once()
    print({"deleted_tokens": deleted})

if __name__ == "__main__":
    asyncio.run(main())
