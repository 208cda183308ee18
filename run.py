from __future__ import annotations

import asyncio
import argparse

from uvicorn import Config, Server

from paygate.db import build_engine


async def create_db_tables() -> None:
    """Drop and recreate every table (development only)"""

    # registers every model on the metadata
    from paygate.core.models import Base

    engine = build_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await engine.dispose()


def run_api(host: str, port: int, reload: bool) -> None:
    config = Config(
        "paygate.main:app",
        host=host,
        port=port,
        reload=reload,
    )
    server = Server(config)
    asyncio.run(server.serve())


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Local dev runner for paygate")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=9000)
    p.add_argument("--reload", action="store_true", help="auto-reload on code changes")
    p.add_argument(
        "--reset-db", action="store_true", help="drop and recreate all tables first"
    )
    return p.parse_args()


def main() -> None:
    args = parse_args()
    if args.reset_db:
        asyncio.run(create_db_tables())
    run_api(args.host, args.port, args.reload)


if __name__ == "__main__":
    main()
