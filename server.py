#!/usr/bin/env python3
"""
Host Snapshot - FastAPI backend serving the latest host snapshot
"""

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from models import SEQUENCE_TABLES, SINGLETON_TABLES
from snapshot_collector import SnapshotCollector

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Module-level collector singleton; created on first use
collector: SnapshotCollector = None
_collector_error: str = ""


def _get_collector() -> SnapshotCollector:
    global collector
    if collector is None:
        collector = SnapshotCollector()
    return collector


async def _initial_collection():
    """Collect the first snapshot in a background thread."""
    global _collector_error
    try:
        snapshot = await asyncio.to_thread(_get_collector().load_or_collect)
        logger.info(f"Initial snapshot ready ({snapshot.collected_at})")
    except Exception as e:
        _collector_error = str(e)
        logger.error(f"Initial collection failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    asyncio.create_task(_initial_collection())
    yield


app = FastAPI(title="Host Snapshot Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    snapshot = collector.snapshot if collector is not None else None
    return {
        "status": "ok",
        "ready": snapshot is not None,
        "platform": collector.platform if collector is not None else None,
        "collected_at": snapshot.collected_at if snapshot is not None else None,
        "error": _collector_error if _collector_error else None,
    }


@app.get("/snapshot")
async def snapshot(refresh: bool = False):
    result = await asyncio.to_thread(_get_collector().load_or_collect, refresh)
    return result.to_dict()


@app.get("/snapshot/{table}")
async def snapshot_table(table: str, refresh: bool = False):
    if table not in SINGLETON_TABLES and table not in SEQUENCE_TABLES:
        return JSONResponse(
            status_code=404,
            content={"error": "unknown_table", "table": table},
        )
    result = await asyncio.to_thread(_get_collector().load_or_collect, refresh)
    if table in SINGLETON_TABLES:
        row = getattr(result, table)
        return {"table": table, "row": row.to_dict() if row is not None else None}
    rows = getattr(result, table)
    return {"table": table, "count": len(rows), "rows": [r.to_dict() for r in rows]}


@app.get("/system-info")
async def system_info():
    if collector is None or collector.snapshot is None:
        return {"fields": []}
    fields = await asyncio.to_thread(collector.get_summary_fields)
    return {"fields": fields}


def main():
    parser = argparse.ArgumentParser(description="Serve host snapshots over HTTP")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    args = parser.parse_args()

    import uvicorn
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
