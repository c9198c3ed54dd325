from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from .config import get_settings
from .streaming.supervisor import IngestSupervisor


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

supervisor: IngestSupervisor | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for startup/shutdown."""
    global supervisor

    supervisor = IngestSupervisor(settings)
    await supervisor.start()

    yield

    await supervisor.stop()


app = FastAPI(
    title="Trade Ingestor",
    version="0.1.0",
    lifespan=lifespan,
)


def get_supervisor() -> IngestSupervisor:
    if supervisor is None:
        raise RuntimeError("Supervisor not initialized")
    return supervisor


@app.get("/health")
async def health() -> JSONResponse:
    sup = get_supervisor()
    status = sup.status()
    return JSONResponse(status_code=200 if status["healthy"] else 503, content=status)


@app.get("/metrics")
async def metrics() -> dict[str, Any]:
    sup = get_supervisor()
    return {
        "metrics": sup.metrics.snapshot().to_dict(),
        "connection": sup.stream.connection_metrics(),
    }


@app.get("/v1/trades")
async def get_trades(symbol: str, limit: int = Query(100, ge=1, le=5000)) -> list[dict[str, Any]]:
    sup = get_supervisor()
    rows = await sup.store.fetch_trades(symbol=symbol, limit=limit)
    for row in rows:
        row["price"] = str(row["price"])
        row["quantity"] = str(row["quantity"])
    return rows


def run() -> None:
    """Entry point: serve the health surface and run ingestion in its lifespan."""
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
