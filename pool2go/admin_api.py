"""Read-only admin API for a running relay.

Exposes:
  GET  /health                 — listener and store status
  GET  /stats                  — session counters and stored location count
  GET  /locations/{identity}   — last stored location for one identity

Mounted on its own port next to the relay listener (see ``--admin-port``).
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from pool2go import __version__
from pool2go.db import StoreError
from pool2go.server import RelayServer

router = APIRouter(tags=["relay"])


class LocationResponse(BaseModel):
    identity: str
    latitude: float
    longitude: float


def _relay(request: Request) -> RelayServer:
    return request.app.state.relay


@router.get("/health")
async def health(relay: RelayServer = Depends(_relay)) -> dict[str, Any]:
    store_ok = relay.store is not None
    return {
        "status": "ok" if relay.running and store_ok else "degraded",
        "listening": relay.running,
        "port": relay.port,
        "store": store_ok,
        "version": __version__,
    }


@router.get("/stats")
async def stats(relay: RelayServer = Depends(_relay)) -> dict[str, Any]:
    data = relay.stats.to_dict()
    data["active_sessions"] = relay.active_sessions
    data["locations"] = None
    if relay.store is not None:
        try:
            data["locations"] = relay.store.count()
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
    return data


@router.get("/locations/{identity}", response_model=LocationResponse)
async def get_location(identity: str, relay: RelayServer = Depends(_relay)) -> LocationResponse:
    if relay.store is None:
        raise HTTPException(status_code=503, detail="Location store is closed")
    try:
        record = relay.store.get(identity)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown identity")
    return LocationResponse(
        identity=record.identity,
        latitude=record.latitude,
        longitude=record.longitude,
    )


def create_app(relay: RelayServer) -> FastAPI:
    app = FastAPI(title="pool2go relay", version=__version__)
    app.state.relay = relay
    app.include_router(router)
    return app
