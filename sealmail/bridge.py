"""Local HTTP bridge between interactive surfaces and the service.

A surface page is opened with its ``surface_id``; it fetches ``init``,
posts ``done``, and the host reports window closure with ``DELETE``.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, status

from .session import SurfaceChannel


def create_bridge_app(channel: SurfaceChannel) -> FastAPI:
    """Build the FastAPI app that serves the init/done surface contract."""
    app = FastAPI(title="sealmail surfaces bridge", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "pending_surfaces": channel.pending_count}

    @app.get("/surfaces/{surface_id}/init")
    async def surface_init(surface_id: str) -> dict[str, Any]:
        try:
            return channel.init_payload(surface_id)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown surface")

    @app.post("/surfaces/{surface_id}/done", status_code=status.HTTP_204_NO_CONTENT)
    async def surface_done(surface_id: str, payload: dict[str, Any]) -> None:
        try:
            channel.complete(surface_id, payload)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown surface")

    @app.delete("/surfaces/{surface_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def surface_closed(surface_id: str) -> None:
        channel.close(surface_id)

    return app
