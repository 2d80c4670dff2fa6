"""HTTP/WebSocket server exposing the live cutout textures.

Runs a processing session against the server's camera, ticking at the
configured refresh rate, and serves the published textures and gesture
slots to remote renderers.

Endpoints:
- GET  /api/status             session state, pacer and texture counters
- GET  /api/gestures           current gesture slots and their display labels
- POST /api/slots/labels       set display labels for the two slots
- GET  /api/options            options the session runs with
- GET  /api/textures/{name}.png  latest texture as PNG (foreground/background)
- GET  /metrics                Prometheus metrics
- WS   /ws                     one "frame" message per publish

Usage:
    python -m cutout_engine.server
    # or
    uvicorn cutout_engine.server:app --host 0.0.0.0 --port 8765
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from typing import Optional

try:
    from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
    from fastapi.responses import HTMLResponse, PlainTextResponse, Response
    _HAS_FASTAPI = True
except ImportError:
    _HAS_FASTAPI = False

if not _HAS_FASTAPI:
    raise ImportError("FastAPI required. Install with: pip install fastapi uvicorn")

try:
    import cv2
except ImportError:
    cv2 = None

from pydantic import BaseModel

from cutout_engine import __version__
from cutout_engine.config import PipelineOptions
from cutout_engine.errors import CutoutEngineError
from cutout_engine.metrics import MetricsCollector
from cutout_engine.session import ProcessingSession, TickResult

logger = logging.getLogger("cutout_engine.server")

app = FastAPI(title="CutoutEngine", version=__version__)


# --- State ---

class ServerState:
    def __init__(self):
        self.clients: set[WebSocket] = set()
        self.options = PipelineOptions()
        self.session: Optional[ProcessingSession] = None
        self.metrics: MetricsCollector = MetricsCollector()
        self.slot_labels: dict[str, str] = {"primary": "left", "secondary": "right"}
        self.autostart = True
        self.running = False
        self.error: Optional[str] = None

state = ServerState()


class SlotLabels(BaseModel):
    primary: str = "left"
    secondary: str = "right"


@app.get("/")
async def index():
    return HTMLResponse(
        "<h1>CutoutEngine Server</h1>"
        "<p><img src='/api/textures/foreground.png'> <img src='/api/textures/background.png'></p>"
    )


# --- API endpoints ---

@app.get("/api/status")
async def api_status():
    session = state.session
    return {
        "running": state.running,
        "error": state.error,
        "clients": len(state.clients),
        "session": session.stats() if session else None,
    }


@app.get("/api/gestures")
async def api_gestures():
    slots = state.session.slots.to_dict() if state.session else {"primary": None, "secondary": None}
    return {"slots": slots, "labels": state.slot_labels}


@app.post("/api/slots/labels")
async def set_slot_labels(labels: SlotLabels):
    state.slot_labels = {"primary": labels.primary, "secondary": labels.secondary}
    return {"labels": state.slot_labels}


@app.get("/api/options")
async def api_options():
    return state.options.to_dict()


@app.get("/api/textures/{name}.png")
async def texture_png(name: str):
    session = state.session
    if session is None or name not in session.bridge.names:
        raise HTTPException(status_code=404, detail=f"No texture '{name}'")
    if session.bridge.dims is None:
        raise HTTPException(status_code=404, detail="No frame published yet")
    if cv2 is None:
        raise HTTPException(status_code=503, detail="opencv-python required for PNG encoding")

    rgba = session.bridge.snapshot(name)
    ok, png = cv2.imencode(".png", cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA))
    if not ok:
        raise HTTPException(status_code=500, detail="PNG encoding failed")
    return Response(content=png.tobytes(), media_type="image/png")


# --- Prometheus metrics ---

@app.get("/metrics")
async def metrics():
    state.metrics.set_connections(len(state.clients))
    return PlainTextResponse(
        state.metrics.render(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# --- WebSocket ---

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    state.clients.add(ws)
    logger.info(f"Client connected ({len(state.clients)} total)")

    try:
        await ws.send_json({
            "type": "connected",
            "textures": list(state.session.bridge.names) if state.session else [],
            "labels": state.slot_labels,
        })

        while True:
            try:
                msg = await asyncio.wait_for(ws.receive_text(), timeout=30)
                data = json.loads(msg)
                if data.get("type") == "ping":
                    await ws.send_json({"type": "pong", "server_time": time.time()})
            except asyncio.TimeoutError:
                await ws.send_json({"type": "ping"})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug(f"WebSocket error: {e}")
    finally:
        state.clients.discard(ws)
        logger.info(f"Client disconnected ({len(state.clients)} total)")


async def broadcast(message: dict):
    """Send message to all clients."""
    if not state.clients:
        return
    dead = set()
    payload = json.dumps(message)
    for ws in list(state.clients):
        try:
            await ws.send_text(payload)
        except Exception:
            dead.add(ws)
    state.clients -= dead


def frame_message(result: TickResult, version: int, resized: bool) -> dict:
    width, height = result.composite.dims
    return {
        "type": "frame",
        "version": version,
        "width": width,
        "height": height,
        "resized": resized,
        "coverage": round(result.composite.coverage, 4),
        "slots": result.slots.to_dict(),
        "labels": state.slot_labels,
        "timestamp": time.time(),
    }


# --- Processing loop ---

async def processing_loop():
    """Main loop: tick the session at the refresh rate, broadcast publishes."""
    # Inference runs on a worker thread so ticks never block the event loop.
    options = dataclasses.replace(state.options, background_inference=True)
    session = ProcessingSession.from_options(options, metrics=state.metrics)
    state.session = session
    loop = asyncio.get_running_loop()

    def on_publish(result: TickResult):
        resized = session.bridge.acknowledge_resize()
        loop.create_task(broadcast(frame_message(result, session.bridge.version, resized)))

    session.on_publish(on_publish)

    try:
        await session.initialize()
        session.start()
    except CutoutEngineError as e:
        state.error = str(e)
        logger.error("Session could not start: %s", e)
        session.stop()
        return

    state.running = True
    period = 1.0 / options.refresh_hz

    try:
        while state.running:
            t0 = loop.time()
            session.tick()
            await asyncio.sleep(max(0.0, period - (loop.time() - t0)))
    except Exception as e:
        state.error = str(e)
        logger.exception("Processing loop crashed")
    finally:
        state.running = False
        await loop.run_in_executor(None, session.stop)
        logger.info("Processing loop stopped")


@app.on_event("startup")
async def startup():
    if state.autostart:
        asyncio.create_task(processing_loop())


@app.on_event("shutdown")
async def shutdown():
    state.running = False


# --- CLI entry point ---

def main():
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="CutoutEngine Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8765, help="Port")
    parser.add_argument("--config", default=None, help="Path to options YAML")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    if args.config:
        state.options = PipelineOptions.from_yaml(args.config)

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
