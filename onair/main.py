import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from onair.api import assets, broadcast, channels, schedule, webhooks
from onair.config import API_KEY, LOG_LEVEL, QUIET_ACCESS_LOG, QUIET_WEBSOCKET_LOG
from onair.db import Base, engine, ensure_sqlite_schema
from onair.services.realtime import hub

# Table modules must be imported before create_all.
from onair.models import channel, execution_log, output, program, session, video_asset, webhook_log  # noqa: F401

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

Base.metadata.create_all(bind=engine)
ensure_sqlite_schema()

if QUIET_ACCESS_LOG:
    # Keep warning/error lines, suppress normal access noise (200/201 etc).
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

if QUIET_WEBSOCKET_LOG:
    # Monitor screens reconnect on their own; transport drops are not worth a stack trace.
    logging.getLogger("websockets").setLevel(logging.CRITICAL)
    logging.getLogger("uvicorn.protocols.websockets").setLevel(logging.CRITICAL)

PUBLIC_PREFIXES = ("/docs", "/openapi.json", "/redoc", "/healthz")
WATCHED_PREFIXES = ("/channels", "/assets", "/schedules")

app = FastAPI(title="onair")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {
        "ok": True,
        "service": "onair-api",
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "docs": "/docs",
    }


@app.get("/healthz")
def healthz():
    return {"ok": True, "realtime_clients": hub.client_count, "revision": hub.revision}


@app.websocket("/ws/updates")
async def ws_updates(websocket: WebSocket, channel_id: str | None = None):
    await hub.connect(websocket, channel_id=channel_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await hub.disconnect(websocket)
    except Exception:
        await hub.disconnect(websocket)


@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    if not API_KEY:
        return await call_next(request)
    path = request.url.path
    if path == "/" or path.startswith(PUBLIC_PREFIXES):
        return await call_next(request)
    if request.headers.get("X-API-Key") != API_KEY:
        return JSONResponse({"detail": "Unauthorized"}, status_code=401)
    return await call_next(request)


@app.middleware("http")
async def realtime_mutation_middleware(request: Request, call_next):
    response = await call_next(request)
    method = request.method.upper()
    path = request.url.path
    if response.status_code < 400 and method in {"POST", "PUT", "DELETE"}:
        if path.startswith(WATCHED_PREFIXES):
            await hub.publish(
                "config_changed",
                {
                    "path": path,
                    "method": method,
                    "channel_id": request.query_params.get("channel_id"),
                },
            )
    return response


app.include_router(channels.router)
app.include_router(assets.router)
app.include_router(schedule.router)
app.include_router(broadcast.router)
app.include_router(webhooks.router)
