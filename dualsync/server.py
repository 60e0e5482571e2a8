import time
from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from typing import Optional
from .config import settings
from .rooms import RoomRegistry

app = FastAPI(title="DualSync Rendezvous")
registry = RoomRegistry()
started_at = time.time()

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

async def signaling(websocket: WebSocket):
    await websocket.accept()
    # Bound to the registry in place at connect time
    rooms = registry
    participant = rooms.connected(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # Binary frames carry the same JSON as text frames
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await rooms.handle_raw(participant, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await rooms.disconnect(participant)

# Browser clients connect to the bare host URL
app.add_api_websocket_route("/", signaling)
app.add_api_websocket_route("/ws", signaling)

@app.get("/healthz")
def healthz():
    return {"status": "ok", "uptime": time.time() - started_at}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    stats = registry.stats()
    return {
        **stats,
        "config": {
            "room_ttl": settings.ROOM_TTL_SECONDS,
            "sweep_interval": settings.ROOM_SWEEP_INTERVAL_SECONDS,
        }
    }

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    s = registry.stats()
    lines = [
        f'dualsync_rooms {s["rooms"]}',
        f'dualsync_paired_rooms {s["paired_rooms"]}',
        f'dualsync_connections {s["connections"]}',
    ]
    return "\n".join(lines)
