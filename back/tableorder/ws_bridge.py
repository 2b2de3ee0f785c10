"""
WebSocket Bridge

Subscribes to the Redis pub/sub channels written by the API and broadcasts
messages to connected WebSocket clients on the /orders namespace.
- Customers (role=customer): orders:{tenant_id}:table:{table_id}, authorized
  by forwarding their session cookie to the API.
- Staff (role=owner|waiter|kitchen): orders:{tenant_id}:staff, authorized by
  their JWT (query `token` or `access_token` cookie).
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .models import StaffRole
from .realtime import staff_channel, table_channel
from .security import decode_staff_token
from .settings import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CUSTOMER_ROLE = "customer"
STAFF_ROLES = {role.value for role in StaffRole} | {"staff"}
POLICY_VIOLATION = 1008

# Channel name -> connected sockets
connections: dict[str, set[WebSocket]] = {}


async def validate_customer_session(cookie_header: str | None) -> dict | None:
    """Validate a customer's session cookie by calling the backend API."""
    if not cookie_header:
        return None
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(
                f"{settings.api_url}/api/v1/internal/sessions/validate",
                headers={"Cookie": cookie_header},
            )
    except httpx.HTTPError as e:
        logger.error(f"Error validating customer session: {e}")
        return None
    if response.status_code != 200:
        return None
    return response.json().get("data")


async def broadcast(channel: str, data: str) -> int:
    """Send to every socket on a channel, dropping dead ones. Returns deliveries."""
    sockets = connections.get(channel)
    if not sockets:
        return 0
    dead_connections = set()
    delivered = 0
    for ws in list(sockets):
        try:
            await ws.send_text(data)
            delivered += 1
        except Exception:
            dead_connections.add(ws)
    sockets -= dead_connections
    if not sockets:
        connections.pop(channel, None)
    return delivered


async def redis_listener():
    """Subscribe to Redis and broadcast to WebSocket clients."""
    while True:
        try:
            r = redis.from_url(settings.redis_url)
            pubsub = r.pubsub()
            await pubsub.psubscribe("orders:*")
            logger.info("Subscribed to orders:* on Redis")

            async for message in pubsub.listen():
                if message["type"] == "pmessage":
                    channel = message["channel"].decode()
                    data = message["data"].decode()
                    await broadcast(channel, data)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Redis connection error: {e}", exc_info=True)
            await asyncio.sleep(5)  # Retry after 5 seconds


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if settings.redis_url:
        task = asyncio.create_task(redis_listener())
    yield
    if task is not None:
        task.cancel()


app = FastAPI(title="WS Bridge", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "channels": len(connections),
        "total_connections": sum(len(c) for c in connections.values()),
    }


async def authorize(websocket: WebSocket, tenant_id: int, table_id: int | None, role: str, token: str | None) -> str | None:
    """Channel the socket may listen on, or None when it is not allowed."""
    if role == CUSTOMER_ROLE:
        info = await validate_customer_session(websocket.headers.get("cookie"))
        if not info:
            return None
        if info.get("tenant_id") != tenant_id or (table_id is not None and info.get("table_id") != table_id):
            return None
        return table_channel(tenant_id, info["table_id"])

    if role in STAFF_ROLES:
        payload = decode_staff_token(token or websocket.cookies.get("access_token") or "")
        if payload is None or payload.get("tenant_id") != tenant_id:
            return None
        return staff_channel(tenant_id)

    return None


@app.websocket("/orders")
@app.websocket("/ws/orders")  # Also accept with /ws prefix (behind the proxy)
async def orders_endpoint(
    websocket: WebSocket,
    tenant_id: int = Query(alias="tenantId"),
    table_id: int | None = Query(default=None, alias="tableId"),
    role: str = Query(default=CUSTOMER_ROLE),
    token: str | None = Query(default=None),
):
    client_host = websocket.client.host if websocket.client else "unknown"
    await websocket.accept()

    channel = await authorize(websocket, tenant_id, table_id, role, token)
    if channel is None:
        logger.warning(f"Rejected /orders socket (tenant {tenant_id}, role {role}) from {client_host}")
        await websocket.close(code=POLICY_VIOLATION, reason="Not authorized")
        return

    connections.setdefault(channel, set()).add(websocket)
    logger.info(f"Socket joined {channel} from {client_host}")
    await websocket.send_text(json.dumps({"type": "connected", "channel": channel}))

    try:
        while True:
            # Keep connection alive; clients only send pings
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sockets = connections.get(channel)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                connections.pop(channel, None)
