"""
FastAPI server for end-to-end encrypted ephemeral chat.

This server:
- Handles user registration and authentication
- Acts as the public key directory
- Stores opaque message records (encrypted packets, never plaintext)
- Pushes insert/update/delete events to conversation subscribers via WebSocket
- Purges consumed view-once and expired messages on a fixed interval
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Depends
from pydantic import BaseModel
from contextlib import asynccontextmanager

from .auth import Token, current_user, issue_token, verify_token
from .config import settings
from .database import Database

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserRegister(BaseModel):
    username: str
    password: str
    public_key: Optional[str] = None


class UserLogin(BaseModel):
    username: str
    password: str


class PublicKeyUpdate(BaseModel):
    public_key: str


class MessageIn(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    encrypted_content: Optional[str] = None
    content: Optional[str] = None
    media_type: Literal["text", "image", "video", "audio", "location", "snapshot"] = "text"
    media_url: Optional[str] = None
    created_at: Optional[datetime] = None
    is_viewed: bool = False
    is_delivered: bool = False
    is_view_once: bool = False
    view_count: int = 0
    is_saved: bool = False
    expires_at: Optional[datetime] = None
    reactions: Dict[str, List[str]] = {}
    viewed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class MessageChanges(BaseModel):
    is_viewed: Optional[bool] = None
    is_delivered: Optional[bool] = None
    view_count: Optional[int] = None
    is_saved: Optional[bool] = None
    reactions: Optional[Dict[str, List[str]]] = None
    viewed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class MessageUpdate(BaseModel):
    changes: MessageChanges


class DeleteRequest(BaseModel):
    ids: List[str]


# WebSocket subscription manager
class ConnectionManager:
    """Tracks which WebSocket watches which conversation"""

    def __init__(self):
        self.subscriptions: Dict[WebSocket, Tuple[str, str]] = {}

    def subscribe(self, websocket: WebSocket, username: str, peer: str):
        self.subscriptions[websocket] = (username, peer)

    def disconnect(self, websocket: WebSocket):
        self.subscriptions.pop(websocket, None)

    def online_users(self) -> List[str]:
        return sorted({username for username, _ in self.subscriptions.values()})

    async def broadcast(self, kind: str, record: dict):
        """Send an event to every subscriber of the record's conversation"""
        participants = {record["sender_id"], record["receiver_id"]}
        event = {"type": kind, "record": record}
        for websocket, (username, peer) in list(self.subscriptions.items()):
            if {username, peer} != participants:
                continue
            try:
                await websocket.send_json(event)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.warning("Dropping subscriber %s: %s", username, e)
                self.disconnect(websocket)


# Initialize database and connection manager
db = Database(settings.database_url)
manager = ConnectionManager()


async def run_purge(now: Optional[datetime] = None) -> int:
    """Maintenance entry point: purge and notify subscribers"""
    purged = await db.purge_expired(now)
    for row in purged:
        await manager.broadcast("delete", row)
    if purged:
        logger.info("Purged %d messages", len(purged))
    return len(purged)


async def purge_loop(interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await run_purge()
        except Exception:
            logger.exception("Scheduled purge failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    await db.create_tables()
    logger.info("Database initialized")
    purge_task = None
    if settings.purge_interval > 0:
        purge_task = asyncio.create_task(purge_loop(settings.purge_interval))
    yield
    if purge_task is not None:
        purge_task.cancel()
        await asyncio.gather(purge_task, return_exceptions=True)
    await db.close()
    logger.info("Server shutting down")


app = FastAPI(
    title="Vaultline Chat Server",
    description="Key directory and opaque message store for end-to-end encrypted ephemeral chat",
    version="1.0.0",
    lifespan=lifespan
)


@app.post("/api/register", response_model=Token)
async def register(user_data: UserRegister):
    """
    Register a new user account.

    The client generates its identity key pair and may publish the public
    key right away.
    """
    user = await db.create_user(
        username=user_data.username,
        password=user_data.password,
        public_key=user_data.public_key
    )
    if not user:
        raise HTTPException(status_code=400, detail="Username already exists")
    return issue_token(user.username)


@app.post("/api/login", response_model=Token)
async def login(user_data: UserLogin):
    """Authenticate a user and return JWT token"""
    user = await db.authenticate_user(user_data.username, user_data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return issue_token(user.username)


@app.get("/api/keys/{username}")
async def get_public_key(username: str):
    """Public key lookup; anyone may fetch a key to start a conversation"""
    public_key = await db.get_public_key(username)
    if not public_key:
        raise HTTPException(status_code=404, detail="No public key published")
    return {"username": username, "public_key": public_key}


@app.put("/api/keys/{username}")
async def publish_public_key(username: str, body: PublicKeyUpdate, user: str = Depends(current_user)):
    """Publish or replace the caller's public key"""
    if user != username:
        raise HTTPException(status_code=403, detail="Not authorized")
    if not await db.set_public_key(username, body.public_key):
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Public key updated for %s", username)
    return {"status": "success"}


@app.get("/api/users")
async def list_users():
    """List all registered users"""
    return {"users": await db.list_users()}


@app.get("/api/users/online")
async def list_online_users():
    """List users with an open realtime subscription"""
    return {"users": manager.online_users()}


@app.get("/api/messages")
async def list_messages(peer: str, user: str = Depends(current_user)):
    """Conversation history ordered by creation time"""
    return {"messages": await db.query_conversation(user, peer)}


@app.post("/api/messages")
async def create_message(message: MessageIn, user: str = Depends(current_user)):
    if message.sender_id != user:
        raise HTTPException(status_code=403, detail="Cannot send as another user")
    if not await db.get_user(message.receiver_id):
        raise HTTPException(status_code=404, detail="Receiver not found")
    record = await db.insert_message(message.model_dump())
    await manager.broadcast("insert", record)
    return record


@app.patch("/api/messages/{message_id}")
async def update_message(message_id: str, update: MessageUpdate, user: str = Depends(current_user)):
    existing = await db.get_message(message_id)
    if not existing or user not in (existing["sender_id"], existing["receiver_id"]):
        raise HTTPException(status_code=404, detail="Message not found")
    changes = update.changes.model_dump(exclude_unset=True)
    if not changes:
        return existing
    try:
        record = await db.update_message(message_id, changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail="Message not found")
    await manager.broadcast("update", record)
    return record


@app.post("/api/messages/delete")
async def delete_messages(body: DeleteRequest, user: str = Depends(current_user)):
    deleted = await db.delete_messages(body.ids, participant=user)
    for row in deleted:
        await manager.broadcast("delete", row)
    return {"deleted": len(deleted)}


@app.delete("/api/messages")
async def clear_conversation(peer: str, user: str = Depends(current_user)):
    deleted = await db.delete_conversation(user, peer)
    for row in deleted:
        await manager.broadcast("delete", row)
    return {"deleted": len(deleted)}


@app.api_route("/api/messages/cleanup", methods=["GET", "POST"])
async def cleanup_messages():
    """Batch purge for an external scheduler"""
    deleted = await run_purge()
    if not deleted:
        return {"message": "No messages to delete", "deleted": 0}
    return {"message": "Messages cleaned up", "deleted": deleted}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for realtime conversation events.

    Protocol:
    1. Client sends: {"type": "auth", "token": "jwt_token"}
    2. Server responds: {"type": "auth_success", "username": "..."}
    3. Client sends: {"type": "subscribe", "peer": "other_user"}
    4. Server pushes: {"type": "insert" | "update" | "delete", "record": {...}}
    """
    await websocket.accept()
    username = None

    try:
        auth_data = await websocket.receive_json()
        if auth_data.get("type") == "auth":
            username = verify_token(auth_data.get("token"))
        if not username:
            await websocket.send_json({"type": "error", "message": "Authentication required"})
            await websocket.close()
            return

        await websocket.send_json({"type": "auth_success", "username": username})

        while True:
            data = await websocket.receive_json()
            if data.get("type") == "subscribe" and data.get("peer"):
                manager.subscribe(websocket, username, data["peer"])
                await websocket.send_json({"type": "subscribed", "peer": data["peer"]})
            elif data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": "Invalid message format"})

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
