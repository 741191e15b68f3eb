"""
HTTP and WebSocket implementations of the session collaborators, talking
to ``chat_server``.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import httpx
import websockets

from .errors import StoreError
from .interfaces import EventKind, RealtimeEvent
from .models import ConversationFilter, MessageRecord, serialize_fields

logger = logging.getLogger(__name__)

_EVENT_TYPES = {kind.value for kind in EventKind}


class ApiClient:
    """
    Authenticated access to the chat server REST API.
    """

    def __init__(self, server_url: str = "http://localhost:8000", http_client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            server_url: Base URL of the chat server
            http_client: Client to reuse, mostly for tests
        """
        self.server_url = server_url.rstrip("/")
        self.ws_url = self.server_url.replace("http", "ws", 1) + "/ws"
        self.http_client = http_client or httpx.AsyncClient()
        self.username: Optional[str] = None
        self.token: Optional[str] = None

    @property
    def headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def request(self, method: str, path: str, *, allow_404: bool = False, **kwargs) -> Optional[Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            StoreError: On transport failures and non-2xx responses
        """
        try:
            response = await self.http_client.request(
                method, f"{self.server_url}{path}", headers=self.headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

        if allow_404 and response.status_code == 404:
            return None
        if response.is_error:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise StoreError(f"{method} {path} failed ({response.status_code}): {detail}")
        return response.json()

    async def authenticate(self, endpoint: str, username: str, password: str, **extra) -> str:
        data = await self.request(
            "POST", f"/api/{endpoint}", json={"username": username, "password": password, **extra}
        )
        self.token = data["access_token"]
        self.username = data["username"]
        return self.token

    async def register(self, username: str, password: str, public_key: Optional[str] = None) -> str:
        return await self.authenticate("register", username, password, public_key=public_key)

    async def login(self, username: str, password: str) -> str:
        return await self.authenticate("login", username, password)

    async def list_users(self) -> List[str]:
        data = await self.request("GET", "/api/users")
        return data["users"]

    async def aclose(self):
        await self.http_client.aclose()


class HttpMessageStore:
    """MessageStore backed by the chat server"""

    def __init__(self, api: ApiClient):
        self.api = api

    def _peer(self, conversation: ConversationFilter) -> str:
        return conversation.peer_of(self.api.username)

    async def insert(self, record: MessageRecord) -> MessageRecord:
        data = await self.api.request("POST", "/api/messages", json=record.to_dict())
        return MessageRecord.from_dict(data)

    async def update_fields(self, record_id: str, changes: Dict[str, Any]) -> None:
        await self.api.request(
            "PATCH", f"/api/messages/{record_id}", json={"changes": serialize_fields(changes)}
        )

    async def delete_by_ids(self, ids: Set[str]) -> int:
        data = await self.api.request("POST", "/api/messages/delete", json={"ids": sorted(ids)})
        return data["deleted"]

    async def delete_by_filter(self, conversation: ConversationFilter) -> int:
        data = await self.api.request("DELETE", "/api/messages", params={"peer": self._peer(conversation)})
        return data["deleted"]

    async def query(self, conversation: ConversationFilter) -> List[MessageRecord]:
        data = await self.api.request("GET", "/api/messages", params={"peer": self._peer(conversation)})
        return [MessageRecord.from_dict(item) for item in data["messages"]]


class HttpDirectory:
    """Public key directory backed by the chat server"""

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_public_key(self, user_id: str) -> Optional[str]:
        data = await self.api.request("GET", f"/api/keys/{user_id}", allow_404=True)
        if not data:
            return None
        return data.get("public_key")

    async def publish_public_key(self, user_id: str, public_key: str) -> None:
        await self.api.request("PUT", f"/api/keys/{user_id}", json={"public_key": public_key})


class WebSocketSubscription:
    """Realtime events read from one authenticated WebSocket"""

    def __init__(self, websocket):
        self.websocket = websocket

    def __aiter__(self) -> AsyncIterator[RealtimeEvent]:
        return self._events()

    @staticmethod
    def parse_frame(raw) -> Optional[RealtimeEvent]:
        """
        Turn one WebSocket frame into an event.

        Returns None for control frames and for frames that cannot be
        parsed; a bad frame never ends the stream.
        """
        try:
            data = json.loads(raw)
            kind = data.get("type")
            if kind in _EVENT_TYPES:
                return RealtimeEvent.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Dropping malformed realtime frame: %s", e)
            return None
        if kind == "error":
            logger.warning("Realtime error: %s", data.get("message"))
        return None

    async def _events(self) -> AsyncIterator[RealtimeEvent]:
        try:
            async for raw in self.websocket:
                event = self.parse_frame(raw)
                if event is not None:
                    yield event
        except websockets.exceptions.ConnectionClosed:
            logger.info("Realtime connection closed")

    async def aclose(self):
        await self.websocket.close()


class WebSocketRealtimeBus:
    """RealtimeBus over the chat server's ``/ws`` endpoint"""

    def __init__(self, api: ApiClient):
        self.api = api

    async def subscribe(self, conversation: ConversationFilter) -> WebSocketSubscription:
        try:
            websocket = await websockets.connect(self.api.ws_url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise StoreError(f"WebSocket connection error: {e}") from e

        await websocket.send(json.dumps({"type": "auth", "token": self.api.token}))
        response = json.loads(await websocket.recv())
        if response.get("type") != "auth_success":
            await websocket.close()
            raise StoreError("Realtime authentication failed")

        await websocket.send(json.dumps({
            "type": "subscribe",
            "peer": conversation.peer_of(self.api.username),
        }))
        return WebSocketSubscription(websocket)
