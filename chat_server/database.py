"""
Database models and operations for the chat server.

Uses SQLAlchemy with SQLite for user accounts, published public keys and
message records. Message bodies are opaque packets; the server never sees
plaintext or private keys.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON
from sqlalchemy import select, delete, or_, and_, false, true
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

Base = declarative_base()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Fields a participant may change after a message is stored
UPDATABLE_FIELDS = {
    "is_viewed",
    "is_delivered",
    "view_count",
    "is_saved",
    "reactions",
    "viewed_at",
    "delivered_at",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=True)  # RSA-OAEP SPKI (base64)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class Message(Base):
    """Stored message record; encrypted_content is an opaque packet"""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True)
    sender_id = Column(String(50), index=True, nullable=False)
    receiver_id = Column(String(50), index=True, nullable=False)
    encrypted_content = Column(Text, nullable=True)
    content = Column(Text, nullable=True)  # legacy plaintext only
    media_type = Column(String(20), nullable=False, default="text")
    media_url = Column(Text, nullable=True)
    created_at = Column(DateTime, index=True, default=_utcnow)
    is_viewed = Column(Boolean, default=False)
    is_delivered = Column(Boolean, default=False)
    is_view_once = Column(Boolean, default=False)
    view_count = Column(Integer, default=0)
    is_saved = Column(Boolean, nullable=True, default=False)
    expires_at = Column(DateTime, index=True, nullable=True)
    reactions = Column(JSON, nullable=True)
    viewed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "encrypted_content": self.encrypted_content,
            "content": self.content,
            "media_type": self.media_type,
            "media_url": self.media_url,
            "created_at": _iso(self.created_at),
            "is_viewed": bool(self.is_viewed),
            "is_delivered": bool(self.is_delivered),
            "is_view_once": bool(self.is_view_once),
            "view_count": self.view_count or 0,
            "is_saved": bool(self.is_saved),
            "expires_at": _iso(self.expires_at),
            "reactions": self.reactions or {},
            "viewed_at": _iso(self.viewed_at),
            "delivered_at": _iso(self.delivered_at),
        }


def _between(user: str, peer: str):
    return or_(
        and_(Message.sender_id == user, Message.receiver_id == peer),
        and_(Message.sender_id == peer, Message.receiver_id == user),
    )


def _participant(user: str):
    return or_(Message.sender_id == user, Message.receiver_id == user)


def _not_saved():
    return or_(Message.is_saved.is_(None), Message.is_saved == false())


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./chat.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    # Users and the public key directory

    async def create_user(self, username: str, password: str, public_key: Optional[str] = None) -> Optional[User]:
        """
        Create a new user account.

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                hashed_password=User.hash_password(password),
                public_key=public_key
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def get_public_key(self, username: str) -> Optional[str]:
        user = await self.get_user(username)
        return user.public_key if user else None

    async def set_public_key(self, username: str, public_key: str) -> bool:
        """
        Publish or replace a user's public key.

        Returns:
            False if the user does not exist
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if not user:
                return False
            user.public_key = public_key
            user.updated_at = _utcnow()
            await session.commit()
            return True

    async def list_users(self) -> List[str]:
        async with self.async_session() as session:
            result = await session.execute(select(User.username).where(User.is_active == true()))
            return [row[0] for row in result.all()]

    # Messages

    async def insert_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store a message. Inserting an id that already exists returns the
        stored record unchanged.
        """
        async with self.async_session() as session:
            existing = await session.get(Message, data["id"])
            if existing is not None:
                return existing.to_dict()

            values = dict(data)
            for name in ("created_at", "expires_at", "viewed_at", "delivered_at"):
                values[name] = _naive(values.get(name))
            if values.get("created_at") is None:
                values["created_at"] = _utcnow()
            message = Message(**values)
            session.add(message)
            await session.commit()
            return message.to_dict()

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        async with self.async_session() as session:
            message = await session.get(Message, message_id)
            return message.to_dict() if message else None

    async def update_message(self, message_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Apply a partial update limited to UPDATABLE_FIELDS.

        Returns:
            The updated record, or None if it does not exist
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        async with self.async_session() as session:
            message = await session.get(Message, message_id)
            if message is None:
                return None
            for name, value in changes.items():
                if isinstance(value, datetime):
                    value = _naive(value)
                setattr(message, name, value)
            await session.commit()
            return message.to_dict()

    async def query_conversation(self, user: str, peer: str) -> List[Dict[str, Any]]:
        """Messages between two users ordered by created_at ascending"""
        async with self.async_session() as session:
            result = await session.execute(
                select(Message).where(_between(user, peer)).order_by(Message.created_at.asc(), Message.id)
            )
            return [message.to_dict() for message in result.scalars()]

    async def _delete_where(self, criteria) -> List[Dict[str, Any]]:
        async with self.async_session() as session:
            result = await session.execute(
                select(Message.id, Message.sender_id, Message.receiver_id).where(criteria)
            )
            rows = [
                {"id": row.id, "sender_id": row.sender_id, "receiver_id": row.receiver_id}
                for row in result.all()
            ]
            if rows:
                await session.execute(
                    delete(Message).where(Message.id.in_([row["id"] for row in rows]))
                )
                await session.commit()
            return rows

    async def delete_messages(self, ids: Iterable[str], participant: str) -> List[Dict[str, Any]]:
        """Delete messages by id, limited to ones ``participant`` takes part in"""
        ids = sorted(set(ids))
        if not ids:
            return []
        return await self._delete_where(and_(Message.id.in_(ids), _participant(participant)))

    async def delete_conversation(self, user: str, peer: str) -> List[Dict[str, Any]]:
        return await self._delete_where(_between(user, peer))

    async def purge_expired(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Store-wide purge of consumed view-once and expired messages.

        Deletes every record matching
        (view-once AND viewed AND NOT saved) OR (expires_at < now AND NOT saved).
        Safe to run repeatedly and alongside client-side purges.

        Returns:
            The deleted records' ids and participants
        """
        now = _naive(now) if now else _utcnow()
        async with self.async_session() as session:
            view_once = await session.execute(
                select(Message.id, Message.sender_id, Message.receiver_id).where(
                    Message.is_view_once == true(),
                    Message.is_viewed == true(),
                    _not_saved(),
                )
            )
            expired = await session.execute(
                select(Message.id, Message.sender_id, Message.receiver_id).where(
                    Message.expires_at.is_not(None),
                    Message.expires_at < now,
                    _not_saved(),
                )
            )

            unique = {}
            for row in list(view_once.all()) + list(expired.all()):
                unique[row.id] = {"id": row.id, "sender_id": row.sender_id, "receiver_id": row.receiver_id}
            if not unique:
                return []

            await session.execute(delete(Message).where(Message.id.in_(list(unique))))
            await session.commit()
            return list(unique.values())
