"""
Database models and operations for the issuer, directory and relay.

Uses SQLAlchemy with SQLite for storing transport user profiles, local
accounts and published identity public keys.
Note: Messages are NOT stored on the server - only relayed.
"""

from datetime import datetime, timezone
from typing import Optional, List, Tuple
from sqlalchemy import Column, Integer, String, DateTime, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

Base = declarative_base()
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """Transport user profile, keyed by identity id"""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(128), nullable=False)
    role = Column(String(32), nullable=False, default="user")
    image = Column(String(512), nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class Account(Base):
    """Local password account (password auth mode only)"""
    __tablename__ = "accounts"

    username = Column(String(64), primary_key=True)
    hashed_password = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_now)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class IdentityKey(Base):
    """Current public key of an identity"""
    __tablename__ = "identity_keys"

    identity_id = Column(String(64), primary_key=True)
    public_key = Column(String(256), nullable=False)  # identity public key (hex)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


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

    async def dispose(self):
        await self.engine.dispose()

    async def upsert_user(self, user_id: str, name: str, role: str, image: Optional[str]) -> User:
        """
        Create or update a transport user profile.

        Re-registering an existing id updates metadata in place.
        """
        for attempt in range(2):
            async with self.async_session() as session:
                user = await session.get(User, user_id)
                if user:
                    user.name = name
                    user.role = role
                    user.image = image
                else:
                    user = User(id=user_id, name=name, role=role, image=image)
                    session.add(user)
                try:
                    await session.commit()
                except IntegrityError:
                    # Concurrent first registration; the row exists now
                    await session.rollback()
                    if attempt:
                        raise
                    continue
                await session.refresh(user)
                return user

    async def list_users(self) -> List[str]:
        """
        List all provisioned user ids.

        Returns:
            List of user ids
        """
        async with self.async_session() as session:
            result = await session.execute(select(User.id).order_by(User.id))
            return [row[0] for row in result.all()]

    async def create_account(self, username: str, password: str) -> Optional[Account]:
        """
        Create a local account.

        Returns:
            Created Account or None if the username exists
        """
        async with self.async_session() as session:
            if await session.get(Account, username):
                return None
            account = Account(username=username, hashed_password=Account.hash_password(password))
            session.add(account)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return account

    async def authenticate_account(self, username: str, password: str) -> Optional[Account]:
        """
        Authenticate a local account.

        Returns:
            Account if authenticated, None otherwise
        """
        async with self.async_session() as session:
            account = await session.get(Account, username)
        if not account or not account.verify_password(password):
            return None
        return account

    async def get_identity_key(self, identity_id: str) -> Optional[IdentityKey]:
        async with self.async_session() as session:
            return await session.get(IdentityKey, identity_id)

    async def put_identity_key(self, identity_id: str, public_key: str) -> Tuple[IdentityKey, bool]:
        """
        Bind a public key to an identity, replacing any previous key.

        Args:
            identity_id: Identity to bind
            public_key: Public key (hex)

        Returns:
            Tuple of (record, changed)
        """
        async with self.async_session() as session:
            record = await session.get(IdentityKey, identity_id)
            if record and record.public_key == public_key:
                return record, False
            if record:
                record.public_key = public_key
                record.version += 1
            else:
                record = IdentityKey(identity_id=identity_id, public_key=public_key, version=1)
                session.add(record)
            await session.commit()
            await session.refresh(record)
            return record, True
