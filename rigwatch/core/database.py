"""
SQLite database setup and models
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from rigwatch.adapters.base import Credentials, DeviceSnapshot
from rigwatch.core.config import settings
from rigwatch.core.registry import Device, DeviceRegistry, TelemetrySink


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class Miner(Base):
    """Registered device"""
    __tablename__ = "miners"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    device_type: Mapped[str] = mapped_column(String(50))  # bitaxe, bitmain, canaan
    ip_address: Mapped[str] = mapped_column(String(255), index=True)
    auth_user: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    auth_pass: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    poll_interval: Mapped[int] = mapped_column(Integer, default=5000)  # ms
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    best_diff: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def to_device(self) -> Device:
        return Device(
            id=self.id,
            name=self.name,
            ip_address=self.ip_address,
            device_type=self.device_type,
            auth_user=self.auth_user,
            auth_pass=self.auth_pass,
            poll_interval=self.poll_interval,
            is_online=self.is_online,
            last_seen=self.last_seen,
            best_diff=self.best_diff or 0.0
        )


class Telemetry(Base):
    """Miner telemetry data"""
    __tablename__ = "telemetry"

    id: Mapped[int] = mapped_column(primary_key=True)
    miner_id: Mapped[int] = mapped_column(Integer, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    hashrate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # GH/s
    temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    power_watts: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    shares_accepted: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    shares_rejected: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pool_in_use: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # Full normalized snapshot


# Database engine and session
DATABASE_URL = f"sqlite+aiosqlite:///{settings.DB_PATH}"
engine = create_async_engine(DATABASE_URL, echo=False)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(db_engine=None):
    """Initialize database tables, creating the SQLite file's directory if needed"""
    db_engine = db_engine or engine
    database = db_engine.url.database
    if db_engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session


class SqlDeviceRegistry(DeviceRegistry):
    """Device registry backed by the miners table"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def get_device(self, device_id: int) -> Optional[Device]:
        async with self.session_factory() as db:
            miner = await db.get(Miner, device_id)
            return miner.to_device() if miner else None

    async def list_devices(self) -> List[Device]:
        async with self.session_factory() as db:
            result = await db.execute(select(Miner).order_by(Miner.id))
            return [miner.to_device() for miner in result.scalars().all()]

    async def find_by_address(self, ip_address: str) -> Optional[Device]:
        async with self.session_factory() as db:
            result = await db.execute(select(Miner).where(Miner.ip_address == ip_address))
            miner = result.scalars().first()
            return miner.to_device() if miner else None

    async def add_device(
        self,
        name: str,
        ip_address: str,
        device_type: str,
        credentials: Optional[Credentials] = None,
        poll_interval: Optional[int] = None
    ) -> Device:
        async with self.session_factory() as db:
            miner = Miner(
                name=name,
                ip_address=ip_address,
                device_type=device_type,
                auth_user=credentials.username if credentials else None,
                auth_pass=credentials.password if credentials else None,
                poll_interval=poll_interval or settings.POLL_INTERVAL_MS,
                is_online=False,
                best_diff=0.0
            )
            db.add(miner)
            await db.commit()
            await db.refresh(miner)
            return miner.to_device()

    async def remove_device(self, device_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(delete(Miner).where(Miner.id == device_id))
            await db.commit()
            return result.rowcount > 0

    async def set_device_type(self, device_id: int, device_type: str, credentials: Optional[Credentials]) -> None:
        values = {"device_type": device_type}
        if credentials is not None:
            values["auth_user"] = credentials.username
            values["auth_pass"] = credentials.password

        async with self.session_factory() as db:
            await db.execute(update(Miner).where(Miner.id == device_id).values(**values))
            await db.commit()

    async def set_online(self, device_id: int, online: bool) -> None:
        values = {"is_online": online}
        if online:
            values["last_seen"] = utcnow()

        async with self.session_factory() as db:
            await db.execute(update(Miner).where(Miner.id == device_id).values(**values))
            await db.commit()

    async def record_best_difficulty(self, device_id: int, value: float) -> bool:
        # Conditional update keeps the stored value monotonic
        async with self.session_factory() as db:
            result = await db.execute(
                update(Miner)
                .where(Miner.id == device_id, Miner.best_diff < value)
                .values(best_diff=value)
            )
            await db.commit()
            return result.rowcount > 0


class SqlTelemetrySink(TelemetrySink):
    """Appends snapshots to the telemetry table"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def store(self, device_id: int, snapshot: DeviceSnapshot) -> None:
        pool = snapshot.pool_url
        if pool and snapshot.pool_port:
            pool = f"{pool}:{snapshot.pool_port}"

        async with self.session_factory() as db:
            db.add(Telemetry(
                miner_id=device_id,
                timestamp=snapshot.timestamp,
                hashrate=snapshot.hashrate,
                temperature=snapshot.temperature,
                power_watts=snapshot.power,
                shares_accepted=snapshot.shares_accepted,
                shares_rejected=snapshot.shares_rejected,
                pool_in_use=pool or None,
                data=snapshot.to_dict()
            ))
            await db.commit()

    async def recent(self, device_id: int, limit: int = 100) -> List[Dict[str, Any]]:
        """Latest stored snapshots for a device, newest first"""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Telemetry)
                .where(Telemetry.miner_id == device_id)
                .order_by(Telemetry.timestamp.desc(), Telemetry.id.desc())
                .limit(limit)
            )
            return [row.data for row in result.scalars().all()]
