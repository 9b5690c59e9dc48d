from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from botm.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.worker_count + 2,
)


async_session_factory = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)
