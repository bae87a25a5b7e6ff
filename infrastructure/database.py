"""
数据库引擎与会话工厂

生产使用 PostgreSQL（asyncpg），测试与本地开发可用 SQLite（aiosqlite）。
事务边界由 SQLAlchemyUnitOfWork 控制，这里不自动提交。
"""
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def build_async_url(database_url: str) -> str:
    """把同步驱动的URL改写为对应的异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in _ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}，请使用 postgresql 或 sqlite")
    return url.set(drivername=_ASYNC_DRIVERS[url.drivername]).render_as_string(hide_password=False)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    url = build_async_url(database_url)
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)

        # SQLite 默认不校验外键；交易与支付依赖 RESTRICT 约束
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


engine = create_engine(settings.database.url, echo=settings.DEBUG)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_tables() -> None:
    """按模型建表，仅用于开发环境；生产环境走 alembic 迁移"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
