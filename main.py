"""
押金引擎 HTTP 入口

路由：
- /api/v1/deposits、/api/v1/payments：现金/卡押金与确认、退款
- /api/v1/deposits/{id}/return、/api/v1/returns：归还、批量归还、退款报表
- /api/v1/pay-later：延迟扣款
- /api/v1/webhooks/stripe：网关回调
- /status/{id}：借用人魔法链接状态页
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import deposits as deposits_routes
from api.routes import pay_later as pay_later_routes
from api.routes import public_status as public_status_routes
from api.routes import returns as returns_routes
from api.routes import webhooks as webhooks_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from infrastructure.cache import RedisTransactionLocker, get_transaction_locker, shutdown_transaction_locker
from infrastructure.database import create_tables, engine


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DEBUG:
        await create_tables()
        logger.info("database_tables_created")
    else:
        logger.info("database_migrations_required", hint="alembic upgrade head")

    # 配置 REDIS__URL 时多实例共享交易锁，否则为进程内锁
    locker = get_transaction_locker()
    logger.info(
        "deposit_engine_started",
        environment=settings.ENVIRONMENT,
        lock_backend="redis" if isinstance(locker, RedisTransactionLocker) else "in_process",
    )

    yield

    await shutdown_transaction_locker()
    await engine.dispose()
    logger.info("deposit_engine_stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="押金借用网络的押金/支付生命周期引擎",
)

# 中间件后注册先执行：RequestID 最外层，日志中间件可拿到 request_id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

for router in (deposits_routes.router, returns_routes.router, pay_later_routes.router, webhooks_routes.router):
    app.include_router(router, prefix="/api/v1")
app.include_router(public_status_routes.router)


@app.get("/", tags=["Root"])
async def root():
    return success_response(data={"name": settings.PROJECT_NAME, "version": settings.VERSION, "docs": "/docs"})


@app.get("/health", tags=["Health"])
async def health_check():
    """存活检查，附带数据库连通性"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "ok"
    except Exception as exc:
        logger.warning("health_database_unreachable", error=str(exc))
        database = "unreachable"
    return success_response(data={"status": "healthy" if database == "ok" else "degraded", "database": database})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
