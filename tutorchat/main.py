"""
Main application entry point for TutorChat - AI tutoring conversation service.
"""
from dotenv import load_dotenv

# 加载 .env 文件（必须在读取 settings 之前）
load_dotenv()

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tutorchat import __version__
from tutorchat.config.settings import Settings, settings
from tutorchat.errors import RecordStoreError
from tutorchat.services.llm_providers import ProviderGateway
from tutorchat.services.model_invocation import (
    DirectInvocationService,
    EdgeFunctionInvocationService,
    ModelInvocationService,
)
from tutorchat.services.session_registry import get_session_registry
from tutorchat.storage import MemoryRecordStore, RecordStore, RedisRecordStore

# 配置日志
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


async def build_record_store(config: Settings) -> RecordStore:
    """
    创建 record store

    Redis 不可用时降级到内存存储
    """
    if config.RECORD_STORE_BACKEND == "memory":
        logger.info("✅ 内存存储初始化成功")
        return MemoryRecordStore()

    if config.REDIS_PASSWORD:
        logger.info("Redis 认证已启用（用户名: %s）", config.REDIS_USERNAME or "<default>")
    store = RedisRecordStore(
        redis_url=config.REDIS_URL,
        key_prefix=config.REDIS_KEY_PREFIX,
        username=config.REDIS_USERNAME,
        password=config.REDIS_PASSWORD
    )
    try:
        await store.connect()
        logger.info(f"✅ Redis 存储初始化成功: {config.REDIS_URL}")
        return store
    except RecordStoreError as e:
        logger.warning(f"⚠️  Redis 存储初始化失败: {e}, 将使用内存存储")
        await store.close()
        return MemoryRecordStore()


def build_invoker(config: Settings, store: RecordStore) -> ModelInvocationService:
    """按 INVOCATION_MODE 创建模型调用服务"""
    if config.INVOCATION_MODE == "edge":
        if not config.INVOKE_URL:
            raise ValueError("INVOKE_URL is required when INVOCATION_MODE=edge")
        logger.info(f"Model invocation: edge function at {config.INVOKE_URL}")
        return EdgeFunctionInvocationService(
            url=config.INVOKE_URL,
            auth_token=config.INVOKE_AUTH_TOKEN,
            timeout=config.INVOKE_TIMEOUT
        )

    configured = [name for name, key in config.provider_api_keys().items() if key]
    logger.info(f"Model invocation: direct (providers with keys: {configured or 'none'})")
    gateway = ProviderGateway(
        api_keys=config.provider_api_keys(),
        max_tokens=config.PROVIDER_MAX_TOKENS,
        timeout=config.INVOKE_TIMEOUT
    )
    return DirectInvocationService(store, gateway)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting TutorChat...")

    store = await build_record_store(settings)
    invoker = build_invoker(settings, store)

    registry = get_session_registry()
    registry.configure(store, invoker)
    await registry.start_cleanup_task()
    app.state.store = store

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down...")
    await registry.close()
    await store.close()
    logger.info("Application shutdown complete")


# 创建FastAPI应用
app = FastAPI(
    title="TutorChat",
    version=__version__,
    description="AI tutoring conversations with configurable language-model agents",
    lifespan=lifespan
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
from tutorchat.api.chat import router as chat_router

app.include_router(chat_router)


# 全局异常处理
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)}
    )


# 健康检查端点
@app.get("/health")
async def health_check(request: Request):
    """系统健康检查端点"""
    store = getattr(request.app.state, "store", None)
    store_healthy = await store.health_check() if store else False
    return {
        "status": "healthy" if store_healthy else "degraded",
        "version": __version__,
        "service": "TutorChat",
        "record_store": type(store).__name__ if store else None,
        "sessions": get_session_registry().get_session_count()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
