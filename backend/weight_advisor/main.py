"""
权重方法推荐系统 - FastAPI应用入口
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from weight_advisor import __version__
from weight_advisor.core.config import settings
from weight_advisor.core.logging import setup_logging
from weight_advisor.api.v1 import recommendations as recommendations_router
from weight_advisor.services.method_catalog import get_builtin_catalog

# 配置日志
setup_logging()
logger = structlog.get_logger()

# 创建FastAPI应用
app = FastAPI(
    title=settings.APP_NAME,
    description="基于LLM的权重确定方法推荐服务",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# 注册路由
app.include_router(recommendations_router.router, prefix="/api/v1")

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """应用启动事件"""
    logger.info("应用启动", version=__version__, use_llm=settings.USE_LLM, use_proxy=settings.LLM_USE_PROXY)

    # 启动时加载方法库，格式错误尽早暴露
    methods = get_builtin_catalog()
    logger.info("方法库已就绪", method_count=len(methods))


@app.on_event("shutdown")
async def shutdown_event():
    """应用关闭事件"""
    logger.info("应用关闭")


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": __version__,
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """健康检查"""
    return {"status": "healthy"}
