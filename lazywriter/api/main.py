"""
FastAPI 应用入口

开发者: lazywriter 项目组
日期: 2026-10-18
"""
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from lazywriter.api.routes import articles
from lazywriter.api.schemas.common import APIError
from lazywriter.api.websockets import streams as streams_ws
from lazywriter.config import get_settings
from lazywriter.exceptions import (
    ArticleNotFoundError,
    InvalidTranscriptError,
    LazyWriterError,
    PrerequisiteMissingError,
    QuotaExceededError,
    UnknownProviderError,
)

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="LazyWriter API", version="0.1.0")

# 业务异常 → (HTTP 状态码, 错误编码)
ERROR_STATUS = {
    ArticleNotFoundError: (404, "ARTICLE_NOT_FOUND"),
    UnknownProviderError: (422, "UNKNOWN_PROVIDER"),
    InvalidTranscriptError: (422, "INVALID_TRANSCRIPT"),
    QuotaExceededError: (402, "QUOTA_EXCEEDED"),
    PrerequisiteMissingError: (409, "PREREQUISITE_MISSING"),
}


@app.exception_handler(LazyWriterError)
async def domain_error_handler(request: Request, exc: LazyWriterError):
    """业务异常统一格式"""
    status_code, error_code = ERROR_STATUS.get(type(exc), (400, "BAD_REQUEST"))
    return JSONResponse(
        status_code=status_code,
        content=APIError(detail=str(exc), error_code=error_code).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    """统一 HTTP 异常格式"""
    return JSONResponse(
        status_code=exc.status_code,
        content=APIError(detail=str(exc.detail), error_code="HTTP_ERROR").model_dump(),
    )


@app.exception_handler(Exception)
async def generic_error_handler(request: Request, exc: Exception):
    """兜底异常处理"""
    logger.exception(f"请求处理失败: {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=APIError(detail="服务器内部错误", error_code="SERVER_ERROR").model_dump(),
    )


@app.get("/health")
async def health_check():
    """健康检查"""
    return {"status": "ok"}


# 注册路由
app.include_router(articles.router)
app.include_router(streams_ws.router)
