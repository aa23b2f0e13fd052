"""
通用 API 数据模型

开发者: lazywriter 项目组
日期: 2026-10-18
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class APIError(BaseModel):
    """统一错误响应格式"""

    detail: str = Field(description="错误描述")
    error_code: str = Field(default="ERROR", description="错误编码，便于前端分类处理")


class MessageResponse(BaseModel):
    """通用消息响应"""

    message: str = Field(description="提示信息")
    providers: List[str] = Field(default_factory=list, description="本次派发了任务的模型")
    article_id: Optional[int] = Field(default=None, description="相关文章 ID")
