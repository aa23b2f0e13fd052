"""
异常类型定义

命令层的同步拒绝（配额、前置内容缺失、参数错误）与
Provider 调用失败（超时、API 错误、配置错误）都在此声明。
"""
from typing import Optional


class LazyWriterError(Exception):
    """所有业务异常的基类"""
    pass


class ConfigurationError(LazyWriterError):
    """Provider 配置缺失（endpoint / 密钥 / 模型），不可重试"""
    pass


class ProviderTimeoutError(LazyWriterError):
    """Provider 在超时时间内未响应，可重试"""
    pass


class ApiError(LazyWriterError):
    """Provider 返回非 2xx、响应格式错误或内容为空

    429 和 5xx 可重试；其它 4xx 直接失败。没有状态码的错误
    （响应损坏、内容为空）按临时故障处理。
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class QuotaExceededError(LazyWriterError):
    """用户剩余额度不足"""

    def __init__(self, user_id: int, message: str = "剩余次数不足，请购买套餐后继续使用"):
        super().__init__(message)
        self.user_id = user_id


class PrerequisiteMissingError(LazyWriterError):
    """前置内容缺失，例如没有脑爆内容时重新生成初稿"""
    pass


class ArticleNotFoundError(LazyWriterError):
    """文章不存在"""

    def __init__(self, article_id: int):
        super().__init__(f"文章 {article_id} 不存在")
        self.article_id = article_id


class UnknownProviderError(LazyWriterError):
    """未知的 Provider 标识"""

    def __init__(self, provider: str):
        super().__init__(f"未知的模型: {provider}")
        self.provider = provider


class InvalidTranscriptError(LazyWriterError):
    """用户输入过短或为空"""
    pass
