"""
配置管理
管理各模型的 API 配置、分阶段超时与运行时设置

模型名单（roster）在进程启动时加载一次，之后注入到编排器，
各处按 Provider 查表，不再重复声明。
"""
import os
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from lazywriter.models import Provider, Stage, ThinkingFramework


# 在模块导入阶段自动加载默认的 .env 文件，支持 .env.local 优先级
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
for _env_filename in (".env.local", ".env"):
    _env_path = os.path.join(_PROJECT_ROOT, _env_filename)
    if os.path.exists(_env_path):
        load_dotenv(_env_path, override=False)


def _env_flag(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class ProviderConfig(BaseModel):
    """单个模型的调用配置"""
    base_url: Optional[str] = Field(default=None, description="API基础URL")
    api_key: Optional[str] = Field(default=None, description="API密钥")
    model: Optional[str] = Field(default=None, description="模型名称")
    temperature: float = Field(default=0.7, description="温度参数")
    max_tokens: int = Field(default=4000, description="最大输出token数")
    timeout: float = Field(default=30.0, description="请求超时（秒）")

    def missing_fields(self) -> List[str]:
        return [name for name in ("base_url", "api_key", "model") if not getattr(self, name)]


class ProviderSpec(BaseModel):
    """模型名单中的一项"""
    provider: Provider = Field(description="模型标识")
    display_name: str = Field(description="展示名称")
    persona: str = Field(description="系统提示词中的自我介绍")
    env_prefix: str = Field(description="环境变量前缀")
    enabled: bool = Field(default=True, description="是否参与脑爆")

    def load_config(self) -> ProviderConfig:
        """从环境变量读取该模型的 endpoint / 密钥 / 模型名

        读取 {PREFIX}_BASE_URL / {PREFIX}_API_KEY / {PREFIX}_MODEL，
        兼容旧的 *_OPTIONAL 后缀。
        """
        def _get(suffix: str) -> Optional[str]:
            return os.getenv(f"{self.env_prefix}_{suffix}") or os.getenv(f"{self.env_prefix}_{suffix}_OPTIONAL")

        data = {
            "base_url": _get("BASE_URL"),
            "api_key": _get("API_KEY"),
            "model": _get("MODEL"),
        }
        temperature = os.getenv(f"{self.env_prefix}_TEMPERATURE")
        if temperature:
            data["temperature"] = float(temperature)
        return ProviderConfig(**data)


# 默认名单：Grok 沿用通用的 LLM_* 变量
DEFAULT_ROSTER = [
    {"provider": Provider.GROK, "display_name": "Grok", "persona": "你是 Grok，来自 xAI。", "env_prefix": "LLM"},
    {"provider": Provider.QWEN, "display_name": "千问", "persona": "你是千问，来自阿里云。", "env_prefix": "QWEN"},
    {"provider": Provider.DEEPSEEK, "display_name": "DeepSeek", "persona": "你是 DeepSeek，一个专注于深度思考的 AI 助手。", "env_prefix": "DEEPSEEK"},
    {"provider": Provider.GEMINI, "display_name": "Gemini", "persona": "你是 Gemini，来自 Google。", "env_prefix": "GEMINI"},
    {"provider": Provider.DOUBAO, "display_name": "豆包", "persona": "你是豆包，来自字节跳动。", "env_prefix": "DOUBAO"},
]


class ProviderRoster:
    """进程级模型名单"""

    def __init__(self, specs: List[ProviderSpec]):
        self._specs: Dict[Provider, ProviderSpec] = {spec.provider: spec for spec in specs}

    def __iter__(self):
        return iter(self._specs.values())

    def __contains__(self, provider) -> bool:
        return provider in self._specs

    def get(self, provider: Provider) -> ProviderSpec:
        return self._specs[provider]

    def enabled(self) -> List[Provider]:
        return [spec.provider for spec in self._specs.values() if spec.enabled]

    def display_name(self, provider: Optional[Provider]) -> str:
        if provider is None or provider not in self._specs:
            return "初稿"
        return self._specs[provider].display_name

    def config_for(self, provider: Provider) -> ProviderConfig:
        return self._specs[provider].load_config()

    @classmethod
    def from_env(cls) -> "ProviderRoster":
        specs = []
        for entry in DEFAULT_ROSTER:
            spec = ProviderSpec(**entry)
            spec.enabled = _env_flag(f"{spec.env_prefix}_ENABLED", default=True)
            specs.append(spec)
        return cls(specs)


class StageConfig(BaseModel):
    """分阶段的超时与输出预算

    初稿的输入（原始想法 + 脑爆）和输出都更长，需要更长的超时和更大的 token 预算。
    """
    stage1_timeout: Optional[float] = Field(default=None, description="脑爆超时，为空时按思考框架取值")
    stage1_max_tokens: int = Field(default=4000, description="脑爆最大 token 数")
    stage2_timeout: float = Field(default=300.0, description="初稿超时（秒），须长于任一思考框架的脑爆超时")
    stage2_max_tokens: int = Field(default=8000, description="初稿最大 token 数")

    def __init__(self, **data):
        super().__init__(**data)
        if os.getenv("STAGE1_TIMEOUT"):
            self.stage1_timeout = float(os.getenv("STAGE1_TIMEOUT"))
        if os.getenv("STAGE1_MAX_TOKENS"):
            self.stage1_max_tokens = int(os.getenv("STAGE1_MAX_TOKENS"))
        if os.getenv("STAGE2_TIMEOUT"):
            self.stage2_timeout = float(os.getenv("STAGE2_TIMEOUT"))
        if os.getenv("STAGE2_MAX_TOKENS"):
            self.stage2_max_tokens = int(os.getenv("STAGE2_MAX_TOKENS"))

    def timeout_for(self, stage: Stage, framework: ThinkingFramework = ThinkingFramework.ORIGINAL) -> float:
        if stage == Stage.DRAFT:
            return self.stage2_timeout
        if self.stage1_timeout is not None:
            return self.stage1_timeout
        return framework_timeout(framework)

    def max_tokens_for(self, stage: Stage) -> int:
        return self.stage2_max_tokens if stage == Stage.DRAFT else self.stage1_max_tokens


def framework_timeout(framework: ThinkingFramework) -> float:
    """长文框架需要更长的生成时间"""
    if framework in (
        ThinkingFramework.BEZOS_MEMO,
        ThinkingFramework.REGRET_MINIMIZATION,
        ThinkingFramework.SYSTEMS_THINKING,
    ):
        return 240.0
    if framework in (ThinkingFramework.OMNITHINK, ThinkingFramework.FIRST_PRINCIPLES):
        return 210.0
    return 180.0


class AppSettings(BaseModel):
    """运行时设置"""
    db_path: str = Field(default="data/lazywriter.db", description="SQLite 数据库路径")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis 地址")
    dispatch_mode: str = Field(default="celery", description="任务派发方式：celery / local")
    local_workers: int = Field(default=5, description="local 模式的线程池大小")
    log_level: str = Field(default="INFO", description="日志级别")
    min_transcript_length: int = Field(default=10, description="有效输入的最少字数")
    default_credits: int = Field(default=30, description="新用户默认次数")
    stages: StageConfig = Field(default_factory=StageConfig, description="分阶段配置")

    def __init__(self, **data):
        if "db_path" not in data and os.getenv("LAZYWRITER_DB_PATH"):
            data["db_path"] = os.getenv("LAZYWRITER_DB_PATH")
        if "redis_url" not in data and os.getenv("REDIS_URL"):
            data["redis_url"] = os.getenv("REDIS_URL")
        if "dispatch_mode" not in data and os.getenv("LAZYWRITER_DISPATCH"):
            data["dispatch_mode"] = os.getenv("LAZYWRITER_DISPATCH")
        if "local_workers" not in data and os.getenv("LOCAL_WORKERS"):
            data["local_workers"] = int(os.getenv("LOCAL_WORKERS"))
        if "log_level" not in data and os.getenv("LOG_LEVEL"):
            data["log_level"] = os.getenv("LOG_LEVEL")
        super().__init__(**data)


@lru_cache(maxsize=1)
def get_roster() -> ProviderRoster:
    """进程级名单，只加载一次"""
    return ProviderRoster.from_env()


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
