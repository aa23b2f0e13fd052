"""
LLM调用封装
把各家 OpenAI 兼容的 chat-completion 接口统一成一个调用约定：
给定提示词、系统提示词和配置，返回完整文本，或者边生成边回调文本片段。

底层通过 langchain_openai.ChatOpenAI 调用，重试交给任务层处理（max_retries=0）。
"""
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import openai
from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.outputs import LLMResult
from langchain_openai import ChatOpenAI

from lazywriter.config import ProviderConfig
from lazywriter.exceptions import ApiError, ConfigurationError, ProviderTimeoutError

logger = logging.getLogger(__name__)


class LoggingCallbackHandler(BaseCallbackHandler):
    """
    调用日志回调处理器

    记录每次调用的耗时与 token 用量，verbose 模式下启用。
    """

    def __init__(self, label: str = ""):
        self.label = label
        self.start_time = None
        self.total_tokens = 0

    def on_chat_model_start(self, serialized: Dict[str, Any], messages: List[List[BaseMessage]], **kwargs) -> None:
        self.start_time = time.time()
        logger.debug("🤖 LLM调用开始 [%s]", self.label)

    def on_llm_end(self, response: LLMResult, **kwargs) -> None:
        elapsed = time.time() - self.start_time if self.start_time else 0
        if response.llm_output and "token_usage" in response.llm_output:
            self.total_tokens = response.llm_output["token_usage"].get("total_tokens", 0)
        logger.info("✅ LLM调用完成 [%s] 耗时 %.2fs, tokens=%s", self.label, elapsed, self.total_tokens)

    def on_llm_error(self, error: BaseException, **kwargs) -> None:
        elapsed = time.time() - self.start_time if self.start_time else 0
        logger.warning("❌ LLM调用出错 [%s] 已耗时 %.2fs: %s", self.label, elapsed, error)


def get_llm(config: ProviderConfig, streaming: bool = False, verbose: bool = False) -> ChatOpenAI:
    """
    获取LLM实例

    Args:
        config: 模型配置（必须已通过校验）
        streaming: 是否启用流式传输
        verbose: 是否记录调用耗时与 token 用量

    Returns:
        ChatOpenAI实例
    """
    callbacks = [LoggingCallbackHandler(label=config.model or "")] if verbose else None
    return ChatOpenAI(
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.timeout,
        max_retries=0,
        streaming=streaming,
        callbacks=callbacks,
    )


def _build_messages(prompt: str, system: Optional[str]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    if system:
        messages.append(SystemMessage(content=system))
    messages.append(HumanMessage(content=prompt))
    return messages


def _text_of(content: Any) -> str:
    """AIMessage.content 可能是字符串或分段列表"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text", ""))
        return "".join(parts)
    return ""


class ProviderClient:
    """统一的模型调用入口

    每次调用相互独立，除传入的配置外不保留任何状态。
    """

    def __init__(self, verbose: bool = False, llm_factory: Optional[Callable[..., Any]] = None):
        self.verbose = verbose
        self._llm_factory = llm_factory or get_llm

    def generate(
        self,
        prompt: str,
        system: Optional[str],
        config: ProviderConfig,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        调用模型生成内容

        Args:
            prompt: 用户提示词
            system: 系统提示词（可为空）
            config: 模型配置
            on_chunk: 流式回调；为空时使用阻塞模式

        Returns:
            完整生成文本

        Raises:
            ConfigurationError: 配置缺失或提示词为空（调用网络之前抛出）
            ProviderTimeoutError: 超时或网络中断
            ApiError: 非 2xx、响应损坏或内容为空
        """
        missing = config.missing_fields()
        if missing:
            raise ConfigurationError(f"模型配置缺失: {', '.join(missing)}")
        if not prompt or not prompt.strip():
            raise ConfigurationError("Prompt cannot be blank")

        messages = _build_messages(prompt, system)
        llm = self._llm_factory(config, streaming=on_chunk is not None, verbose=self.verbose)

        try:
            if on_chunk is not None:
                return self._stream(llm, messages, on_chunk)
            return self._blocking(llm, messages)
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(f"Request timed out after {config.timeout}s") from e
        except openai.APIConnectionError as e:
            raise ProviderTimeoutError(f"Connection error: {e}") from e
        except openai.APIStatusError as e:
            raise ApiError(f"API error: {e.status_code} - {e.message}", status_code=e.status_code) from e
        except openai.APIError as e:
            raise ApiError(f"Invalid response: {e}") from e
        except json.JSONDecodeError as e:
            # 响应体无法解析
            raise ApiError(f"Invalid JSON response: {e}") from e

    def _stream(self, llm, messages: List[BaseMessage], on_chunk: Callable[[str], None]) -> str:
        full_content = ""
        for chunk in llm.stream(messages):
            text = _text_of(chunk.content)
            if text:
                full_content += text
                on_chunk(text)
        if not full_content.strip():
            raise ApiError("No content in response")
        return full_content

    def _blocking(self, llm, messages: List[BaseMessage]) -> str:
        response = llm.invoke(messages)
        content = _text_of(response.content)
        if not content.strip():
            raise ApiError("No content in response")
        return content
