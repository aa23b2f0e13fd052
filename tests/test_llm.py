import httpx
import openai
import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from lazywriter.config import ProviderConfig
from lazywriter.exceptions import ApiError, ConfigurationError, ProviderTimeoutError
from lazywriter.llm import ProviderClient, get_llm

CONFIG = ProviderConfig(base_url="http://fake.local/v1", api_key="sk-test", model="fake-model", timeout=12)
REQUEST = httpx.Request("POST", "http://fake.local/v1/chat/completions")


class _Chunk:
    def __init__(self, content):
        self.content = content


class FakeLLM:
    def __init__(self, pieces=None, error=None):
        self.pieces = pieces or []
        self.error = error
        self.messages = None

    def stream(self, messages):
        self.messages = messages
        if self.error:
            raise self.error
        for piece in self.pieces:
            yield _Chunk(piece)

    def invoke(self, messages):
        self.messages = messages
        if self.error:
            raise self.error
        return _Chunk("".join(self.pieces))


def _client(llm, calls=None):
    def factory(config, streaming=False, verbose=False):
        if calls is not None:
            calls.append(streaming)
        return llm

    return ProviderClient(llm_factory=factory)


def _status_error(status_code):
    response = httpx.Response(status_code, request=REQUEST)
    return openai.APIStatusError(f"status {status_code}", response=response, body=None)


def test_missing_config_fails_before_any_call():
    calls = []
    client = _client(FakeLLM(["x"]), calls)

    with pytest.raises(ConfigurationError):
        client.generate("你好", None, ProviderConfig(base_url="http://x", model="m"))
    assert calls == []


def test_blank_prompt_is_configuration_error():
    with pytest.raises(ConfigurationError):
        _client(FakeLLM(["x"])).generate("   ", None, CONFIG)


def test_streaming_calls_back_in_order_and_returns_concatenation():
    llm = FakeLLM(["关于", "", "效率", "的三个观察"])
    calls = []
    received = []

    text = _client(llm, calls).generate("想法", "系统", CONFIG, on_chunk=received.append)

    assert calls == [True]
    assert received == ["关于", "效率", "的三个观察"]
    assert text == "".join(received)
    assert isinstance(llm.messages[0], SystemMessage)
    assert isinstance(llm.messages[1], HumanMessage)


def test_blocking_without_system_prompt():
    llm = FakeLLM(["完整", "内容"])
    calls = []

    assert _client(llm, calls).generate("想法", None, CONFIG) == "完整内容"
    assert calls == [False]
    assert len(llm.messages) == 1


@pytest.mark.parametrize("streaming", [True, False])
def test_empty_content_is_api_error(streaming):
    on_chunk = (lambda text: None) if streaming else None
    with pytest.raises(ApiError) as exc_info:
        _client(FakeLLM(["  "])).generate("想法", None, CONFIG, on_chunk=on_chunk)
    assert exc_info.value.retryable


def test_timeout_maps_to_provider_timeout():
    llm = FakeLLM(error=openai.APITimeoutError(request=REQUEST))
    with pytest.raises(ProviderTimeoutError):
        _client(llm).generate("想法", None, CONFIG, on_chunk=lambda t: None)


def test_connection_error_maps_to_provider_timeout():
    llm = FakeLLM(error=openai.APIConnectionError(request=REQUEST))
    with pytest.raises(ProviderTimeoutError):
        _client(llm).generate("想法", None, CONFIG)


@pytest.mark.parametrize(
    "status_code, retryable",
    [(429, True), (500, True), (503, True), (400, False), (401, False), (403, False)],
)
def test_status_errors_keep_status_code(status_code, retryable):
    llm = FakeLLM(error=_status_error(status_code))
    with pytest.raises(ApiError) as exc_info:
        _client(llm).generate("想法", None, CONFIG)
    assert exc_info.value.status_code == status_code
    assert exc_info.value.retryable is retryable


def test_get_llm_disables_sdk_retries():
    llm = get_llm(CONFIG, streaming=True)
    assert llm.max_retries == 0
    assert llm.streaming is True
    assert llm.model_name == "fake-model"
