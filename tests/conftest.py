"""
测试公共夹具：临时 SQLite、进程内事件总线、可编排结果的假模型客户端
"""
from collections import defaultdict
from typing import Dict, List, Optional

import pytest

from lazywriter.config import AppSettings, DEFAULT_ROSTER, ProviderConfig, ProviderRoster, ProviderSpec, StageConfig
from lazywriter.models import Provider, TaskSpec
from lazywriter.runtime.db import ArticleStore
from lazywriter.runtime.events import InMemoryEventBus
from lazywriter.services.generation_service import GenerationOrchestrator
from lazywriter.services.quota_service import QuotaService
from lazywriter.tasks.dispatch import LocalDispatcher

TRANSCRIPT = "我今天想聊聊远程工作的效率问题"


class StaticRoster(ProviderRoster):
    """不读环境变量的名单，模型名即 provider 标识"""

    def config_for(self, provider: Provider) -> ProviderConfig:
        return ProviderConfig(base_url="http://fake.local/v1", api_key="sk-test", model=provider.value)


def make_roster(enabled: Optional[List[Provider]] = None) -> StaticRoster:
    specs = []
    for entry in DEFAULT_ROSTER:
        spec = ProviderSpec(**entry)
        spec.enabled = enabled is None or spec.provider in enabled
        specs.append(spec)
    return StaticRoster(specs)


class FakeProviderClient:
    """假模型客户端

    scripts[model] 中的结果按调用顺序依次使用（字符串为成功，异常实例为抛出），
    用完后 failures[model] 中的异常会一直抛出，否则返回默认文本。
    流式调用时把文本切成两段依次回调。
    """

    def __init__(self):
        self.scripts: Dict[str, list] = defaultdict(list)
        self.failures: Dict[str, Exception] = {}
        self.calls: List[dict] = []

    def default_text(self, model: str, prompt: str) -> str:
        return f"{model} 对这个想法的回应：效率来自专注"

    def generate(self, prompt, system, config, on_chunk=None):
        model = config.model
        self.calls.append({"model": model, "prompt": prompt, "system": system, "config": config})
        if self.scripts[model]:
            outcome = self.scripts[model].pop(0)
        elif model in self.failures:
            outcome = self.failures[model]
        else:
            outcome = self.default_text(model, prompt)
        if isinstance(outcome, Exception):
            raise outcome
        if on_chunk is not None:
            middle = len(outcome) // 2
            for piece in (outcome[:middle], outcome[middle:]):
                if piece:
                    on_chunk(piece)
        return outcome

    def calls_for(self, model: str) -> List[dict]:
        return [c for c in self.calls if c["model"] == model]


class RecordingDispatcher(LocalDispatcher):
    """同步执行并记录所有派发的任务"""

    def __init__(self, **kwargs):
        self.sleeps: List[float] = []
        super().__init__(sleep=self.sleeps.append, **kwargs)
        self.dispatched: List[TaskSpec] = []

    def dispatch(self, spec: TaskSpec) -> None:
        self.dispatched.append(spec)
        super().dispatch(spec)

    def dispatched_for(self, stage) -> List[TaskSpec]:
        return [s for s in self.dispatched if s.stage == stage]


@pytest.fixture
def store(tmp_path):
    article_store = ArticleStore(tmp_path / "lazywriter.db")
    assert article_store.initialize()
    return article_store


@pytest.fixture
def settings(tmp_path):
    return AppSettings(
        db_path=str(tmp_path / "lazywriter.db"),
        dispatch_mode="local",
        stages=StageConfig(stage1_timeout=60.0, stage2_timeout=120.0),
    )


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def client():
    return FakeProviderClient()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def roster():
    return make_roster()


@pytest.fixture
def orchestrator(store, bus, dispatcher, client, roster, settings):
    return GenerationOrchestrator(
        store=store,
        bus=bus,
        dispatcher=dispatcher,
        quota=QuotaService(store),
        roster=roster,
        settings=settings,
        client=client,
    )
