from concurrent.futures import ThreadPoolExecutor

import pytest
from celery.exceptions import Retry

from conftest import TRANSCRIPT
from lazywriter.exceptions import ApiError, ProviderTimeoutError
from lazywriter.models import Provider, ProviderStatus, Stage, TaskSpec
from lazywriter.runtime.events import provider_topic
from lazywriter.tasks import generation_tasks
from lazywriter.tasks.dispatch import TASK_RUN_GENERATION, CeleryDispatcher, LocalDispatcher


class _SentTask:
    id = "task-1"


class FakeCelery:
    def __init__(self):
        self.sent = []

    def send_task(self, name, args=None, queue=None):
        self.sent.append((name, args, queue))
        return _SentTask()


def _spec(store, provider=Provider.GROK):
    article = store.create_article(TRANSCRIPT, "article_tasks")
    generation = store.begin_generation(article.id, Stage.BRAINSTORM, provider)
    return TaskSpec(
        article_id=article.id,
        stage=Stage.BRAINSTORM,
        provider=provider,
        config_provider=provider,
        prompt=TRANSCRIPT,
        topic=provider_topic(article.stream_base, Stage.BRAINSTORM, provider),
        generation=generation,
        timeout=30,
        max_tokens=1000,
    )


def test_celery_dispatcher_sends_json_payload(store):
    fake = FakeCelery()
    spec = _spec(store)

    CeleryDispatcher(celery_app=fake).dispatch(spec)

    name, args, queue = fake.sent[0]
    assert name == TASK_RUN_GENERATION
    assert queue == "llm"
    assert TaskSpec.model_validate(args[0]) == spec


def test_local_dispatcher_requires_job_factory(store):
    with pytest.raises(RuntimeError):
        LocalDispatcher().dispatch(_spec(store))


def test_local_dispatcher_with_thread_pool(store, bus, client, roster, settings):
    from lazywriter.services.generation_service import GenerationOrchestrator
    from lazywriter.services.quota_service import QuotaService

    executor = ThreadPoolExecutor(max_workers=5)
    dispatcher = LocalDispatcher(executor=executor, sleep=lambda seconds: None)
    orchestrator = GenerationOrchestrator(
        store=store,
        bus=bus,
        dispatcher=dispatcher,
        quota=QuotaService(store),
        roster=roster,
        settings=settings,
        client=client,
    )
    try:
        article = orchestrator.start_all(transcript=TRANSCRIPT)
        dispatcher.wait()
    finally:
        executor.shutdown(wait=True)

    reloaded = store.get_article(article.id)
    assert all(r.status == ProviderStatus.COMPLETE for r in reloaded.brainstorm.values())
    assert all(r.status == ProviderStatus.COMPLETE for r in reloaded.drafts.values())
    drafts_started = [e for e in bus.events(article.stream_base) if e["type"] == "all-drafts-started"]
    assert len(drafts_started) == 1


def test_celery_task_runs_job(monkeypatch, orchestrator, store, bus):
    monkeypatch.setattr(generation_tasks, "get_worker_orchestrator", lambda: orchestrator)
    spec = _spec(store)

    result = generation_tasks.run_generation.apply(args=[spec.model_dump(mode="json")])

    assert result.get() == "succeeded"
    assert [e["type"] for e in bus.events(spec.topic)][-1] == "complete"


def test_celery_task_fatal_error_is_terminal(monkeypatch, orchestrator, store, bus, client):
    monkeypatch.setattr(generation_tasks, "get_worker_orchestrator", lambda: orchestrator)
    client.failures["qwen"] = ApiError("forbidden", status_code=403)
    spec = _spec(store, Provider.QWEN)

    result = generation_tasks.run_generation.apply(args=[spec.model_dump(mode="json")])

    assert result.get() == "failed"
    events = bus.events(spec.topic)
    assert [e["type"] for e in events] == ["error"]
    assert "权限不足" in events[0]["message"]


@pytest.fixture
def retry_requests(monkeypatch):
    """记录 run_generation 请求的重试参数，不真正重新入队"""
    requests = []

    def fake_retry(exc=None, countdown=None, max_retries=None):
        requests.append({"exc": exc, "countdown": countdown, "max_retries": max_retries})
        return Retry("retry requested", exc=exc, when=countdown)

    monkeypatch.setattr(generation_tasks.run_generation, "retry", fake_retry)
    return requests


def test_celery_task_retries_server_errors(monkeypatch, orchestrator, store, bus, client, retry_requests):
    monkeypatch.setattr(generation_tasks, "get_worker_orchestrator", lambda: orchestrator)
    client.failures["grok"] = ApiError("unavailable", status_code=503)
    spec = _spec(store)
    payload = [spec.model_dump(mode="json")]

    # worker 每次重新执行时 request.retries 递增
    generation_tasks.run_generation.apply(args=payload)
    generation_tasks.run_generation.apply(args=payload, retries=1)
    result = generation_tasks.run_generation.apply(args=payload, retries=2)

    assert [(r["countdown"], r["max_retries"]) for r in retry_requests] == [(10.0, 2), (10.0, 2)]
    assert result.get() == "failed"
    events = bus.events(spec.topic)
    assert [e["type"] for e in events] == ["retrying", "retrying", "error"]
    assert [e["attempt"] for e in events[:2]] == [2, 3]
    assert "服务繁忙" in events[-1]["message"]
    assert store.get_article(spec.article_id).result(Stage.BRAINSTORM, Provider.GROK).status == ProviderStatus.ERROR


def test_celery_task_timeout_uses_timeout_backoff(monkeypatch, orchestrator, store, bus, client, retry_requests):
    monkeypatch.setattr(generation_tasks, "get_worker_orchestrator", lambda: orchestrator)
    client.scripts["grok"] = [ProviderTimeoutError("timed out")]
    spec = _spec(store)
    payload = [spec.model_dump(mode="json")]

    generation_tasks.run_generation.apply(args=payload)
    result = generation_tasks.run_generation.apply(args=payload, retries=1)

    assert retry_requests[0]["countdown"] == 5.0
    assert retry_requests[0]["max_retries"] == 3
    assert isinstance(retry_requests[0]["exc"], ProviderTimeoutError)
    assert result.get() == "succeeded"
    chunks = [e for e in bus.events(spec.topic) if e["type"] == "chunk"]
    assert {c["attempt"] for c in chunks} == {2}
    assert [e["type"] for e in bus.events(spec.topic)][-1] == "complete"
