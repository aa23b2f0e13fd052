import pytest

from lazywriter.exceptions import ApiError, ConfigurationError, ProviderTimeoutError
from lazywriter.models import Provider, ProviderStatus, Stage, TaskSpec, TaskState
from lazywriter.runtime.events import provider_topic
from lazywriter.runtime.job import GenerationJob, RetryPolicy, run_with_retries, user_error_message


@pytest.fixture
def article(store):
    return store.create_article("我今天想聊聊远程工作的效率问题", "article_job")


def _spec(store, article, provider=Provider.GROK, stage=Stage.BRAINSTORM, streaming=True, generation=None):
    if generation is None:
        generation = store.begin_generation(article.id, stage, provider)
    return TaskSpec(
        article_id=article.id,
        stage=stage,
        provider=provider,
        config_provider=provider,
        prompt=article.transcript,
        topic=provider_topic(article.stream_base, stage, provider),
        generation=generation,
        streaming=streaming,
        timeout=30,
        max_tokens=1000,
    )


def _run(spec, store, bus, client, roster, sleeps=None, **kwargs):
    job = GenerationJob(spec, store, bus, client, roster, **kwargs)
    sleep = sleeps.append if sleeps is not None else (lambda seconds: None)
    run_with_retries(job, RetryPolicy(), sleep=sleep)
    return job


# ==================== 重试策略 ====================

def test_timeout_retried_three_times_with_short_backoff():
    policy = RetryPolicy()
    exc = ProviderTimeoutError("timeout")
    assert [policy.decide(exc, n) for n in range(4)] == [5.0, 5.0, 5.0, None]


@pytest.mark.parametrize("status_code", [429, 500, 503, None])
def test_retryable_api_errors_retried_twice(status_code):
    policy = RetryPolicy()
    exc = ApiError("busy", status_code=status_code)
    assert [policy.decide(exc, n) for n in range(3)] == [10.0, 10.0, None]


@pytest.mark.parametrize("exc", [ConfigurationError("missing"), ApiError("bad", 400), ApiError("key", 401)])
def test_fatal_errors_never_retried(exc):
    assert RetryPolicy().decide(exc, 0) is None


def test_user_error_messages_name_the_provider():
    assert "Grok API密钥配置错误" in user_error_message(ApiError("x", 401), "Grok", Stage.BRAINSTORM)
    assert "请求过于频繁" in user_error_message(ApiError("x", 429), "千问", Stage.BRAINSTORM)
    assert "服务繁忙" in user_error_message(ApiError("x", 502), "豆包", Stage.BRAINSTORM)
    assert "生成超时" in user_error_message(ProviderTimeoutError("t"), "Gemini", Stage.BRAINSTORM)
    assert "配置缺失" in user_error_message(ConfigurationError("c"), "DeepSeek", Stage.BRAINSTORM)


def test_draft_errors_note_brainstorm_is_unaffected():
    brainstorm = user_error_message(ApiError("x", 503), "Grok", Stage.BRAINSTORM)
    draft = user_error_message(ApiError("x", 503), "Grok", Stage.DRAFT)
    assert "上方脑爆内容不受影响" not in brainstorm
    assert "上方脑爆内容不受影响" in draft


# ==================== 任务执行 ====================

def test_streaming_success_publishes_chunks_then_complete(store, bus, client, roster, article):
    spec = _spec(store, article)
    seen_status = []
    bus.subscribe(
        spec.topic,
        lambda topic, payload: seen_status.append(
            store.get_article(article.id).result(Stage.BRAINSTORM, Provider.GROK).status
        ),
    )

    job = _run(spec, store, bus, client, roster)

    events = bus.events(spec.topic)
    assert job.state == TaskState.SUCCEEDED
    assert [e["type"] for e in events] == ["chunk", "chunk", "complete"]
    assert "".join(e["chunk"] for e in events if e["type"] == "chunk") == events[-1]["content"]
    assert all(e["generation"] == spec.generation for e in events)
    # 每个片段发布时状态已是 streaming
    assert seen_status[:2] == [ProviderStatus.STREAMING, ProviderStatus.STREAMING]

    result = store.get_article(article.id).result(Stage.BRAINSTORM, Provider.GROK)
    assert result.status == ProviderStatus.COMPLETE
    assert result.content == events[-1]["content"]


def test_blocking_task_publishes_only_terminal_event(store, bus, client, roster, article):
    spec = _spec(store, article, stage=Stage.DRAFT, streaming=False)

    _run(spec, store, bus, client, roster)

    assert [e["type"] for e in bus.events(spec.topic)] == ["complete"]
    assert client.calls[0]["config"].timeout == 30
    assert client.calls[0]["config"].max_tokens == 1000


def test_retry_then_success_resets_chunk_stream(store, bus, client, roster, article):
    client.scripts["grok"] = [ProviderTimeoutError("timeout"), "第二次终于成功了"]
    spec = _spec(store, article)
    sleeps = []

    job = _run(spec, store, bus, client, roster, sleeps=sleeps)

    events = bus.events(spec.topic)
    assert job.state == TaskState.SUCCEEDED
    assert sleeps == [5.0]
    assert events[0]["type"] == "retrying"
    assert events[0]["attempt"] == 2
    chunks = [e for e in events if e["type"] == "chunk"]
    assert {e["attempt"] for e in chunks} == {2}
    assert "".join(e["chunk"] for e in chunks) == events[-1]["content"] == "第二次终于成功了"


def test_exhausted_timeouts_end_in_single_error(store, bus, client, roster, article):
    client.failures["grok"] = ProviderTimeoutError("timeout")
    spec = _spec(store, article)
    sleeps = []

    job = _run(spec, store, bus, client, roster, sleeps=sleeps)

    events = bus.events(spec.topic)
    assert job.state == TaskState.FAILED
    assert len(client.calls_for("grok")) == 4
    assert sleeps == [5.0, 5.0, 5.0]
    assert [e["type"] for e in events].count("error") == 1
    assert events[-1]["type"] == "error"
    assert "Grok" in events[-1]["message"]

    result = store.get_article(article.id).result(Stage.BRAINSTORM, Provider.GROK)
    assert result.status == ProviderStatus.ERROR
    assert result.content is None


def test_fatal_api_error_fails_immediately(store, bus, client, roster, article):
    client.failures["qwen"] = ApiError("Incorrect API key provided", status_code=401)
    spec = _spec(store, article, provider=Provider.QWEN)

    _run(spec, store, bus, client, roster)

    assert len(client.calls_for("qwen")) == 1
    assert [e["type"] for e in bus.events(spec.topic)] == ["error"]
    assert "API密钥配置错误" in bus.events(spec.topic)[0]["message"]


def test_unexpected_exception_becomes_error_event(store, bus, client, roster, article):
    client.failures["doubao"] = RuntimeError("boom")
    spec = _spec(store, article, provider=Provider.DOUBAO)

    job = _run(spec, store, bus, client, roster)

    assert job.state == TaskState.FAILED
    assert bus.events(spec.topic)[-1]["type"] == "error"


def test_superseded_task_result_is_discarded(store, bus, client, roster, article):
    stale = _spec(store, article)
    fresh = _spec(store, article)
    client.scripts["grok"] = ["新一轮的内容", "旧一轮的内容"]

    _run(fresh, store, bus, client, roster)
    _run(stale, store, bus, client, roster)

    result = store.get_article(article.id).result(Stage.BRAINSTORM, Provider.GROK)
    assert result.content == "新一轮的内容"
    completes = [e for e in bus.events(fresh.topic) if e["type"] == "complete"]
    assert [e["generation"] for e in completes] == [fresh.generation]


def test_job_only_touches_its_own_provider(store, bus, client, roster, article):
    gen = store.begin_generation(article.id, Stage.BRAINSTORM, Provider.GEMINI)
    store.set_stage_content(article.id, Stage.BRAINSTORM, Provider.GEMINI, "Gemini 的内容", generation=gen)
    before = store.get_article(article.id).result(Stage.BRAINSTORM, Provider.GEMINI)
    client.failures["grok"] = ApiError("bad request", 400)

    _run(_spec(store, article), store, bus, client, roster)

    after = store.get_article(article.id).result(Stage.BRAINSTORM, Provider.GEMINI)
    assert after == before
    assert bus.topics() == [provider_topic(article.stream_base, Stage.BRAINSTORM, Provider.GROK)]


def test_batch_member_reports_terminal_even_on_failure(store, bus, client, roster, article):
    client.failures["grok"] = ApiError("bad request", 400)
    spec = _spec(store, article).model_copy(update={"batch_id": "batch-x"})
    reported = []

    _run(spec, store, bus, client, roster, on_batch_terminal=lambda batch_id, p: reported.append((batch_id, p)))

    assert reported == [("batch-x", Provider.GROK)]


def test_draft_tasks_do_not_report_to_batch(store, bus, client, roster, article):
    spec = _spec(store, article, stage=Stage.DRAFT, streaming=False).model_copy(update={"batch_id": "batch-x"})
    reported = []

    _run(spec, store, bus, client, roster, on_batch_terminal=lambda *args: reported.append(args))

    assert reported == []
