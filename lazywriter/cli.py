"""
LazyWriter CLI 工具
命令行接口：初始化数据库、在本地直接跑一轮多模型脑爆 + 初稿、查看文章、管理用户次数
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Annotated, Any, Dict, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lazywriter.config import get_roster, get_settings
from lazywriter.exceptions import LazyWriterError
from lazywriter.models import Article, ProviderStatus, Stage, ThinkingFramework, WritingStyle, parse_provider
from lazywriter.runtime.db import ArticleStore
from lazywriter.runtime.events import InMemoryEventBus, route_event
from lazywriter.services.generation_service import GenerationOrchestrator
from lazywriter.services.quota_service import QuotaService
from lazywriter.tasks.dispatch import LocalDispatcher

# 初始化 Typer 应用
app = typer.Typer(
    name="lazywriter",
    help="懒人写作术 - 多模型脑爆与初稿生成",
    add_completion=False,
    rich_markup_mode="rich",
)

# Rich console 用于美化输出
console = Console()

STATUS_STYLE = {
    ProviderStatus.UNSET: "[dim]未开始[/dim]",
    ProviderStatus.PENDING: "[yellow]等待中[/yellow]",
    ProviderStatus.STREAMING: "[cyan]生成中[/cyan]",
    ProviderStatus.COMPLETE: "[green]✅ 完成[/green]",
    ProviderStatus.ERROR: "[red]❌ 失败[/red]",
}


def _open_store() -> ArticleStore:
    settings = get_settings()
    store = ArticleStore(settings.db_path, default_credits=settings.default_credits)
    if not store.initialize():
        rprint(f"[red]❌ 数据库初始化失败: {settings.db_path}[/red]")
        raise typer.Exit(1)
    return store


def _preview(text: Optional[str], limit: int = 60) -> str:
    if not text:
        return ""
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[:limit] + "…"


def _print_article(article: Article) -> None:
    roster = get_roster()
    console.print(Panel(f"📝 文章 [bold]#{article.id}[/bold]  状态: {article.status_label}", expand=False))
    rprint(f"[bold]原始想法:[/bold] {article.transcript}")
    rprint(f"[dim]思考框架: {article.thinking_framework.value} / 写作风格: {article.writing_style.value}[/dim]\n")

    table = Table(show_header=True, header_style="bold")
    table.add_column("模型")
    table.add_column("脑爆")
    table.add_column("初稿")
    table.add_column("预览")
    for spec in roster:
        brainstorm = article.result(Stage.BRAINSTORM, spec.provider)
        draft = article.result(Stage.DRAFT, spec.provider)
        preview = _preview(draft.content or brainstorm.content) or _preview(brainstorm.error_message)
        table.add_row(
            spec.display_name,
            STATUS_STYLE[brainstorm.status],
            STATUS_STYLE[draft.status],
            preview,
        )
    console.print(table)

    if article.draft:
        rprint(f"\n[bold]融合初稿:[/bold] {_preview(article.draft, 200)}")
    if article.final_content:
        rprint(f"\n[bold]定稿（{article.word_count} 字）:[/bold] {_preview(article.final_content, 200)}")


@app.command("init-db")
def init_db():
    """初始化数据库（应用所有迁移）"""
    store = _open_store()
    rprint(f"[green]✅ 数据库已就绪: {store.db_path}[/green]")


@app.command()
def write(
    transcript: Annotated[str, typer.Argument(help="你的想法（至少 10 个字）")],
    framework: Annotated[ThinkingFramework, typer.Option("--framework", "-f", help="脑爆思考框架")] = ThinkingFramework.ORIGINAL,
    style: Annotated[WritingStyle, typer.Option("--style", "-s", help="初稿写作风格")] = WritingStyle.ORIGINAL,
    user_id: Annotated[Optional[int], typer.Option("--user", "-u", help="扣减该用户的次数")] = None,
    manual_draft: Annotated[bool, typer.Option("--manual-draft", help="脑爆完成后不自动生成初稿")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="记录每次调用的耗时与 token 用量")] = False,
):
    """
    在本地跑一轮：所有模型并发脑爆，全部结束后自动生成初稿
    """
    from lazywriter.llm import ProviderClient

    settings = get_settings()
    store = _open_store()
    bus = InMemoryEventBus()
    executor = ThreadPoolExecutor(max_workers=settings.local_workers, thread_name_prefix="llm")
    dispatcher = LocalDispatcher(executor=executor)
    orchestrator = GenerationOrchestrator(
        store=store,
        bus=bus,
        dispatcher=dispatcher,
        quota=QuotaService(store),
        roster=get_roster(),
        settings=settings,
        client=ProviderClient(verbose=verbose),
    )
    roster = get_roster()

    def _label(payload: Dict[str, Any]) -> str:
        provider = payload.get("provider")
        name = roster.display_name(parse_provider(provider)) if provider else "融合初稿"
        stage = "初稿" if payload.get("stage") == Stage.DRAFT.value else "脑爆"
        return f"{name}·{stage}"

    handlers = {
        "subject-created": lambda p: rprint(f"[dim]📄 文章 #{p['article_id']} 已创建[/dim]"),
        "complete": lambda p: rprint(f"[green]✅ {_label(p)} 完成（{len(p['content'])} 字）[/green]"),
        "error": lambda p: rprint(f"[red]❌ {p['message']}[/red]"),
        "retrying": lambda p: rprint(f"[yellow]🔁 {p['message']}[/yellow]"),
        "all-drafts-started": lambda p: rprint(f"[cyan]✍️  开始生成初稿: {', '.join(p['providers'])}[/cyan]"),
    }
    bus.subscribe(None, lambda topic, payload: route_event(handlers, payload))

    try:
        with console.status("[bold]生成中...[/bold]"):
            article = orchestrator.start_all(
                transcript=transcript,
                thinking_framework=framework,
                writing_style=style,
                user_id=user_id,
                manual_draft=manual_draft,
            )
            dispatcher.wait()
    except LazyWriterError as e:
        rprint(f"[red]❌ {e}[/red]")
        raise typer.Exit(1)
    finally:
        executor.shutdown(wait=True)

    rprint("")
    _print_article(orchestrator.get_article(article.id))


@app.command()
def show(
    article_id: Annotated[int, typer.Argument(help="文章 ID")],
    full: Annotated[bool, typer.Option("--full", help="输出每个模型的完整内容")] = False,
):
    """查看文章与各模型的生成状态"""
    store = _open_store()
    article = store.get_article(article_id)
    if article is None:
        rprint(f"[red]❌ 文章 {article_id} 不存在[/red]")
        raise typer.Exit(1)

    _print_article(article)
    if full:
        roster = get_roster()
        for stage, results in ((Stage.BRAINSTORM, article.brainstorm), (Stage.DRAFT, article.drafts)):
            for provider, result in results.items():
                if result.has_content:
                    title = f"{roster.display_name(provider)} · {'脑爆' if stage == Stage.BRAINSTORM else '初稿'}"
                    console.print(Panel(result.content, title=title))


@app.command()
def credits(
    user_id: Annotated[int, typer.Argument(help="用户 ID")],
    grant: Annotated[Optional[int], typer.Option("--grant", "-g", help="增加的次数")] = None,
):
    """查看或增加用户的剩余次数"""
    quota = QuotaService(_open_store())
    if grant is not None:
        try:
            total = quota.grant(user_id, grant)
        except ValueError as e:
            rprint(f"[red]❌ {e}[/red]")
            raise typer.Exit(1)
        rprint(f"[green]✅ 用户 {user_id} 增加 {grant} 次，剩余 {total} 次[/green]")
        return
    rprint(f"用户 {user_id} 剩余 [bold]{quota.remaining(user_id)}[/bold] 次")


@app.command()
def serve(
    host: Annotated[str, typer.Option(help="监听地址")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="端口")] = 8000,
    reload: Annotated[bool, typer.Option(help="代码变更时自动重启")] = False,
):
    """启动 API 服务"""
    import uvicorn

    uvicorn.run("lazywriter.api.main:app", host=host, port=port, reload=reload)


@app.callback()
def main():
    """
    懒人写作术 - 多模型脑爆与初稿生成
    """
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


if __name__ == "__main__":
    app()
