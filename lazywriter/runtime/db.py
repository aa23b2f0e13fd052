"""
文章存储
基于 SQLite 的文章、模型结果、用户额度与脑爆批次存储

所有并发写入都是单行、带条件的 UPDATE：多个模型的任务同时完成时
各自只改动自己的 (文章, 阶段, 模型) 行，不会相互覆盖。
每行带有生成轮次（generation），旧轮次任务的迟到写入会被丢弃。
"""
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from lazywriter.exceptions import QuotaExceededError
from lazywriter.models import (
    Article,
    Provider,
    ProviderResult,
    ProviderStatus,
    Stage,
    count_words,
    parse_thinking_framework,
    parse_writing_style,
    ThinkingFramework,
    WritingStyle,
)
from lazywriter.runtime.db_migrations import MigrationManager


logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ArticleStore:
    """SQLite 文章存储"""

    def __init__(self, db_path: Union[str, Path], default_credits: int = 30):
        self.db_path = Path(db_path)
        self.default_credits = default_credits

    @contextmanager
    def get_connection(self, immediate: bool = False):
        """获取数据库连接的上下文管理器

        immediate=True 时立即获取写锁，用于"读取-判断-写入"必须原子完成的场景。
        """
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"数据库操作错误: {e}")
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> bool:
        """初始化数据库和表结构"""
        return MigrationManager(self.db_path).apply_migrations()

    # ==================== 用户额度 ====================

    def get_credits(self, user_id: int) -> Optional[int]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT credits FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["credits"] if row else None

    def ensure_user(self, user_id: int, credits: Optional[int] = None) -> int:
        """不存在时创建用户，返回当前剩余次数"""
        initial = self.default_credits if credits is None else credits
        with self.get_connection(immediate=True) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (id, credits, created_at) VALUES (?, ?, ?)",
                (user_id, initial, _now_iso()),
            )
            row = conn.execute("SELECT credits FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["credits"]

    def grant_credits(self, user_id: int, amount: int) -> int:
        self.ensure_user(user_id, credits=0)
        with self.get_connection(immediate=True) as conn:
            conn.execute("UPDATE users SET credits = credits + ? WHERE id = ?", (amount, user_id))
            row = conn.execute("SELECT credits FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["credits"]

    # ==================== 文章 ====================

    def create_article(
        self,
        transcript: str,
        stream_base: str,
        user_id: Optional[int] = None,
        writing_style: WritingStyle = WritingStyle.ORIGINAL,
        thinking_framework: ThinkingFramework = ThinkingFramework.ORIGINAL,
        manual_draft: bool = False,
        charge_user: bool = False,
    ) -> Article:
        """创建文章

        charge_user=True 时在同一事务里扣减用户一次额度；额度不足则抛出
        QuotaExceededError，文章不会被创建，额度也不变。
        """
        now = _now_iso()
        with self.get_connection(immediate=True) as conn:
            if charge_user and user_id is not None:
                cursor = conn.execute(
                    "UPDATE users SET credits = credits - 1 WHERE id = ? AND credits > 0",
                    (user_id,),
                )
                if cursor.rowcount != 1:
                    raise QuotaExceededError(user_id)

            cursor = conn.execute(
                """
                INSERT INTO articles (
                    transcript, user_id, stream_base, writing_style, thinking_framework,
                    manual_draft, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transcript,
                    user_id,
                    stream_base,
                    writing_style.value,
                    thinking_framework.value,
                    int(manual_draft),
                    now,
                    now,
                ),
            )
            article_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO provider_results (article_id, stage, provider, status, updated_at)
                VALUES (?, ?, ?, 'unset', ?)
                """,
                [(article_id, stage.value, provider.value, now) for stage in Stage for provider in Provider],
            )
        logger.info(f"文章 {article_id} 已创建 (user_id={user_id})")
        return self.get_article(article_id)

    def get_article(self, article_id: int) -> Optional[Article]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
            if row is None:
                return None
            results = conn.execute(
                "SELECT * FROM provider_results WHERE article_id = ?", (article_id,)
            ).fetchall()
        return self._to_article(row, results)

    def list_articles(self, user_id: Optional[int] = None, limit: int = 50) -> List[Article]:
        with self.get_connection() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT id FROM articles ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT id FROM articles WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
        articles = [self.get_article(row["id"]) for row in rows]
        return [a for a in articles if a is not None]

    def count_articles(self) -> int:
        with self.get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0]

    def _to_article(self, row: sqlite3.Row, results: Iterable[sqlite3.Row]) -> Article:
        brainstorm: Dict[Provider, ProviderResult] = {}
        drafts: Dict[Provider, ProviderResult] = {}
        for r in results:
            result = ProviderResult(
                stage=Stage(r["stage"]),
                provider=Provider(r["provider"]),
                status=ProviderStatus(r["status"]),
                content=r["content"],
                generation=r["generation"],
                error_message=r["error_message"],
                updated_at=r["updated_at"],
            )
            target = brainstorm if result.stage == Stage.BRAINSTORM else drafts
            target[result.provider] = result
        return Article(
            id=row["id"],
            transcript=row["transcript"],
            user_id=row["user_id"],
            stream_base=row["stream_base"],
            writing_style=parse_writing_style(row["writing_style"]),
            thinking_framework=parse_thinking_framework(row["thinking_framework"]),
            manual_draft=bool(row["manual_draft"]),
            brainstorm=brainstorm,
            drafts=drafts,
            selected_provider=Provider(row["selected_provider"]) if row["selected_provider"] else None,
            draft=row["draft"],
            final_content=row["final_content"],
            word_count=row["word_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _touch(self, conn: sqlite3.Connection, article_id: int) -> None:
        conn.execute("UPDATE articles SET updated_at = ? WHERE id = ?", (_now_iso(), article_id))

    # ==================== 模型结果 ====================

    def begin_generation(self, article_id: int, stage: Stage, provider: Provider) -> int:
        """开始新一轮生成：轮次 +1、状态置为 pending、清除上次错误，返回新轮次"""
        with self.get_connection(immediate=True) as conn:
            conn.execute(
                """
                UPDATE provider_results
                SET generation = generation + 1, status = 'pending', error_message = NULL, updated_at = ?
                WHERE article_id = ? AND stage = ? AND provider = ?
                """,
                (_now_iso(), article_id, stage.value, provider.value),
            )
            row = conn.execute(
                "SELECT generation FROM provider_results WHERE article_id = ? AND stage = ? AND provider = ?",
                (article_id, stage.value, provider.value),
            ).fetchone()
            self._touch(conn, article_id)
        return row["generation"]

    def set_stage_status(
        self,
        article_id: int,
        stage: Stage,
        provider: Provider,
        status: ProviderStatus,
        generation: Optional[int] = None,
        message: Optional[str] = None,
    ) -> bool:
        """更新单个模型的状态，内容保持不变

        传入 generation 时只有轮次一致才会写入；返回是否写入成功。
        """
        sql = """
            UPDATE provider_results
            SET status = ?, error_message = ?, updated_at = ?
            WHERE article_id = ? AND stage = ? AND provider = ?
        """
        params = [status.value, message, _now_iso(), article_id, stage.value, provider.value]
        if generation is not None:
            sql += " AND generation = ?"
            params.append(generation)
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount:
                self._touch(conn, article_id)
        return cursor.rowcount == 1

    def set_stage_content(
        self,
        article_id: int,
        stage: Stage,
        provider: Provider,
        text: str,
        generation: Optional[int] = None,
    ) -> bool:
        """写入内容并同时把状态置为 complete"""
        sql = """
            UPDATE provider_results
            SET content = ?, status = 'complete', error_message = NULL, updated_at = ?
            WHERE article_id = ? AND stage = ? AND provider = ?
        """
        params = [text, _now_iso(), article_id, stage.value, provider.value]
        if generation is not None:
            sql += " AND generation = ?"
            params.append(generation)
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount:
                self._touch(conn, article_id)
        return cursor.rowcount == 1

    def select_provider(self, article_id: int, provider: Provider) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE articles SET selected_provider = ?, updated_at = ? WHERE id = ?",
                (provider.value, _now_iso(), article_id),
            )

    def set_manual_draft(self, article_id: int, manual_draft: bool) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE articles SET manual_draft = ?, updated_at = ? WHERE id = ?",
                (int(manual_draft), _now_iso(), article_id),
            )

    def set_writing_style(self, article_id: int, writing_style: WritingStyle) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE articles SET writing_style = ?, updated_at = ? WHERE id = ?",
                (writing_style.value, _now_iso(), article_id),
            )

    def set_thinking_framework(self, article_id: int, thinking_framework: ThinkingFramework) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE articles SET thinking_framework = ?, updated_at = ? WHERE id = ?",
                (thinking_framework.value, _now_iso(), article_id),
            )

    def set_final_content(self, article_id: int, text: str) -> None:
        """保存定稿并重新计算字数"""
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE articles SET final_content = ?, word_count = ?, updated_at = ? WHERE id = ?",
                (text, count_words(text), _now_iso(), article_id),
            )

    # ==================== 单稿融合初稿 ====================

    def begin_fused_draft(self, article_id: int) -> int:
        with self.get_connection(immediate=True) as conn:
            conn.execute(
                """
                UPDATE articles
                SET draft_generation = draft_generation + 1, draft_status = 'pending', updated_at = ?
                WHERE id = ?
                """,
                (_now_iso(), article_id),
            )
            row = conn.execute("SELECT draft_generation FROM articles WHERE id = ?", (article_id,)).fetchone()
        return row["draft_generation"]

    def get_fused_draft_status(self, article_id: int) -> Optional[ProviderStatus]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT draft_status FROM articles WHERE id = ?", (article_id,)).fetchone()
        return ProviderStatus(row["draft_status"]) if row else None

    def set_fused_draft_status(self, article_id: int, status: ProviderStatus, generation: int) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE articles SET draft_status = ?, updated_at = ? WHERE id = ? AND draft_generation = ?",
                (status.value, _now_iso(), article_id, generation),
            )
        return cursor.rowcount == 1

    def set_fused_draft(self, article_id: int, text: str, generation: int) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE articles SET draft = ?, draft_status = 'complete', updated_at = ?
                WHERE id = ? AND draft_generation = ?
                """,
                (text, _now_iso(), article_id, generation),
            )
        return cursor.rowcount == 1

    # ==================== 脑爆批次 ====================

    def create_batch(self, batch_id: str, article_id: int, providers: List[Provider]) -> None:
        with self.get_connection(immediate=True) as conn:
            conn.execute(
                "INSERT INTO brainstorm_batches (batch_id, article_id, expected, created_at) VALUES (?, ?, ?, ?)",
                (batch_id, article_id, len(providers), _now_iso()),
            )
            conn.executemany(
                "INSERT INTO batch_members (batch_id, provider) VALUES (?, ?)",
                [(batch_id, p.value) for p in providers],
            )
            conn.execute(
                "UPDATE articles SET current_batch_id = ?, updated_at = ? WHERE id = ?",
                (batch_id, _now_iso(), article_id),
            )

    def record_batch_terminal(self, batch_id: str, provider: Provider) -> bool:
        """记录批次中某个模型已结束（成功或失败）

        同一模型重复上报只计一次。只有让整个批次"全部结束"并且
        首次把 chained 置位的那次调用返回 True，保证初稿只自动触发一次。
        已被文章新一轮批次取代的旧批次照常计数，但永远不会置位。
        """
        with self.get_connection(immediate=True) as conn:
            cursor = conn.execute(
                "UPDATE batch_members SET terminal = 1 WHERE batch_id = ? AND provider = ? AND terminal = 0",
                (batch_id, provider.value),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                "UPDATE brainstorm_batches SET terminal = terminal + 1 WHERE batch_id = ?",
                (batch_id,),
            )
            cursor = conn.execute(
                """
                UPDATE brainstorm_batches SET chained = 1
                WHERE batch_id = ? AND chained = 0 AND terminal >= expected
                  AND batch_id = (
                      SELECT current_batch_id FROM articles WHERE articles.id = brainstorm_batches.article_id
                  )
                """,
                (batch_id,),
            )
            if cursor.rowcount == 1:
                return True
            superseded = conn.execute(
                """
                SELECT 1 FROM brainstorm_batches b JOIN articles a ON a.id = b.article_id
                WHERE b.batch_id = ? AND b.terminal >= b.expected AND a.current_batch_id != b.batch_id
                """,
                (batch_id,),
            ).fetchone()
            if superseded:
                logger.info(f"脑爆批次 {batch_id} 已被新一轮取代，不再自动生成初稿")
            return False

    def get_batch(self, batch_id: str) -> Optional[Dict]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM brainstorm_batches WHERE batch_id = ?", (batch_id,)).fetchone()
            if row is None:
                return None
            members = conn.execute(
                "SELECT provider, terminal FROM batch_members WHERE batch_id = ?", (batch_id,)
            ).fetchall()
        batch = dict(row)
        batch["members"] = {m["provider"]: bool(m["terminal"]) for m in members}
        return batch

    def health_check(self) -> bool:
        try:
            with self.get_connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False
