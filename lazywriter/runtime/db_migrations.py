"""
数据库迁移脚本
处理数据库版本升级和结构变更
"""
import sqlite3
import logging
from pathlib import Path
from typing import List
from datetime import datetime

from lazywriter.models import Provider, ProviderStatus, Stage

logger = logging.getLogger(__name__)


def _in_clause(values) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


class Migration:
    """单个迁移的基类"""

    def __init__(self, version: int, description: str):
        self.version = version
        self.description = description
        self.created_at = datetime.now()

    def up(self, conn: sqlite3.Connection) -> None:
        """执行迁移"""
        raise NotImplementedError


class CreateInitialTables(Migration):
    """创建用户、文章、模型结果表"""

    def __init__(self):
        super().__init__(1, "创建用户、文章和模型结果表")

    def up(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                description TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY,
                credits INTEGER NOT NULL DEFAULT 30,
                created_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS articles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transcript TEXT NOT NULL,
                user_id INTEGER,
                stream_base TEXT NOT NULL,
                writing_style TEXT NOT NULL DEFAULT 'original',
                thinking_framework TEXT NOT NULL DEFAULT 'original',
                manual_draft INTEGER NOT NULL DEFAULT 0,
                selected_provider TEXT,
                draft TEXT,
                final_content TEXT,
                word_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # 每个 (文章, 阶段, 模型) 一行，取代按模型名存放的 JSON 状态字段
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS provider_results (
                article_id INTEGER NOT NULL,
                stage TEXT NOT NULL CHECK (stage IN ({_in_clause(Stage)})),
                provider TEXT NOT NULL CHECK (provider IN ({_in_clause(Provider)})),
                status TEXT NOT NULL DEFAULT 'unset' CHECK (status IN ({_in_clause(ProviderStatus)})),
                content TEXT,
                generation INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                updated_at TEXT,
                PRIMARY KEY (article_id, stage, provider),
                FOREIGN KEY (article_id) REFERENCES articles(id)
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_user ON articles(user_id)")


class AddBrainstormBatches(Migration):
    """脑爆批次表：记录一次 start_all 派发的模型，全部结束后自动生成初稿"""

    def __init__(self):
        super().__init__(2, "添加脑爆批次表")

    def up(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS brainstorm_batches (
                batch_id TEXT PRIMARY KEY,
                article_id INTEGER NOT NULL,
                expected INTEGER NOT NULL,
                terminal INTEGER NOT NULL DEFAULT 0,
                chained INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (article_id) REFERENCES articles(id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS batch_members (
                batch_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                terminal INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (batch_id, provider),
                FOREIGN KEY (batch_id) REFERENCES brainstorm_batches(batch_id)
            )
        """)


class AddFusedDraftStatus(Migration):
    """单稿融合初稿的状态与生成轮次"""

    def __init__(self):
        super().__init__(3, "添加单稿融合初稿状态字段")

    def up(self, conn: sqlite3.Connection) -> None:
        conn.execute("ALTER TABLE articles ADD COLUMN draft_status TEXT NOT NULL DEFAULT 'unset'")
        conn.execute("ALTER TABLE articles ADD COLUMN draft_generation INTEGER NOT NULL DEFAULT 0")


class AddCurrentBatch(Migration):
    """文章当前的脑爆批次，被新一轮取代的旧批次不再自动触发初稿"""

    def __init__(self):
        super().__init__(4, "添加文章当前脑爆批次字段")

    def up(self, conn: sqlite3.Connection) -> None:
        conn.execute("ALTER TABLE articles ADD COLUMN current_batch_id TEXT")


class MigrationManager:
    """迁移管理器"""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.migrations: List[Migration] = [
            CreateInitialTables(),
            AddBrainstormBatches(),
            AddFusedDraftStatus(),
            AddCurrentBatch(),
        ]

    def get_applied_migrations(self, conn: sqlite3.Connection) -> List[int]:
        """获取已应用的迁移版本"""
        try:
            cursor = conn.execute("SELECT version FROM schema_migrations ORDER BY version")
            return [row[0] for row in cursor.fetchall()]
        except sqlite3.OperationalError:
            # 表不存在，返回空列表
            return []

    def apply_migrations(self) -> bool:
        """应用所有待执行的迁移"""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            with sqlite3.connect(self.db_path) as conn:
                applied = self.get_applied_migrations(conn)

                for migration in self.migrations:
                    if migration.version not in applied:
                        logger.info(f"应用迁移 v{migration.version}: {migration.description}")
                        migration.up(conn)

                        conn.execute("""
                            INSERT INTO schema_migrations (version, description, applied_at)
                            VALUES (?, ?, ?)
                        """, (migration.version, migration.description, datetime.now().isoformat()))

                        logger.info(f"迁移 v{migration.version} 应用成功")

                conn.commit()
                logger.info("所有迁移应用完成")
                return True

        except Exception as e:
            logger.error(f"应用迁移失败: {e}")
            return False

    def get_current_version(self) -> int:
        """获取当前数据库版本"""
        try:
            with sqlite3.connect(self.db_path) as conn:
                applied = self.get_applied_migrations(conn)
                return max(applied) if applied else 0
        except sqlite3.Error:
            return 0


def get_database_version(db_path: Path) -> int:
    """获取数据库版本（便捷函数）"""
    manager = MigrationManager(db_path)
    return manager.get_current_version()
