"""
用户次数（额度）服务

每创建一篇文章消耗一次。扣减与文章插入在 ArticleStore.create_article
的同一个事务内完成，这里只负责查询、充值和提交前的快速检查。
匿名调用（user_id 为空）不计次数。

开发者: lazywriter 项目组
日期: 2026-10-18
"""
import logging
from typing import Optional

from lazywriter.exceptions import QuotaExceededError
from lazywriter.runtime.db import ArticleStore

logger = logging.getLogger(__name__)


class QuotaService:
    def __init__(self, store: ArticleStore):
        self.store = store

    def is_exempt(self, user_id: Optional[int]) -> bool:
        return user_id is None

    def remaining(self, user_id: int) -> int:
        """剩余次数，不存在的用户视为 0"""
        credits = self.store.get_credits(user_id)
        return credits or 0

    def grant(self, user_id: int, credits: int) -> int:
        """增加次数（购买套餐后调用），返回新的剩余次数"""
        if credits <= 0:
            raise ValueError("充值次数必须为正数")
        total = self.store.grant_credits(user_id, credits)
        logger.info(f"用户 {user_id} 增加 {credits} 次，剩余 {total} 次")
        return total

    def ensure_available(self, user_id: Optional[int]) -> None:
        """提交前检查，真正的扣减在创建文章的事务里"""
        if self.is_exempt(user_id):
            return
        if self.remaining(user_id) <= 0:
            raise QuotaExceededError(user_id)
