"""分页工具"""

from dataclasses import dataclass
from typing import Any, Generic, List, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")

MAX_PAGE_SIZE = 100


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def meta(self) -> dict:
        return {"page": self.page, "limit": self.limit, "total": self.total, "pages": self.pages}


async def paginate(db: AsyncSession, stmt: Select, page: int = 1, limit: int = 20) -> Page[Any]:
    """对查询分页（page 从 1 开始）"""
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    total = await db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
    result = await db.execute(stmt.limit(limit).offset((page - 1) * limit))
    return Page(items=list(result.scalars().all()), total=total or 0, page=page, limit=limit)
