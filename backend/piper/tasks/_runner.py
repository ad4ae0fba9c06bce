"""任务内运行异步代码"""

import asyncio
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.database import async_session_maker, engine


def run_with_session(func: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
    """
    在新事件循环中以独立会话执行 func

    每次执行后释放连接池，连接不会跨事件循环复用
    """
    async def runner():
        try:
            async with async_session_maker() as db:
                return await func(db)
        finally:
            await engine.dispose()

    return asyncio.run(runner())
