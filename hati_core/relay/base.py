"""relay 公共部件：会话级互斥、上游迭代辅助函数。"""

from typing import AsyncIterator, Callable, Optional, Set, TypeVar

from hati_core.domain.exceptions import ConflictError

T = TypeVar("T")


class ConversationLocks:
    """记录有进行中流式回答的会话。

    同一会话同一时间只允许一个 StreamSession；第二个发送请求在任何持久化
    之前就被拒绝（409）。所有调用都在同一个事件循环里、检查与登记之间没有
    await，所以不需要真正的锁对象。
    """

    def __init__(self):
        self._active: Set[int] = set()

    def acquire(self, conversation_id: int) -> None:
        if conversation_id in self._active:
            raise ConflictError(
                code="STREAM_IN_PROGRESS",
                message=f"Conversation {conversation_id} already has a response in progress",
            )
        self._active.add(conversation_id)

    def release(self, conversation_id: int) -> None:
        self._active.discard(conversation_id)

    def is_active(self, conversation_id: int) -> bool:
        return conversation_id in self._active


async def next_or_none(upstream: AsyncIterator[T]) -> Optional[T]:
    """取上游的下一项，结束时返回 None。"""

    try:
        return await upstream.__anext__()
    except StopAsyncIteration:
        return None


async def prime(upstream: AsyncIterator[T], has_output: Callable[[T], bool]) -> Optional[T]:
    """拉取上游直到第一条会产生输出的增量。

    在返回给调用方之前完成连接和状态码检查，这一阶段的异常会让整个调用失败，
    而不是变成流内的错误事件。
    """

    while True:
        item = await next_or_none(upstream)
        if item is None or has_output(item):
            return item


async def close_upstream(upstream: AsyncIterator) -> None:
    aclose = getattr(upstream, "aclose", None)
    if aclose is not None:
        await aclose()
