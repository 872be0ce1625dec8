import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, TypeVar

from kb_chat.exception.custom_exception import TransientServiceError

T = TypeVar("T")

IO_POOL_VAL = ThreadPoolExecutor(max_workers=16)


def run_sync(func, *args, **kwargs):
    """
    Run blocking / CPU-heavy / IO-heavy code off the current event loop.
    This is crucial for:
    - FAISS index build and search
    - LangChain chat model calls
    - PDF parsing and page downloads
    """
    loop = asyncio.get_running_loop()
    return loop.run_in_executor(IO_POOL_VAL, lambda: func(*args, **kwargs))


async def with_timeout(awaitable: Awaitable[T], seconds: float | None, what: str) -> T:
    """
    Await with an upper bound. A timeout becomes a TransientServiceError so the
    partial-failure policies upstream treat it like any other failed call.
    """
    if not seconds:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise TransientServiceError(f"{what} timed out after {seconds}s", e) from e
