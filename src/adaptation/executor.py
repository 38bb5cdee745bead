# アクション実行プール
"""
ActionExecutor: アクションを上限付きの並行度でワーカースレッドに渡す

asyncio.Semaphore で同時実行数を max_workers に制限し、各アクションを
asyncio.to_thread で実行する。複数の評価パスが同時に走っても
実行中のアクションは max_workers を超えない。
"""

import asyncio
from typing import Any, Callable, Optional, TypeVar

from src.models.errors import ConfigurationError

T = TypeVar("T")


class ActionExecutor:
    """上限付きアクション実行プール

    Attributes:
        max_workers: 同時実行数の上限
    """

    def __init__(self, max_workers: int = 4):
        if max_workers <= 0:
            raise ConfigurationError(f"max_workers must be positive, got {max_workers}")
        self.max_workers = max_workers
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._in_flight = 0
        self._peak = 0

    @property
    def in_flight(self) -> int:
        """実行中のアクション数"""
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """これまでの最大同時実行数"""
        return self._peak

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """fn(*args) をワーカースレッドで実行して結果を返す

        fn が送出した例外はそのまま呼び出し側に伝播する。
        """
        if self._semaphore is None:
            # イベントループ上で遅延生成する
            self._semaphore = asyncio.Semaphore(self.max_workers)

        async with self._semaphore:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
            try:
                return await asyncio.to_thread(fn, *args)
            finally:
                self._in_flight -= 1
