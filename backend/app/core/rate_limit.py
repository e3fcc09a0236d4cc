"""
生成呼び出しのレート制限

呼び出し元（作成者ID）ごとにスライディングウィンドウ方式で
ルール生成リクエスト数を制限します。

状態はプロセス内のメモリにのみ保持されます。複数インスタンス構成では
インスタンスごとに独立したカウンタとなり、あくまで外部APIの保護用です。
"""

import time
from threading import Lock

from app.core.config import settings


class RateLimiter:
    """
    スライディングウィンドウ方式のレート制限。

    メモリ内でリクエスト履歴を管理し、
    設定されたウィンドウ内のリクエスト数を制限します。
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: dict[str, list[float]] = {}
        self.lock = Lock()
        self._last_purge = time.time()

    def is_allowed(self, client_id: str) -> bool:
        """
        リクエストが許可されるかどうかを判定し、許可された場合は記録します。

        Args:
            client_id: 呼び出し元識別子（作成者ID）

        Returns:
            bool: 許可される場合True
        """
        now = time.time()
        window_start = now - self.window_seconds

        with self.lock:
            # ウィンドウごとに一度、アイドルな呼び出し元をまとめて削除
            if now - self._last_purge >= self.window_seconds:
                self._purge_idle_locked(window_start)
                self._last_purge = now

            # 古いリクエストを削除
            history = [ts for ts in self.requests.get(client_id, []) if ts > window_start]

            if len(history) >= self.max_requests:
                self.requests[client_id] = history
                return False

            history.append(now)
            self.requests[client_id] = history
            return True

    def purge_idle(self) -> int:
        """
        ウィンドウ内にリクエストが残っていない呼び出し元を削除します。

        Returns:
            int: 削除した呼び出し元の数
        """
        window_start = time.time() - self.window_seconds
        with self.lock:
            return self._purge_idle_locked(window_start)

    def _purge_idle_locked(self, window_start: float) -> int:
        idle = [
            client_id
            for client_id, history in self.requests.items()
            if not history or history[-1] <= window_start
        ]
        for client_id in idle:
            del self.requests[client_id]
        return len(idle)

    def get_remaining(self, client_id: str) -> int:
        """残りリクエスト数を取得"""
        window_start = time.time() - self.window_seconds

        with self.lock:
            current_count = len(
                [ts for ts in self.requests.get(client_id, []) if ts > window_start]
            )
            return max(0, self.max_requests - current_count)

    def get_reset_time(self, client_id: str) -> int:
        """次の枠が空くまでの秒数を取得"""
        with self.lock:
            history = self.requests.get(client_id)
            if not history:
                return 0
            oldest = min(history)
        return max(0, int(oldest + self.window_seconds - time.time()) + 1)

    def reset(self) -> None:
        """全ての履歴を破棄します。"""
        with self.lock:
            self.requests.clear()


# 生成呼び出し用のグローバルレートリミッター
generation_rate_limiter = RateLimiter(
    max_requests=settings.generation_requests_per_minute,
    window_seconds=60,
)
