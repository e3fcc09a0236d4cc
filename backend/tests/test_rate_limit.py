"""レート制限のテスト"""

from unittest.mock import patch

from app.core.rate_limit import RateLimiter


class TestRateLimiter:
    """スライディングウィンドウのテスト"""

    def test_allows_up_to_limit(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60)
        assert [limiter.is_allowed("alice") for _ in range(4)] == [True, True, True, False]

    def test_per_client(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        assert limiter.is_allowed("alice")
        assert not limiter.is_allowed("alice")
        assert limiter.is_allowed("bob")

    def test_rejected_requests_not_recorded(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_allowed("alice")
        limiter.is_allowed("alice")
        assert len(limiter.requests["alice"]) == 1

    def test_window_slides(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        with patch("app.core.rate_limit.time") as mock_time:
            mock_time.time.return_value = 100.0
            assert limiter.is_allowed("alice")
            mock_time.time.return_value = 130.0
            assert limiter.is_allowed("alice")
            assert not limiter.is_allowed("alice")
            mock_time.time.return_value = 161.0
            assert limiter.is_allowed("alice")

    def test_remaining(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60)
        assert limiter.get_remaining("alice") == 3
        limiter.is_allowed("alice")
        assert limiter.get_remaining("alice") == 2

    def test_reset_time(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        assert limiter.get_reset_time("alice") == 0
        with patch("app.core.rate_limit.time") as mock_time:
            mock_time.time.return_value = 100.0
            limiter.is_allowed("alice")
            mock_time.time.return_value = 130.0
            assert limiter.get_reset_time("alice") == 31

    def test_reset(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_allowed("alice")
        limiter.reset()
        assert limiter.is_allowed("alice")

    def test_idle_callers_evicted(self):
        """ウィンドウを過ぎたアイドルな呼び出し元は保持し続けない"""
        with patch("app.core.rate_limit.time") as mock_time:
            mock_time.time.return_value = 100.0
            limiter = RateLimiter(max_requests=5, window_seconds=60)
            for idx in range(1000):
                assert limiter.is_allowed(f"author-{idx}")
            assert len(limiter.requests) == 1000

            mock_time.time.return_value = 100.0 + 3600
            assert limiter.is_allowed("late-author")

        assert list(limiter.requests) == ["late-author"]

    def test_purge_idle(self):
        with patch("app.core.rate_limit.time") as mock_time:
            mock_time.time.return_value = 100.0
            limiter = RateLimiter(max_requests=5, window_seconds=60)
            limiter.is_allowed("alice")
            mock_time.time.return_value = 150.0
            limiter.is_allowed("bob")

            mock_time.time.return_value = 170.0
            assert limiter.purge_idle() == 1
            assert list(limiter.requests) == ["bob"]
            assert limiter.get_remaining("alice") == 5
