"""
RuleGuard ロギングシステム

ルール提案パイプライン向けのロギング設定を提供します。

機能:
- 構造化ログ出力（JSON形式）
- ファイルローテーション
- リクエストIDによるトレーシング
- 監査ログの分離（ガバナンス遷移の記録）
- パフォーマンスログ（サンプリング・ドライラン所要時間）
- セキュリティログ（ポリシーゲートでの拒否）
- 機密データの自動マスキング

使用例:
    from app.core.logging import get_logger, audit_log, security_log

    logger = get_logger(__name__)
    logger.info("ドライランを開始します", extra={"suggestion_id": "sug_001"})

    audit_log.info("apply_rule", extra={"actor": "analyst-2"})
    security_log.warning("sensitive_language", extra={"content_hash": "ab12..."})
"""

import functools
import inspect
import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from typing import Any

from .config import settings

# コンテキスト変数：リクエストIDのスレッドセーフな管理
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str:
    """
    現在のリクエストIDを取得します。

    Returns:
        str: リクエストID（未設定の場合は"no-request-id"）
    """
    return request_id_var.get() or "no-request-id"


def set_request_id(request_id: str | None = None) -> str:
    """
    リクエストIDを設定します。

    Args:
        request_id: 設定するリクエストID（Noneの場合は自動生成）

    Returns:
        str: 設定されたリクエストID
    """
    if request_id is None:
        request_id = str(uuid.uuid4())[:8]
    request_id_var.set(request_id)
    return request_id


class SensitiveDataFilter(logging.Filter):
    """
    機密データをマスキングするフィルター。

    APIキーやトークンに加え、メールアドレスもログ出力前にマスキングします。
    """

    PATTERNS = [
        (re.compile(r"sk-ant-[a-zA-Z0-9-]{10,}"), "sk-ant-***MASKED***"),
        (re.compile(r"sk-proj-[a-zA-Z0-9-]{10,}"), "sk-proj-***MASKED***"),
        (re.compile(r"sk-[a-zA-Z0-9]{20,}"), "sk-***MASKED***"),
        (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "***EMAIL***"),
        (
            re.compile(
                r'(["\']?(?:password|secret|token|api_key)["\']?\s*[:=]\s*["\']?)([^"\']{4,})(["\']?)',
                re.IGNORECASE,
            ),
            r"\1***MASKED***\3",
        ),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """機密データをマスキングします。"""
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self.mask(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            else:
                record.args = tuple(
                    self.mask(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def mask(cls, msg: str) -> str:
        """機密値をマスキングします。"""
        for pattern, replacement in cls.PATTERNS:
            msg = pattern.sub(replacement, msg)
        return msg


class RequestIdFilter(logging.Filter):
    """
    ログレコードにリクエストIDを追加するフィルター。
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON形式でログを出力するフォーマッター。

    構造化ログとして解析しやすい形式で出力します。
    """

    EXTRA_FIELDS = (
        "actor",
        "action",
        "suggestion_id",
        "rule_name",
        "content_hash",
        "provider",
        "model",
        "cached",
        "sample_size",
        "stratum",
        "duration_ms",
        "status_code",
        "method",
        "path",
        "error_code",
        "success",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "no-request-id"),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """
    コンソール出力用のカラーフォーマッター。

    開発時の可読性を向上させるため、ログレベルに応じて色分けします。
    """

    COLORS = {
        "DEBUG": "\033[36m",  # シアン
        "INFO": "\033[32m",  # 緑
        "WARNING": "\033[33m",  # 黄
        "ERROR": "\033[31m",  # 赤
        "CRITICAL": "\033[35m",  # マゼンタ
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        request_id = getattr(record, "request_id", "no-request-id")

        formatted = (
            f"{color}{record.levelname:8}{self.RESET} "
            f"[{request_id}] "
            f"{record.name}: "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def _file_handler(
    handler: logging.Handler,
    level: int,
    *filters: logging.Filter,
) -> logging.Handler:
    handler.setLevel(level)
    for f in filters:
        handler.addFilter(f)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging() -> None:
    """
    アプリケーション全体のロギングを設定します。

    以下のロガーを設定:
    - ルートロガー: コンソール + ローテーションファイル + エラーファイル
    - ruleguard.audit: ガバナンス遷移・提案の監査ログ（日次ローテーション）
    - ruleguard.performance: サンプリング・ドライラン・生成の所要時間
    - ruleguard.security: ポリシーゲートでの拒否
    """
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    request_id_filter = RequestIdFilter()
    sensitive_data_filter = SensitiveDataFilter()

    # ========================================
    # コンソールハンドラ
    # ========================================
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(request_id_filter)
    console_handler.addFilter(sensitive_data_filter)
    if settings.debug:
        console_handler.setFormatter(ColoredFormatter())
    else:
        console_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(console_handler)

    # ========================================
    # メイン・エラーログファイル
    # ========================================
    root_logger.addHandler(
        _file_handler(
            RotatingFileHandler(
                filename=log_dir / "ruleguard.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=10,
                encoding="utf-8",
            ),
            log_level,
            request_id_filter,
            sensitive_data_filter,
        )
    )
    root_logger.addHandler(
        _file_handler(
            RotatingFileHandler(
                filename=log_dir / "ruleguard_error.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=10,
                encoding="utf-8",
            ),
            logging.ERROR,
            request_id_filter,
            sensitive_data_filter,
        )
    )

    # ========================================
    # 監査ログ（日次ローテーション）
    # ========================================
    audit_logger = logging.getLogger("ruleguard.audit")
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False  # 親ロガーに伝播しない
    audit_logger.handlers.clear()
    audit_logger.addHandler(
        _file_handler(
            TimedRotatingFileHandler(
                filename=log_dir / "ruleguard_audit.log",
                when="midnight",
                interval=1,
                backupCount=90,  # 90日間保持
                encoding="utf-8",
            ),
            logging.INFO,
            request_id_filter,
        )
    )

    # ========================================
    # パフォーマンスログ
    # ========================================
    perf_logger = logging.getLogger("ruleguard.performance")
    perf_logger.setLevel(logging.INFO)
    perf_logger.propagate = False
    perf_logger.handlers.clear()
    perf_logger.addHandler(
        _file_handler(
            RotatingFileHandler(
                filename=log_dir / "ruleguard_performance.log",
                maxBytes=50 * 1024 * 1024,  # 50MB
                backupCount=5,
                encoding="utf-8",
            ),
            logging.INFO,
            request_id_filter,
        )
    )

    # ========================================
    # セキュリティログ（日次ローテーション）
    # ========================================
    sec_logger = logging.getLogger("ruleguard.security")
    sec_logger.setLevel(logging.INFO)
    sec_logger.propagate = False
    sec_logger.handlers.clear()
    sec_logger.addHandler(
        _file_handler(
            TimedRotatingFileHandler(
                filename=log_dir / "ruleguard_security.log",
                when="midnight",
                interval=1,
                backupCount=365,  # 1年間保持
                encoding="utf-8",
            ),
            logging.INFO,
            request_id_filter,
            sensitive_data_filter,
        )
    )

    # サードパーティライブラリのログレベルを調整
    for noisy in ("uvicorn", "uvicorn.access", "httpx", "httpcore", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    指定した名前のロガーを取得します。

    Args:
        name: ロガー名（通常は __name__ を使用）
    """
    return logging.getLogger(name)


# 特殊用途ロガーのエイリアス
audit_log = logging.getLogger("ruleguard.audit")
perf_log = logging.getLogger("ruleguard.performance")
security_log = logging.getLogger("ruleguard.security")


class LogContext:
    """
    処理の開始・終了と所要時間を自動的にログ出力するコンテキストマネージャー。

    使用例:
        with LogContext(logger, "ドライラン", suggestion_id="sug_001") as ctx:
            report = engine.run(rule, sample)
        ctx.duration_ms
    """

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        level: int = logging.INFO,
        **context: Any,
    ):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.context = context
        self.start_time: datetime | None = None
        self.duration_ms: float = 0.0

    def __enter__(self) -> "LogContext":
        self.start_time = datetime.now()
        self.logger.log(self.level, f"{self.operation} を開始します", extra=self.context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.duration_ms = (datetime.now() - self.start_time).total_seconds() * 1000

        if exc_type is not None:
            self.logger.warning(
                f"{self.operation} が失敗しました: {exc_val}",
                extra={**self.context, "duration_ms": self.duration_ms},
            )
        else:
            self.logger.log(
                self.level,
                f"{self.operation} が完了しました",
                extra={**self.context, "duration_ms": self.duration_ms},
            )

        perf_log.info(
            self.operation,
            extra={
                **self.context,
                "duration_ms": self.duration_ms,
                "success": exc_type is None,
            },
        )


def log_function_call(logger: logging.Logger):
    """
    関数呼び出しと所要時間をDEBUGレベルで出力するデコレーター。

    使用例:
        @log_function_call(logger)
        def expire_stale(self, now=None) -> list[str]:
            ...
    """

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = datetime.now()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (datetime.now() - start_time).total_seconds() * 1000
                logger.debug(
                    f"{func.__name__} でエラーが発生しました: {e}",
                    extra={"duration_ms": duration_ms},
                )
                raise
            duration_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.debug(f"{func.__name__} が完了しました", extra={"duration_ms": duration_ms})
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = datetime.now()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration_ms = (datetime.now() - start_time).total_seconds() * 1000
                logger.debug(
                    f"{func.__name__} でエラーが発生しました: {e}",
                    extra={"duration_ms": duration_ms},
                )
                raise
            duration_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.debug(f"{func.__name__} が完了しました", extra={"duration_ms": duration_ms})
            return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
