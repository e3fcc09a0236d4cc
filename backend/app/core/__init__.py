"""
RuleGuard コアモジュール

アプリケーション全体で使用される基盤機能を提供します。

モジュール:
- config: 設定管理（環境変数、.env）
- logging: ロギングシステム（構造化ログ、監査ログ）
- exceptions: カスタム例外クラス
- cache: 生成結果のTTLキャッシュ
- rate_limit: 呼び出し元ごとのレート制限
"""

from app.core.config import settings
from app.core.exceptions import (
    CatalogViolationError,
    DatabaseError,
    GenerationFailure,
    GenerationRateLimitError,
    GenerationTimeoutError,
    GovernanceViolationError,
    InvalidInputError,
    MalformedGenerationError,
    PolicyViolationError,
    ResourceNotFoundError,
    RuleGuardException,
    SampleUnavailableError,
    StructuralError,
    ValidationError,
)
from app.core.logging import (
    LogContext,
    audit_log,
    get_logger,
    get_request_id,
    log_function_call,
    perf_log,
    security_log,
    set_request_id,
    setup_logging,
)

__all__ = [
    # 設定
    "settings",
    # ロギング
    "setup_logging",
    "get_logger",
    "audit_log",
    "perf_log",
    "security_log",
    "get_request_id",
    "set_request_id",
    "LogContext",
    "log_function_call",
    # 例外
    "RuleGuardException",
    "ValidationError",
    "InvalidInputError",
    "StructuralError",
    "CatalogViolationError",
    "PolicyViolationError",
    "GenerationFailure",
    "GenerationTimeoutError",
    "GenerationRateLimitError",
    "MalformedGenerationError",
    "GovernanceViolationError",
    "SampleUnavailableError",
    "DatabaseError",
    "ResourceNotFoundError",
]
