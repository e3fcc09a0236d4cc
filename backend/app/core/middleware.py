"""
RuleGuard ミドルウェア

FastAPIアプリケーションに適用するミドルウェアと例外ハンドラを定義します。

機能:
- リクエストID生成・伝播
- リクエスト/レスポンスロギング
- ルール操作APIの監査ログ
- セキュリティヘッダー
- RuleGuard例外のJSON変換

使用例:
    from fastapi import FastAPI
    from app.core.middleware import setup_middleware

    app = FastAPI()
    setup_middleware(app)
"""

import re
import time
import traceback
from collections.abc import Callable
from datetime import UTC, datetime

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.exceptions import RuleGuardException
from app.core.logging import (
    audit_log,
    get_logger,
    get_request_id,
    perf_log,
    set_request_id,
)

logger = get_logger(__name__)


# セキュリティヘッダー
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


def _timestamp() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    セキュリティヘッダーを追加するミドルウェア。

    提案内容には取引データの抜粋が含まれるため、キャッシュも禁止します。
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    リクエスト/レスポンスをログ出力するミドルウェア。

    全てのHTTPリクエストとレスポンスを記録し、
    リクエストIDによるトレーサビリティを提供します。
    監査証跡にも同じリクエストIDが記録されます。
    """

    # ヘルスチェックはDEBUGレベルでのみ記録
    QUIET_PATHS = frozenset({"/health", "/api/v1/health"})

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        リクエストを処理し、ログを出力します。

        Args:
            request: HTTPリクエスト
            call_next: 次のミドルウェア/ハンドラ

        Returns:
            Response: HTTPレスポンス
        """
        # リクエストIDを設定（ヘッダーから取得または生成）
        request_id = set_request_id(request.headers.get("X-Request-ID"))

        start_time = time.time()
        method = request.method
        path = request.url.path

        quiet = path in self.QUIET_PATHS
        start_level = logger.debug if quiet else logger.info
        start_level(
            f"リクエスト開始: {method} {path}",
            extra={"method": method, "path": path},
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"予期しないエラー: {e}",
                exc_info=True,
                extra={"method": method, "path": path},
            )
            raise

        status_code = response.status_code
        duration_ms = (time.time() - start_time) * 1000

        # レスポンスにリクエストIDヘッダーを追加
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-Ms"] = f"{duration_ms:.2f}"

        if status_code >= 400:
            log_level = logger.warning
        else:
            log_level = logger.debug if quiet else logger.info
        log_level(
            f"リクエスト完了: {method} {path} -> {status_code}",
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": duration_ms,
            },
        )

        perf_log.info(
            f"HTTP {method} {path}",
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": duration_ms,
            },
        )

        return response


class AuditLogMiddleware(BaseHTTPMiddleware):
    """
    監査ログを出力するミドルウェア。

    ルールの提案・承認・却下などの変更系リクエストを監査ログに記録します。
    業務上の監査証跡（audit_trail テーブル）はサービス層が書き込みます。
    """

    AUDIT_PREFIX = "/api/v1/rules"
    AUDIT_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
    # /suggestions/{id}/approve, /active/{rule_id}/enabled など
    TARGET_PATTERN = re.compile(
        r"/(?P<kind>suggestions|active)/(?P<target>[^/]+)/(?P<operation>[a-z-]+)$"
    )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        method = request.method

        should_audit = method in self.AUDIT_METHODS and path.startswith(self.AUDIT_PREFIX)

        response = await call_next(request)

        if should_audit:
            extra = {
                "action": "api_request",
                "method": method,
                "path": path,
                "status_code": response.status_code,
            }
            match = self.TARGET_PATTERN.search(path)
            if match:
                key = "suggestion_id" if match["kind"] == "suggestions" else "rule_id"
                extra[key] = match["target"]
                extra["operation"] = match["operation"]
            audit_log.info(
                f"監査対象レスポンス: {method} {path} -> {response.status_code}",
                extra=extra,
            )

        return response


async def ruleguard_exception_handler(
    request: Request, exc: RuleGuardException
) -> JSONResponse:
    """
    RuleGuard例外をJSONレスポンスに変換するハンドラ。

    Args:
        request: HTTPリクエスト
        exc: RuleGuard例外

    Returns:
        JSONResponse: エラー情報を含むJSONレスポンス
    """
    request_id = get_request_id()

    log_level = logger.error if exc.http_status_code >= 500 else logger.warning
    log_level(
        f"{type(exc).__name__}: {exc.message}",
        extra={"error_code": exc.error_code, "status_code": exc.http_status_code},
    )

    headers = {"X-Request-ID": request_id}
    retry_after = exc.detail.get("retry_after_seconds")
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)

    return JSONResponse(
        status_code=exc.http_status_code,
        content={
            "success": False,
            "error": exc.to_dict(),
            "meta": {
                "request_id": request_id,
                "timestamp": _timestamp(),
            },
        },
        headers=headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    一般的な例外をJSONレスポンスに変換するハンドラ。

    Args:
        request: HTTPリクエスト
        exc: 例外

    Returns:
        JSONResponse: エラー情報を含むJSONレスポンス
    """
    request_id = get_request_id()

    logger.error(f"Unhandled Exception: {exc}", exc_info=True)

    # 本番環境ではスタックトレースを隠す
    if settings.debug:
        detail = {
            "exception_type": type(exc).__name__,
            "traceback": traceback.format_exc(),
        }
    else:
        detail = {}

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "error_code": "INTERNAL_ERROR",
                "message": str(exc) if settings.debug else "内部エラーが発生しました",
                "detail": detail,
            },
            "meta": {
                "request_id": request_id,
                "timestamp": _timestamp(),
            },
        },
        headers={"X-Request-ID": request_id},
    )


def setup_middleware(app: FastAPI) -> None:
    """
    FastAPIアプリケーションにミドルウェアを設定します。

    ミドルウェアは登録順とは逆順に実行されます。

    実行順序（リクエスト時）:
    1. SecurityHeadersMiddleware - セキュリティヘッダー
    2. RequestLoggingMiddleware - リクエストログ
    3. AuditLogMiddleware - 監査ログ

    Args:
        app: FastAPIアプリケーションインスタンス
    """
    app.add_middleware(AuditLogMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    # 例外ハンドラを登録
    app.add_exception_handler(RuleGuardException, ruleguard_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("ミドルウェアを設定しました")
