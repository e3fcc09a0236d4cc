"""
RuleGuard FastAPI Application Entry Point

RuleGuardアプリケーションのメインエントリーポイントです。

機能:
- FastAPIアプリケーションの作成と設定
- ミドルウェアの設定（CORS、ロギング、エラーハンドリング）
- データベースの初期化
- 期限切れ提案のバックグラウンドスイープ
- APIルーターの登録

使用方法:
    開発環境:
        uvicorn app.main:app --reload --log-level debug

    本番環境:
        uvicorn app.main:app --workers 4 --host 0.0.0.0 --port 8001
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import router as api_router
from app.core.cache import generation_cache
from app.core.config import settings
from app.core.logging import audit_log, get_logger, setup_logging
from app.core.middleware import setup_middleware
from app.db import get_db, sqlite_manager
from app.services.governance import ExpirySweeper, GovernanceService

# ロギングシステムを初期化
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    アプリケーションのライフサイクル管理。

    起動時にスキーマを初期化して期限切れスイープを開始し、
    シャットダウン時にスイープを停止します。

    Args:
        app: FastAPIアプリケーションインスタンス

    Yields:
        None: アプリケーション実行期間
    """
    startup_time = datetime.now(UTC)
    logger.info(
        f"{settings.app_name} v{settings.app_version} を起動します",
        extra={"environment": settings.environment},
    )

    audit_log.info(
        "アプリケーション起動",
        extra={
            "event_type": "application_startup",
            "app_version": settings.app_version,
            "environment": settings.environment,
        },
    )

    settings.ensure_data_dir()
    logger.info(f"データディレクトリ: {settings.data_dir}")

    # データベースの初期化（失敗時は起動を中止）
    get_db().initialize_schema()
    logger.info(f"DuckDB スキーマを初期化しました: {settings.duckdb_path}")
    sqlite_manager.initialize_schema()
    logger.info(f"SQLite スキーマを初期化しました: {settings.sqlite_path}")

    sweeper = ExpirySweeper(GovernanceService(db=sqlite_manager))
    sweeper.run_once()
    sweeper.start()
    app.state.expiry_sweeper = sweeper

    startup_duration = (datetime.now(UTC) - startup_time).total_seconds()
    logger.info(
        f"{settings.app_name} の起動が完了しました",
        extra={"startup_duration_seconds": startup_duration},
    )

    yield

    logger.info(f"{settings.app_name} をシャットダウンします...")
    sweeper.stop()
    generation_cache.clear()

    audit_log.info(
        "アプリケーションシャットダウン",
        extra={"event_type": "application_shutdown"},
    )
    logger.info(f"{settings.app_name} のシャットダウンが完了しました")


def create_app() -> FastAPI:
    """
    FastAPIアプリケーションを作成・設定します。

    Returns:
        FastAPI: 設定済みのFastAPIアプリケーションインスタンス
    """
    app = FastAPI(
        title=settings.app_name,
        description="""
        # RuleGuard - Fraud rule safety and impact analysis

        自然言語の指示から不正検知ルールを生成し、本番投入前に検証します。

        ## 主な機能

        - **ルール生成**: LLMのツール呼び出しによる構造化ルール生成
        - **検証**: 特徴量カタログとポリシーゲートによる二段階検証
        - **影響分析**: 層化サンプルでのドライランと既存ルールとの重複分析
        - **ガバナンス**: 二者承認・有効期限・監査証跡

        ## APIバージョン

        現在のAPIバージョン: v1
        """,
        version=settings.app_version,
        lifespan=lifespan,
        # 本番環境ではSwagger UIを無効化
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    cors_origins = [
        "http://localhost:5290",
        "http://127.0.0.1:5290",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-Ms", "Retry-After"],
    )
    logger.debug(f"CORSミドルウェアを設定しました: {cors_origins}")

    setup_middleware(app)

    app.include_router(api_router, prefix="/api/v1")
    logger.debug("APIルーターを登録しました: /api/v1")

    @app.get("/health", tags=["System"])
    async def health_check() -> dict:
        return {
            "status": "healthy",
            "app": settings.app_name,
            "version": settings.app_version,
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }

    @app.get("/", tags=["System"])
    async def root() -> dict:
        return {
            "name": settings.app_name,
            "description": "不正検知ルールの安全性・影響分析パイプライン",
            "version": settings.app_version,
            "docs_url": "/docs" if settings.debug else None,
            "api_url": "/api/v1",
        }

    logger.info("FastAPIアプリケーションの作成が完了しました")

    return app


# アプリケーションインスタンス
app = create_app()
