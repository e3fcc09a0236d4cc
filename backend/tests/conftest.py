"""
RuleGuard テスト用共通フィクスチャ

pytest用の共通フィクスチャとヘルパー関数を提供します。
"""

import atexit
import json
import os
import shutil
import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import polars as pl
import pytest
from fastapi.testclient import TestClient

# テスト用環境変数（モジュールレベルで設定 - settings = Settings() より前に必要）
_test_data_dir = tempfile.mkdtemp(prefix="ruleguard_test_")
atexit.register(shutil.rmtree, _test_data_dir, ignore_errors=True)

os.environ["DEBUG"] = "true"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["DATA_DIR"] = _test_data_dir
os.environ["DUCKDB_PATH"] = str(Path(_test_data_dir) / "test.duckdb")
os.environ["SQLITE_PATH"] = str(Path(_test_data_dir) / "test.db")
os.environ["LOG_DIR"] = str(Path(_test_data_dir) / "logs")
os.environ["LLM_PROVIDER"] = "openai"
os.environ["LLM_MODEL"] = "gpt-4o-mini"

# 固定の基準時刻（サンプリングの recent 層の判定に使用）
AS_OF = datetime(2025, 3, 14, 12, 0, 0)

HIGH_AMOUNT_MOBILE_RULE = {
    "ruleset_name": "high-amount-mobile-review",
    "description": "Review high value transactions from mobile devices",
    "decision": "review",
    "category": "high_risk",
    "conditions": [
        {"field": "amount", "op": ">", "value": 10000},
        {"field": "device", "op": "==", "value": "mobile"},
    ],
}


@pytest.fixture(scope="session")
def temp_data_dir() -> Generator[Path, None, None]:
    """
    テスト用の一時データディレクトリを作成します。

    Yields:
        Path: 一時ディレクトリパス
    """
    yield Path(_test_data_dir)


@pytest.fixture(scope="session")
def app():
    """
    テスト用のFastAPIアプリケーションを作成します。
    """
    from app.main import create_app

    return create_app()


@pytest.fixture(autouse=True)
def _reset_generation_state():
    """テスト毎に生成キャッシュとレートリミッターをリセットします。"""
    from app.core.cache import generation_cache
    from app.core.rate_limit import generation_rate_limiter

    generation_cache.clear()
    generation_rate_limiter.reset()
    yield
    generation_cache.clear()
    generation_rate_limiter.reset()


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """
    テスト用のHTTPクライアントを作成します。
    Context managerでlifespanイベントを起動します。

    Yields:
        TestClient: FastAPIテストクライアント
    """
    with TestClient(app) as c:
        yield c


# ========================================
# データベース
# ========================================


@pytest.fixture
def sqlite_db(tmp_path):
    """スキーマ初期化済みのテスト用SQLiteマネージャー"""
    from app.db import SQLiteManager

    db = SQLiteManager(db_path=tmp_path / "meta.db")
    db.initialize_schema()
    return db


@pytest.fixture
def duck_db(tmp_path):
    """スキーマ初期化済みのテスト用DuckDBマネージャー（レコード0件）"""
    from app.db import DuckDBManager

    db = DuckDBManager(db_path=tmp_path / "records.duckdb")
    db.initialize_schema()
    yield db
    db.close()


@pytest.fixture
def sample_transactions() -> pl.DataFrame:
    """
    テスト用の取引データを生成します。

    層別サンプリングの各層に該当するレコードを含みます。

    Returns:
        pl.DataFrame: 取引データ（20件）
    """
    rows = []
    for i in range(20):
        rows.append(
            {
                "txn_id": f"txn_{i:03d}",
                # 10件は直近、10件は60日以上前
                "timestamp": AS_OF - timedelta(days=i if i < 10 else 60 + i, hours=1),
                "amount": [12000.0, 15000.0, 500.0, 7500.0, 25.0][i % 5],
                "hour": [10, 14, 2, 20, 11][i % 5],
                "device": ["mobile", "web", "mobile", "tablet", "web"][i % 5],
                "agent_id": "openai" if i % 4 == 0 else None,
                "partner": ["stripe", "paypal", "adyen", "square"][i % 4],
                "intent": "purchase",
                "decision": "block" if i == 5 else "allow",
                "flagged": i in (3, 15),
                "disputed": i == 17,
                "declined": False,
                "account_age_days": i * 30,
                "is_first_transaction": i % 7 == 0,
                "seller_name": f"Seller {i}",
            }
        )
    return pl.DataFrame(rows)


@pytest.fixture
def seeded_duck_db(duck_db, sample_transactions):
    """取引データを投入済みのDuckDBマネージャー"""
    from app.services.impact import RecordStore

    RecordStore(duck_db).load_records(sample_transactions)
    return duck_db


# ========================================
# ルール生成（LLMクライアントのテストダブル）
# ========================================


def openai_tool_response(arguments: dict | str | None, model: str = "gpt-4o-mini"):
    """OpenAI chat.completions のツール呼び出し応答を模倣します。"""
    if arguments is None:
        tool_calls = None
    else:
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        tool_calls = [
            SimpleNamespace(
                function=SimpleNamespace(name="generate_fraud_rule", arguments=raw)
            )
        ]
    return SimpleNamespace(
        model=model,
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content="Here is a rule", tool_calls=tool_calls)
            )
        ],
        usage=SimpleNamespace(prompt_tokens=120, completion_tokens=80),
    )


def make_openai_client(arguments: dict | str | None = None) -> MagicMock:
    """指定した引数でツール呼び出しを返すクライアント"""
    client = MagicMock()
    client.chat.completions.create.return_value = openai_tool_response(
        HIGH_AMOUNT_MOBILE_RULE if arguments is None else arguments
    )
    return client


@pytest.fixture
def fake_client() -> MagicMock:
    return make_openai_client()


@pytest.fixture
def make_generator(sqlite_db):
    """テストダブルを注入した RuleGenerationService のファクトリ"""
    from app.core.cache import TTLCache
    from app.core.rate_limit import RateLimiter
    from app.services.llm import LLMConfig, RuleGenerationService

    def _make(client, max_requests: int = 100, timeout: float = 5.0):
        return RuleGenerationService(
            config=LLMConfig(provider="openai", model="gpt-4o-mini", timeout=timeout),
            client=client,
            db=sqlite_db,
            cache=TTLCache(max_size=16, ttl_seconds=60),
            rate_limiter=RateLimiter(max_requests=max_requests, window_seconds=60),
        )

    return _make


# ========================================
# ガバナンス
# ========================================


@pytest.fixture
def governance(sqlite_db):
    from app.services.governance import GovernanceService

    return GovernanceService(db=sqlite_db)


@pytest.fixture
def make_suggestion(governance):
    """検証済みルールから保留中の提案を作成するファクトリ"""
    from app.services.rules import Rule, ValidationResult

    def _make(author_id: str = "alice", rule: dict | None = None, now: datetime | None = None):
        return governance.create(
            instruction="Review large mobile transactions",
            instruction_hash="hash-" + author_id,
            rule=Rule.from_dict(rule or HIGH_AMOUNT_MOBILE_RULE),
            validation=ValidationResult(),
            violations=[],
            author_id=author_id,
            impact_report={"match_count": 4, "sample_size": 20},
            now=now,
        )

    return _make


@pytest.fixture
def pipeline(governance, seeded_duck_db, make_generator, fake_client):
    """データ投入済みストアとテストダブルで構成したパイプライン"""
    from app.services.impact import DryRunEngine, StratifiedSampler
    from app.services.suggestion_service import SuggestionPipeline

    return SuggestionPipeline(
        generator=make_generator(fake_client),
        sampler=StratifiedSampler(seeded_duck_db, max_workers=2),
        engine=DryRunEngine(),
        governance=governance,
    )


# ========================================
# ヘルパー関数
# ========================================


def assert_api_error(response, expected_status: int = 400, expected_code: str = None):
    """
    APIレスポンスがエラーであることを確認します。

    Args:
        response: HTTPレスポンス
        expected_status: 期待するHTTPステータスコード
        expected_code: 期待するエラーコード
    """
    assert response.status_code == expected_status, (
        f"Expected {expected_status}, got {response.status_code}: {response.text}"
    )
    data = response.json()
    assert data["success"] is False

    if expected_code:
        assert data["error"]["error_code"] == expected_code
    return data
