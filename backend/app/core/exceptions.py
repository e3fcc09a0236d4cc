"""
RuleGuard カスタム例外クラス

ルール提案パイプライン全体で使用する例外クラスを定義します。

例外の階層:
    RuleGuardException (基底クラス)
    ├── ValidationError
    │   ├── InvalidInputError
    │   ├── StructuralError
    │   ├── CatalogViolationError
    │   └── PolicyViolationError
    ├── GenerationFailure
    │   ├── GenerationTimeoutError
    │   ├── GenerationRateLimitError
    │   └── MalformedGenerationError
    ├── GovernanceViolationError
    ├── SampleUnavailableError
    ├── DatabaseError
    └── ResourceNotFoundError

使用例:
    from app.core.exceptions import StructuralError

    if not result.valid:
        raise StructuralError(
            message="ルール構造が不正です",
            errors=[issue.to_dict() for issue in result.errors],
        )
"""

from typing import Any


class RuleGuardException(Exception):
    """
    RuleGuard基底例外クラス。

    全てのRuleGuard固有の例外はこのクラスを継承します。

    Attributes:
        message: エラーメッセージ
        error_code: エラーコード（API応答用）
        detail: 追加の詳細情報
        http_status_code: HTTPステータスコード
    """

    error_code: str = "RULEGUARD_ERROR"
    http_status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        detail: dict[str, Any] | None = None,
        http_status_code: int | None = None,
    ):
        """
        例外を初期化します。

        Args:
            message: エラーメッセージ
            error_code: エラーコード（省略時はクラスのデフォルト）
            detail: 追加の詳細情報
            http_status_code: HTTPステータスコード（省略時はクラスのデフォルト）
        """
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if http_status_code:
            self.http_status_code = http_status_code
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        """
        例外をAPI応答用の辞書形式に変換します。

        Returns:
            dict: エラー情報を含む辞書
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "detail": self.detail,
        }

    def __str__(self) -> str:
        """文字列表現を返します。"""
        if self.detail:
            return f"[{self.error_code}] {self.message} - {self.detail}"
        return f"[{self.error_code}] {self.message}"


# ========================================
# バリデーション関連の例外
# ========================================


class ValidationError(RuleGuardException):
    """バリデーションエラーの基底クラス。"""

    error_code = "VALIDATION_ERROR"
    http_status_code = 400


class InvalidInputError(ValidationError):
    """
    入力エラー。

    指示文の長さ不足など、リクエスト入力が不正な場合に発生します。
    """

    error_code = "INVALID_INPUT"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        actual_value: Any = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        if field:
            detail["field"] = field
        if actual_value is not None:
            detail["actual_value"] = str(actual_value)
        super().__init__(message, detail=detail, **kwargs)


class StructuralError(ValidationError):
    """
    ルール構造エラー。

    必須項目の欠落、命名規則違反、条件数の範囲外など、
    ルールの形そのものが不正な場合に発生します。
    """

    error_code = "STRUCTURAL_ERROR"

    def __init__(
        self,
        message: str,
        errors: list[dict[str, Any]] | None = None,
        warnings: list[dict[str, Any]] | None = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        detail["errors"] = errors or []
        if warnings:
            detail["warnings"] = warnings
        super().__init__(message, detail=detail, **kwargs)


class CatalogViolationError(ValidationError):
    """
    カタログ違反エラー。

    未知のフィールド、型に合わない演算子、範囲外の値、
    列挙値以外の値が条件に含まれる場合に発生します。
    """

    error_code = "CATALOG_VIOLATION"

    def __init__(
        self,
        message: str,
        errors: list[dict[str, Any]] | None = None,
        warnings: list[dict[str, Any]] | None = None,
        catalog_version: str | None = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        detail["errors"] = errors or []
        if warnings:
            detail["warnings"] = warnings
        if catalog_version:
            detail["catalog_version"] = catalog_version
        super().__init__(message, detail=detail, **kwargs)


class PolicyViolationError(ValidationError):
    """
    ポリシー違反エラー。

    禁止フィールドや差別につながり得る表現を検出した場合に発生します。
    警告レベルの違反も detail に含めて返します。
    """

    error_code = "POLICY_VIOLATION"

    def __init__(
        self,
        message: str,
        violations: list[dict[str, Any]] | None = None,
        stage: str | None = None,  # "instruction", "rule"
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        detail["violations"] = violations or []
        if stage:
            detail["stage"] = stage
        super().__init__(message, detail=detail, **kwargs)


# ========================================
# ルール生成関連の例外
# ========================================


class GenerationFailure(RuleGuardException):
    """
    ルール生成エラーの基底クラス。

    生成呼び出しの失敗はリクエストにとって終端であり、
    内部でのリトライは行いません。
    """

    error_code = "GENERATION_FAILURE"
    http_status_code = 502

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        model: str | None = None,
        content_hash: str | None = None,
        error_type: str | None = None,  # "timeout", "rate_limit", "malformed", "provider"
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        if provider:
            detail["provider"] = provider
        if model:
            detail["model"] = model
        if content_hash:
            detail["content_hash"] = content_hash
        if error_type:
            detail["error_type"] = error_type
        super().__init__(message, detail=detail, **kwargs)


class GenerationTimeoutError(GenerationFailure):
    """生成呼び出しがタイムアウトした場合に発生します。"""

    error_code = "GENERATION_TIMEOUT"
    http_status_code = 504

    def __init__(self, message: str, timeout_seconds: float | None = None, **kwargs):
        detail = kwargs.pop("detail", {})
        if timeout_seconds is not None:
            detail["timeout_seconds"] = timeout_seconds
        kwargs.setdefault("error_type", "timeout")
        super().__init__(message, detail=detail, **kwargs)


class GenerationRateLimitError(GenerationFailure):
    """
    生成レート制限エラー。

    呼び出し元ごとの時間窓あたりのリクエスト数を超えた場合に発生します。
    """

    error_code = "GENERATION_RATE_LIMITED"
    http_status_code = 429

    def __init__(
        self,
        message: str,
        limit: int | None = None,
        window_seconds: int | None = None,
        retry_after_seconds: int | None = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        if limit is not None:
            detail["limit"] = limit
        if window_seconds is not None:
            detail["window_seconds"] = window_seconds
        if retry_after_seconds is not None:
            detail["retry_after_seconds"] = retry_after_seconds
        kwargs.setdefault("error_type", "rate_limit")
        super().__init__(message, detail=detail, **kwargs)


class MalformedGenerationError(GenerationFailure):
    """
    生成結果の形式エラー。

    ツール呼び出しが返らない、引数がJSONオブジェクトでない、
    必須キーが欠けているなどの場合に発生します。部分的な解釈は行いません。
    """

    error_code = "MALFORMED_GENERATION"

    def __init__(self, message: str, missing_keys: list[str] | None = None, **kwargs):
        detail = kwargs.pop("detail", {})
        if missing_keys:
            detail["missing_keys"] = missing_keys
        kwargs.setdefault("error_type", "malformed")
        super().__init__(message, detail=detail, **kwargs)


# ========================================
# ガバナンス関連の例外
# ========================================


class GovernanceViolationError(RuleGuardException):
    """
    ガバナンス違反エラー。

    同一人物による承認、根拠の不足、終端状態からの再遷移など、
    状態遷移の前提条件を満たさない場合に発生します。
    既存の状態は一切変更されません。
    """

    error_code = "GOVERNANCE_VIOLATION"
    http_status_code = 409

    def __init__(
        self,
        message: str,
        reason: str,
        suggestion_id: str | None = None,
        current_status: str | None = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        detail["reason"] = reason
        if suggestion_id:
            detail["suggestion_id"] = suggestion_id
        if current_status:
            detail["current_status"] = current_status
        if reason == "two_person_rule":
            kwargs.setdefault("http_status_code", 403)
        super().__init__(message, detail=detail, **kwargs)


# ========================================
# サンプリング・データ関連の例外
# ========================================


class SampleUnavailableError(RuleGuardException):
    """
    サンプル取得不可エラー。

    レコードストアに到達できない、または対象レコードが0件の場合に発生します。
    """

    error_code = "SAMPLE_UNAVAILABLE"
    http_status_code = 503

    def __init__(
        self,
        message: str,
        requested_size: int | None = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        if requested_size is not None:
            detail["requested_size"] = requested_size
        super().__init__(message, detail=detail, **kwargs)


class DatabaseError(RuleGuardException):
    """データベースエラー。"""

    error_code = "DATABASE_ERROR"
    http_status_code = 500

    def __init__(
        self,
        message: str,
        database: str | None = None,  # "duckdb", "sqlite"
        operation: str | None = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        if database:
            detail["database"] = database
        if operation:
            detail["operation"] = operation
        super().__init__(message, detail=detail, **kwargs)


# ========================================
# リソース関連の例外
# ========================================


class ResourceNotFoundError(RuleGuardException):
    """
    リソース未発見エラー。

    指定されたリソースが見つからない場合に発生します。
    """

    error_code = "RESOURCE_NOT_FOUND"
    http_status_code = 404

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
        **kwargs,
    ):
        detail = kwargs.pop("detail", {})
        detail["resource_type"] = resource_type
        detail["resource_id"] = resource_id
        super().__init__(message, detail=detail, **kwargs)
