"""Request models for the rule suggestion API."""

from typing import Any

from pydantic import BaseModel, Field


class SuggestRuleRequest(BaseModel):
    """Natural language instruction from an analyst."""

    instruction: str = Field(
        max_length=2000,
        description="ルールの自然言語指示",
    )
    author_id: str = Field(min_length=1, description="提案者ID")
    sample_size: int | None = Field(
        default=None,
        ge=1,
        description="ドライランのサンプルサイズ",
    )


class ApproveRuleRequest(BaseModel):
    """Second-person approval of a pending suggestion."""

    approver_id: str = Field(min_length=1, description="承認者ID（提案者と異なること）")
    notes: str = Field(description="承認理由")
    acknowledge_impact: bool = Field(
        default=False,
        description="影響分析を確認済みであること",
    )
    expected_impact: str | None = Field(default=None, description="想定される影響")


class RejectRuleRequest(BaseModel):
    """Rejection of a pending suggestion."""

    reviewer_id: str = Field(min_length=1, description="レビュー担当者ID")
    notes: str = Field(description="却下理由")


class DryRunRequest(BaseModel):
    """Standalone dry run of a rule."""

    rule: dict[str, Any] = Field(description="検証・シミュレーション対象のルール")
    sample_size: int | None = Field(default=None, ge=1)
    include_overlap: bool = True


class SetRuleEnabledRequest(BaseModel):
    """Enable or disable an active rule."""

    enabled: bool
    actor_id: str = Field(min_length=1, description="操作者ID")
