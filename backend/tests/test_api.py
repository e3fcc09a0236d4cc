"""APIエンドポイントのテスト"""

import pytest

from app.api.endpoints.audit import get_audit_service
from app.api.endpoints.rules import get_pipeline
from app.services.impact import DryRunEngine, StratifiedSampler
from app.services.suggestion_service import SuggestionPipeline
from conftest import HIGH_AMOUNT_MOBILE_RULE, assert_api_error, make_openai_client

INSTRUCTION = "Flag high-value transactions from mobile devices for review"
APPROVAL = {
    "approver_id": "bob",
    "notes": "Validated against last month's chargebacks",
    "acknowledge_impact": True,
    "expected_impact": "About 20% of mobile traffic reviewed",
}


@pytest.fixture
def api(app, client, pipeline):
    """テスト用パイプラインを注入したクライアント"""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_audit_service] = lambda: pipeline.audit
    yield client
    app.dependency_overrides.clear()


def _suggest(api, author_id="alice", instruction=INSTRUCTION):
    return api.post(
        "/api/v1/rules/suggest", json={"instruction": instruction, "author_id": author_id}
    )


class TestSystemEndpoints:
    """ヘルスチェックと共通ヘッダーのテスト"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["app"] == "RuleGuard"

    def test_api_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_status(self, client):
        response = client.get("/api/v1/status")
        assert response.status_code == 200
        data = response.json()
        assert data["catalog_version"]
        assert data["llm"]["provider"] == "openai"
        assert "databases" in data

    def test_common_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Request-ID"]
        assert "X-Processing-Time-Ms" in response.headers
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_request_id_propagated(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestCatalogEndpoint:
    def test_catalog(self, client):
        response = client.get("/api/v1/rules/catalog")
        assert response.status_code == 200
        data = response.json()
        assert data["version"]
        assert "amount" in {f["name"] for f in data["features"]}


class TestSuggestEndpoint:
    """提案APIのテスト"""

    def test_suggest(self, api):
        response = _suggest(api)

        assert response.status_code == 201
        suggestion = response.json()["suggestion"]
        assert suggestion["status"] == "pending"
        assert suggestion["created_by"] == "alice"
        assert suggestion["impact_status"] == "computed"
        assert suggestion["impact_report"]["match_count"] == 4

    def test_policy_violation(self, api):
        response = _suggest(api, instruction="Block transactions based on country of origin")
        assert_api_error(response, 400, "POLICY_VIOLATION")
        assert response.json()["error"]["detail"]["stage"] == "instruction"

    def test_short_instruction(self, api):
        assert_api_error(_suggest(api, instruction="short"), 400, "INVALID_INPUT")

    def test_rate_limited(self, app, client, governance, seeded_duck_db, make_generator):
        pipeline = SuggestionPipeline(
            generator=make_generator(make_openai_client(), max_requests=1),
            sampler=StratifiedSampler(seeded_duck_db, max_workers=2),
            engine=DryRunEngine(),
            governance=governance,
        )
        app.dependency_overrides[get_pipeline] = lambda: pipeline
        try:
            assert _suggest(client).status_code == 201
            response = _suggest(client)
        finally:
            app.dependency_overrides.clear()

        assert_api_error(response, 429, "GENERATION_RATE_LIMITED")
        assert int(response.headers["Retry-After"]) > 0


class TestGovernanceEndpoints:
    """承認・却下APIのテスト"""

    def test_self_approval_forbidden(self, api):
        suggestion_id = _suggest(api).json()["suggestion"]["id"]

        response = api.post(
            f"/api/v1/rules/suggestions/{suggestion_id}/approve",
            json={**APPROVAL, "approver_id": "alice"},
        )

        assert_api_error(response, 403, "GOVERNANCE_VIOLATION")
        assert response.json()["error"]["detail"]["reason"] == "two_person_rule"

    def test_approve(self, api):
        suggestion_id = _suggest(api).json()["suggestion"]["id"]

        response = api.post(f"/api/v1/rules/suggestions/{suggestion_id}/approve", json=APPROVAL)

        assert response.status_code == 200
        assert response.json()["suggestion"]["status"] == "approved"

        active = api.get("/api/v1/rules/active").json()
        assert active["total"] == 1
        rule_id = active["rules"][0]["id"]

        versions = api.get(f"/api/v1/rules/active/{rule_id}/versions").json()
        assert len(versions["versions"]) == 1

    def test_approve_twice(self, api):
        suggestion_id = _suggest(api).json()["suggestion"]["id"]
        api.post(f"/api/v1/rules/suggestions/{suggestion_id}/approve", json=APPROVAL)

        response = api.post(
            f"/api/v1/rules/suggestions/{suggestion_id}/approve",
            json={**APPROVAL, "approver_id": "carol"},
        )
        assert_api_error(response, 409, "GOVERNANCE_VIOLATION")

    def test_reject(self, api):
        suggestion_id = _suggest(api).json()["suggestion"]["id"]

        response = api.post(
            f"/api/v1/rules/suggestions/{suggestion_id}/reject",
            json={"reviewer_id": "bob", "notes": "Overlaps the manual queue"},
        )

        assert response.status_code == 200
        assert response.json()["suggestion"]["status"] == "rejected"

    def test_unknown_suggestion(self, api):
        assert_api_error(api.get("/api/v1/rules/suggestions/sug_missing"), 404, "RESOURCE_NOT_FOUND")
        response = api.post("/api/v1/rules/suggestions/sug_missing/approve", json=APPROVAL)
        assert_api_error(response, 404, "RESOURCE_NOT_FOUND")

    def test_unknown_active_rule(self, api):
        assert_api_error(api.get("/api/v1/rules/active/rule_missing/versions"), 404, "RESOURCE_NOT_FOUND")

    def test_list_and_get(self, api):
        suggestion_id = _suggest(api).json()["suggestion"]["id"]
        _suggest(api, author_id="bob")

        listed = api.get("/api/v1/rules/suggestions", params={"created_by": "alice"}).json()
        assert listed["total"] == 1
        assert listed["suggestions"][0]["id"] == suggestion_id

        fetched = api.get(f"/api/v1/rules/suggestions/{suggestion_id}").json()
        assert fetched["suggestion"]["instruction"] == INSTRUCTION

    def test_expire(self, api):
        response = api.post("/api/v1/rules/suggestions/expire")
        assert response.status_code == 200
        assert response.json() == {"expired": [], "count": 0}


class TestDryRunEndpoint:
    def test_dry_run(self, api):
        response = api.post("/api/v1/rules/dry-run", json={"rule": HIGH_AMOUNT_MOBILE_RULE})

        assert response.status_code == 200
        data = response.json()
        assert data["impact"]["sample_size"] == 20
        assert data["impact"]["match_count"] == 4
        assert data["overlap"] == []

    def test_invalid_rule(self, api):
        response = api.post("/api/v1/rules/dry-run", json={"rule": {"ruleset_name": "x"}})
        assert_api_error(response, 400, "STRUCTURAL_ERROR")

    def test_non_string_operator(self, api):
        rule = {
            **HIGH_AMOUNT_MOBILE_RULE,
            "conditions": [{"field": "amount", "op": [">"], "value": 10000}],
        }
        response = api.post("/api/v1/rules/dry-run", json={"rule": rule})
        assert_api_error(response, 400, "STRUCTURAL_ERROR")


class TestAuditEndpoints:
    """監査証跡APIのテスト"""

    def test_list_and_get(self, api):
        suggestion_id = _suggest(api).json()["suggestion"]["id"]

        events = api.get("/api/v1/audit", params={"resource_id": suggestion_id}).json()
        assert events["total"] == 1
        event = events["events"][0]
        assert event["action"] == "suggest_rule"

        fetched = api.get(f"/api/v1/audit/{event['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["actor"] == "alice"

    def test_unknown_event(self, api):
        assert_api_error(api.get("/api/v1/audit/999999"), 404, "RESOURCE_NOT_FOUND")


class TestActiveRuleEndpoints:
    """有効ルールの操作APIのテスト"""

    def _approve(self, api):
        suggestion_id = _suggest(api).json()["suggestion"]["id"]
        api.post(f"/api/v1/rules/suggestions/{suggestion_id}/approve", json=APPROVAL)
        rule_id = api.get("/api/v1/rules/active").json()["rules"][0]["id"]
        return suggestion_id, rule_id

    def test_disable_and_enable(self, api):
        _, rule_id = self._approve(api)

        response = api.post(
            f"/api/v1/rules/active/{rule_id}/enabled",
            json={"enabled": False, "actor_id": "carol"},
        )
        assert response.status_code == 200
        assert response.json()["rule"]["enabled"] is False
        assert api.get("/api/v1/rules/active").json()["total"] == 0

        events = api.get("/api/v1/audit", params={"resource_id": rule_id}).json()
        assert [e["action"] for e in events["events"]] == ["disable_rule"]

        api.post(
            f"/api/v1/rules/active/{rule_id}/enabled",
            json={"enabled": True, "actor_id": "carol"},
        )
        assert api.get("/api/v1/rules/active").json()["total"] == 1

    def test_unknown_rule(self, api):
        response = api.post(
            "/api/v1/rules/active/rule_missing/enabled",
            json={"enabled": False, "actor_id": "carol"},
        )
        assert_api_error(response, 404, "RESOURCE_NOT_FOUND")

    def test_overlap_examples(self, api):
        _, rule_id = self._approve(api)
        suggestion_id = _suggest(api, author_id="dave").json()["suggestion"]["id"]

        response = api.get(
            f"/api/v1/rules/suggestions/{suggestion_id}/overlap/{rule_id}/examples",
            params={"limit": 2},
        )

        assert response.status_code == 200
        examples = response.json()["examples"]
        assert len(examples) == 2
        assert all(e["match_type"] == "same_decision" for e in examples)
        assert all(e["device"] == "mobile" for e in examples)


class TestGenerationEndpoints:
    """生成モデル・呼び出し履歴APIのテスト"""

    def test_models(self, api):
        data = api.get("/api/v1/rules/models").json()
        assert data["current"] == {"provider": "openai", "model": "gpt-4o-mini"}
        assert set(data["models"]) == {"anthropic", "openai"}
        assert all("id" in m for m in data["models"]["openai"])

    def test_generation_history(self, api):
        _suggest(api)
        calls = api.get("/api/v1/rules/generations").json()["calls"]
        assert len(calls) == 1
        assert calls[0]["actor"] == "alice"
        assert calls[0]["success"] == 1
