"""Database schema definitions for DuckDB and SQLite.

DuckDB holds the lean, read-only transaction projection that sampling and
dry-run queries scan. SQLite holds governance data: suggestions, the active
rule registry, version history, the audit trail and the generation call log.
Governance tables are append/update-only; nothing here is ever deleted.
"""

# =============================================================================
# DuckDB Schema - Transaction projection (OLAP)
# =============================================================================

# Column order of the projection; sampling selects exactly these.
TRANSACTION_COLUMNS = [
    "txn_id",
    "timestamp",
    "amount",
    "hour",
    "device",
    "agent_id",
    "partner",
    "intent",
    "decision",
    "flagged",
    "disputed",
    "declined",
    "account_age_days",
    "is_first_transaction",
    "seller_name",
]

DUCKDB_SCHEMA = """
-- Lean projection of historical transactions
CREATE TABLE IF NOT EXISTS transactions_proj (
    txn_id VARCHAR PRIMARY KEY,
    timestamp TIMESTAMP NOT NULL,
    amount DOUBLE NOT NULL,
    hour INTEGER,
    device VARCHAR,
    agent_id VARCHAR,
    partner VARCHAR,
    intent VARCHAR,
    decision VARCHAR DEFAULT 'allow',
    flagged BOOLEAN DEFAULT FALSE,
    disputed BOOLEAN DEFAULT FALSE,
    declined BOOLEAN DEFAULT FALSE,
    account_age_days INTEGER,
    is_first_transaction BOOLEAN DEFAULT FALSE,
    seller_name VARCHAR
);

CREATE INDEX IF NOT EXISTS idx_txn_proj_timestamp ON transactions_proj(timestamp);
CREATE INDEX IF NOT EXISTS idx_txn_proj_amount ON transactions_proj(amount);
CREATE INDEX IF NOT EXISTS idx_txn_proj_hour ON transactions_proj(hour);
"""


# =============================================================================
# SQLite Schema - Governance
# =============================================================================

SQLITE_SCHEMA = """
-- Rule suggestions (pending -> approved | rejected | expired)
CREATE TABLE IF NOT EXISTS rule_suggestions (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'approved', 'rejected', 'expired')),
    instruction TEXT NOT NULL,
    instruction_hash TEXT NOT NULL,
    generated_rule TEXT NOT NULL,
    rule_fingerprint TEXT NOT NULL,
    validation_result TEXT NOT NULL,
    violations TEXT NOT NULL DEFAULT '[]',
    impact_status TEXT NOT NULL DEFAULT 'computed'
        CHECK (impact_status IN ('computed', 'unavailable')),
    impact_report TEXT,
    impact_error TEXT,
    overlap TEXT NOT NULL DEFAULT '[]',
    llm_model TEXT,
    llm_cached INTEGER DEFAULT 0,
    llm_latency_ms REAL DEFAULT 0,
    llm_tokens INTEGER DEFAULT 0,
    created_by TEXT NOT NULL,
    approved_by TEXT,
    approval_notes TEXT,
    expected_impact TEXT,
    impact_acknowledged INTEGER NOT NULL DEFAULT 0,
    rejected_by TEXT,
    rejection_notes TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    approved_at TEXT,
    rejected_at TEXT,
    expired_at TEXT,
    CHECK (status != 'approved' OR created_by != approved_by)
);

-- Enabled production rules (promotion target, overlap comparison set)
CREATE TABLE IF NOT EXISTS active_rules (
    id TEXT PRIMARY KEY,
    ruleset_name TEXT NOT NULL,
    rule_json TEXT NOT NULL,
    rule_fingerprint TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 1,
    created_by TEXT,
    approved_by TEXT,
    suggestion_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Immutable rule version history
CREATE TABLE IF NOT EXISTS rule_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    change_type TEXT NOT NULL,
    rule_snapshot TEXT NOT NULL,
    rule_fingerprint TEXT NOT NULL,
    impact_snapshot TEXT,
    overlap_snapshot TEXT,
    created_by TEXT,
    approved_by TEXT,
    notes TEXT,
    expected_impact TEXT,
    suggestion_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (rule_id, version)
);

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS audit_trail (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    resource_type TEXT,
    resource_id TEXT,
    payload TEXT,
    success INTEGER NOT NULL DEFAULT 1,
    error_message TEXT,
    request_id TEXT
);

-- Rule generation call log
CREATE TABLE IF NOT EXISTS llm_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    prompt_preview TEXT,
    cached INTEGER NOT NULL DEFAULT 0,
    success INTEGER NOT NULL DEFAULT 1,
    latency_ms REAL DEFAULT 0,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    error_message TEXT,
    actor TEXT
);

CREATE INDEX IF NOT EXISTS idx_suggestions_status_expires
    ON rule_suggestions(status, expires_at);
CREATE INDEX IF NOT EXISTS idx_suggestions_created_by
    ON rule_suggestions(created_by);
CREATE INDEX IF NOT EXISTS idx_active_rules_enabled ON active_rules(enabled);
CREATE INDEX IF NOT EXISTS idx_audit_trail_timestamp ON audit_trail(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_audit_trail_action ON audit_trail(action);
CREATE INDEX IF NOT EXISTS idx_llm_calls_hash ON llm_calls(content_hash);
"""
