"""API endpoint modules.

Available endpoints:
- health: Health check and system status
- rules: Rule suggestion, dry run and governance
- audit: Audit trail
"""

from app.api.endpoints import audit, health, rules

__all__ = [
    "health",
    "rules",
    "audit",
]
