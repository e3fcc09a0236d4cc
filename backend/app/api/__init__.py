"""API router aggregation.

Combines all endpoint routers into a single API router.
Routes:
- /health - Health check endpoints
- /rules - Rule suggestion, dry run and governance endpoints
- /audit - Audit trail endpoints
"""

from fastapi import APIRouter

from app.api.endpoints import audit, health, rules

router = APIRouter()

# Include endpoint routers
router.include_router(
    health.router,
    tags=["Health"],
)
router.include_router(
    rules.router,
    prefix="/rules",
    tags=["Rules"],
)
router.include_router(
    audit.router,
    prefix="/audit",
    tags=["Audit"],
)
