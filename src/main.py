"""
main.py

Entry point for the CapitalLab capital-raise workflow API.

Loads RuntimeSettings from the environment, configures logging, wires an
in-memory WorkflowEngine into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1: run directly (host/port/reload from CAPITALLAB_* settings)
    python main.py

    # Option 2: run via uvicorn CLI
    uvicorn main:app --reload --port 8000

    # Seed the TechCorp / AgriCorp demo workflows on start-up
    CAPITALLAB_SEED_DEMO=true python main.py

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/health    ← liveness check
    http://localhost:8000/mcp       ← MCP endpoint

Quick-start walkthrough (Swagger UI or curl)
--------------------------------------------
Every request names its identity with headers, e.g.
    X-User-Id: issuer-1      X-User-Role: issuer

1. POST /api/v1/workflows                         — issuer submits an intent
2. POST /api/v1/workflows/{id}/actions            — {"action": "transfer_to_ib"}
3. POST /api/v1/workflows/{id}/actions            — as ib_advisor: {"action": "assign_ib"}
4. POST /api/v1/workflows/{id}/documents          — attach financial_statements
5. POST /api/v1/workflows/{id}/documents/{d}/review — approve it
6. GET  /api/v1/workflows/{id}/available-actions  — what the caller may do next
7. GET  /api/v1/me/notifications                  — the caller's inbox
"""

import logging

import uvicorn

from api import app, get_engine
from infrastructure import build_engine, seed_demo_workflows
from settings import RuntimeSettings

settings = RuntimeSettings.from_env()

logging.basicConfig(
    level=settings.numeric_log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

engine = build_engine(settings)
if settings.seed_demo:
    seed_demo_workflows(engine)


# ---------------------------------------------------------------------------
# Wire the configured engine into the FastAPI dependency system.
# To swap storage, build the engine over your own repository implementations.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_engine] = lambda: engine


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
