"""FastAPI service for the workflow generation pipeline.

One request flow:

  POST /requests
      Runs a natural-language request through the pipeline
      (intent → templates → generation → validation → fix loop → deployment)
      and returns a PipelineResponse: the deployed workflow, or a structured
      failure (capability gap with alternatives, graceful failure with
      diagnostics, or a rolled-back deployment).

Operational endpoints:
  GET  /health                        engine reachability + breaker states
  GET  /catalog                       current capability catalog summary
  POST /catalog/refresh               live re-introspection of the engine
  GET  /templates                     most recent stored templates
  GET  /feedback                      feedback store entries (optionally by kind)
  GET  /deployments/{idempotency_key} the deployment record for a request key
"""

import logging
import os
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from autoflow_agent.agent.pipeline import (
    PipelineComponents,
    PipelineRequest,
    PipelineRunner,
    close_components,
    create_components,
)
from autoflow_agent.client.engine_client import error_message, is_engine_error
from autoflow_agent.persistence.records import FEEDBACK_KINDS

logger = logging.getLogger("autoflow_agent.api")

# ---------------------------------------------------------------------------
# API key authentication (optional, enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY env var.

    If AGENT_API_KEY is not set, all requests are allowed (open dev mode).
    If set, every request must carry 'Authorization: Bearer <key>'.
    """
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Lifespan: build components + runner once at startup, close them on shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: open stores and clients on startup, release them on shutdown."""
    from dotenv import load_dotenv

    from autoflow_agent.settings import PipelineSettings

    load_dotenv()
    settings = PipelineSettings.from_env()
    components = await create_components(settings)

    logger.info(
        "Starting autoflow agent | Engine: %s | Providers: %s | Workers: %d",
        os.getenv("N8N_API_ENDPOINT", "(from env)"),
        [p.provider_id for p in components.orchestrator.providers],
        settings.max_workers,
    )

    app.state.components = components
    app.state.runner = PipelineRunner(components, max_workers=settings.max_workers)

    try:
        yield
    finally:
        await close_components(components)
        logger.info("Shutting down autoflow agent")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


_rate_limit = os.getenv("RATE_LIMIT_REQUESTS_PER_MIN", "10")
limiter = Limiter(key_func=get_remote_address, default_limits=[f"{_rate_limit}/minute"])

app = FastAPI(
    title="Autoflow Agent API",
    description=(
        "Turns natural-language automation requests into validated, deployed "
        "workflows on the automation engine."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class WorkflowRequest(BaseModel):
    """Request body for POST /requests."""

    text: str = Field(
        ...,
        min_length=1,
        description="What the workflow should do, in plain language.",
        examples=["Every morning at 9, fetch new Stripe payments and post a summary to Slack"],
    )
    user_id: str = Field("anonymous", description="Who is asking. Recorded with feedback entries.")
    idempotency_key: str | None = Field(
        None,
        description=(
            "Key that makes the deployment idempotent. Resending the same key within "
            "the idempotency window returns the existing deployment. Generated when omitted."
        ),
    )


class WorkflowResponse(BaseModel):
    """Response for POST /requests."""

    success: bool
    outcome: str = Field(
        ...,
        description="deployed | capability_gap | graceful_failure | saga_rolled_back",
    )
    message: str
    idempotency_key: str
    workflow_id: str | None = None
    graph: dict | None = None
    alternatives: dict[str, list[str]] | None = Field(
        None, description="Suggested substitutes per missing node type (capability_gap only)."
    )
    diagnostics: dict | None = Field(
        None, description="Validation results, diagnoses and provider attempts (failures only)."
    )
    feedback_id: int | None = None


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def _get_runner(request: Request) -> PipelineRunner:
    return request.app.state.runner


def _get_components(request: Request) -> PipelineComponents:
    return request.app.state.components


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"], dependencies=[Depends(_verify_api_key)])
async def health(request: Request) -> dict:
    """Health check. Verifies the API and the engine connection are both up."""
    components = _get_components(request)
    engine_ok = False
    detail = None
    if components.client is not None:
        result = await components.client.ping()
        engine_ok = not is_engine_error(result)
        detail = None if engine_ok else error_message(result)

    return {
        "api": "ok",
        "engine": "ok" if engine_ok else "unreachable",
        "engine_detail": detail,
        "catalog": {
            "source": components.catalog.current().source,
            "stale": components.catalog.is_stale(),
        },
        "providers": components.orchestrator.breaker_states(),
    }


@app.post("/requests", response_model=WorkflowResponse, tags=["requests"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def create_request(request: Request, body: WorkflowRequest) -> WorkflowResponse:
    """Generate, validate and deploy a workflow for one request.

    Failures are part of the normal response (success=false with an outcome);
    only authentication and rate limiting produce HTTP errors.
    """
    runner = _get_runner(request)
    key = body.idempotency_key or str(uuid4())
    logger.info("Request %s from %s: %r", key, body.user_id, body.text[:80])

    response = await runner.run(PipelineRequest(user_id=body.user_id, text=body.text, idempotency_key=key))
    return WorkflowResponse(idempotency_key=key, **response.to_dict())


@app.get("/catalog", tags=["catalog"], dependencies=[Depends(_verify_api_key)])
async def get_catalog(request: Request) -> dict:
    """Current capability catalog: source, fingerprint and node list."""
    return _get_components(request).catalog.summary()


@app.post("/catalog/refresh", tags=["catalog"], dependencies=[Depends(_verify_api_key)])
async def refresh_catalog(request: Request) -> dict:
    """Re-introspect the engine now.  The previous snapshot stays in use on failure."""
    catalog = _get_components(request).catalog
    before = catalog.current().fingerprint
    snapshot = await catalog.refresh()
    return {
        "source": snapshot.source,
        "fingerprint": snapshot.fingerprint,
        "node_count": len(snapshot),
        "changed": snapshot.fingerprint != before,
    }


@app.get("/templates", tags=["templates"], dependencies=[Depends(_verify_api_key)])
async def list_templates(request: Request, limit: int = 20) -> list[dict]:
    """The most recently saved templates (verified, deployed workflows)."""
    store = _get_components(request).templates
    if store is None:
        return []
    return await store.list_templates(limit=limit)


@app.get("/feedback", tags=["feedback"], dependencies=[Depends(_verify_api_key)])
async def list_feedback(request: Request, kind: str | None = None, limit: int = 50) -> list[dict]:
    """Feedback entries, newest first.  Optionally filtered by ?kind=."""
    if kind is not None and kind not in FEEDBACK_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown feedback kind: {kind!r}")
    entries = await _get_components(request).records.list_feedback(kind=kind, limit=limit)
    return [e.to_dict() for e in entries]


@app.get("/deployments/{idempotency_key}", tags=["deployments"], dependencies=[Depends(_verify_api_key)])
async def get_deployment(idempotency_key: str, request: Request) -> dict:
    """The deployment record for a request key."""
    record = await _get_components(request).records.get_deployment(idempotency_key)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No deployment for key {idempotency_key!r}")
    return record.to_dict()


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "autoflow_agent.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
