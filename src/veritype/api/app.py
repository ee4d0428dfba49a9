"""
HTTP API for veritype.

This module serves one agent through a small RESTful API.
It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **GET /schema**  - the agent's output schema and tool manifest.
- **POST /runs**   - run the agent on {"prompt": "..."} and return its validated output.
"""

import logging
from typing import (
    Dict,
    Optional,
)

from fastapi import (
    FastAPI,
    HTTPException,
    Request,
)
from fastapi.middleware.cors import CORSMiddleware

from veritype.agent.agent_loop import Agent
from veritype.api.models import (
    ErrorDetail,
    RunRequest,
    RunResponse,
    SchemaResponse,
    ToolResultItem,
)
from veritype.common import (
    AnsiColors,
    colored_print,
)
from veritype.config import settings
from veritype.exceptions import (
    AgentError,
    AgentErrorKind,
)

logger = logging.getLogger(__name__)

_STATUS_BY_KIND: Dict[AgentErrorKind, int] = {
    AgentErrorKind.VALIDATION_RETRIES_EXCEEDED: 422,
    AgentErrorKind.TOOL_ARGUMENT: 422,
    AgentErrorKind.UNKNOWN_TOOL: 422,
    AgentErrorKind.TOOL_EXECUTION: 500,
    AgentErrorKind.MODEL_UNAVAILABLE: 502,
    AgentErrorKind.RUN_CANCELLED: 409,
}


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def get_agent(request: Request) -> Agent:
    """Return the served agent, building the default one from settings on first use."""
    state = request.app.state
    if getattr(state, "agent", None) is None:
        logger.info("Building default agent (backend=%s)", settings.MODEL_BACKEND)
        state.agent = Agent.from_settings(settings)
    return state.agent


def _error_response(exc: AgentError) -> HTTPException:
    detail = ErrorDetail(kind=exc.kind.value, message=exc.message, diagnostics=exc.diagnostics)
    return HTTPException(status_code=_STATUS_BY_KIND.get(exc.kind, 500), detail=detail.model_dump())


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------
def create_app(agent: Optional[Agent] = None) -> FastAPI:
    """Build the FastAPI app serving *agent* (or the default agent from settings)."""
    api = FastAPI(title="veritype API", version="0.1.0", description="Typed agent runtime API")
    api.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    api.state.agent = agent

    @api.get("/health", summary="Health check")
    async def health() -> dict[str, str]:
        """Return a simple liveness payload."""
        return {"status": "ok"}

    @api.get("/schema", response_model=SchemaResponse, summary="Output schema and tools")
    async def schema(request: Request) -> SchemaResponse:
        served = get_agent(request)
        tools = [
            {
                "name": spec.name,
                "description": spec.description,
                "parameters": spec.input_schema.to_json_schema(),
            }
            for spec in served.tools
        ]
        return SchemaResponse(output=served.output_schema.to_json_schema(), tools=tools)

    @api.post("/runs", response_model=RunResponse, summary="Run the agent")
    async def run(req: RunRequest, request: Request) -> RunResponse:
        """Run the agent on a prompt and return the validated output."""
        served = get_agent(request)
        logger.debug("Prompt input for run:\n%s", req.prompt)
        try:
            result = await served.run(req.prompt)
        except AgentError as exc:
            logger.warning("Run failed: %s", exc)
            raise _error_response(exc) from exc

        tool_results = [
            ToolResultItem(call_id=item.call_id, name=item.name, content=item.content)
            for turn in result.turns
            for item in turn.tool_returns
            if not item.is_error
        ]

        return RunResponse(
            run_id=result.state.run_id,
            output=served.output_schema.dump(result.output),
            turns=len(result.turns),
            output_retries=result.output_retries,
            tool_retries=result.tool_retries,
            tool_results=tool_results,
        )

    return api


app = create_app()


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting veritype API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump())

    colored_print(f"veritype API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "veritype.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m veritype.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
