"""HTTP API of the bakery.

Routes are thin wrappers around `BakeManager`, the JSON body of a bake is the
request of the renderer named in the path and the response is the rendered
artifact:
```
POST /api/v2/manifest/bake/helm3
{"outputName": "web", "inputArtifacts": [...], "overrides": {...}}

{"type": "embedded/base64", "name": "web", "reference": "<base64 manifest>"}
```
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import Body, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from .exceptions import BakeryException, FetchException, InvalidRequestException
from .manager import BakeManager

__all__ = [
    "create_app",
]

_LOGGER = logging.getLogger(__name__)

EXECUTION_ID_HEADER = "X-Execution-Id"


def error_status(err: BakeryException) -> int:
    """Return the http status reported for a failed bake."""
    if isinstance(err, InvalidRequestException):
        return 400
    if isinstance(err, FetchException):
        return 502
    return 500


async def _bakery_exception_handler(
    request: Request, err: BakeryException
) -> JSONResponse:
    status = error_status(err)
    if status >= 500:
        _LOGGER.error("Bake %s failed: %s", request.url.path, err)
    else:
        _LOGGER.info("Rejected bake %s: %s", request.url.path, err)
    return JSONResponse(
        status_code=status,
        content={"error": type(err).__name__, "message": str(err)},
    )


def create_app(
    manager: BakeManager,
    on_shutdown: Callable[[], Any] | None = None,
) -> FastAPI:
    """Create the FastAPI application serving bakes with `manager`.

    Args:
        manager: Routes requests to the service of their renderer
        on_shutdown: Coroutine function run when the application stops

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if on_shutdown is not None:
            await on_shutdown()

    app = FastAPI(title="Manifest Bakery", lifespan=lifespan)
    app.state.manager = manager
    app.add_exception_handler(BakeryException, _bakery_exception_handler)

    async def bake(
        renderer: str,
        body: dict[str, Any] = Body(...),
        execution_id: str | None = Header(default=None, alias=EXECUTION_ID_HEADER),
    ) -> dict[str, Any]:
        artifact = await manager.bake(renderer, body, execution_id)
        return artifact.to_dict()

    app.add_api_route(
        "/api/v2/manifest/bake/{renderer}", bake, methods=["POST"], tags=["bake"]
    )
    app.add_api_route("/bake/{renderer}", bake, methods=["POST"], tags=["bake"])

    @app.get("/health", tags=["health"])
    def health() -> dict[str, Any]:
        """Health check endpoint."""
        return {"status": "ok", "renderers": manager.renderers}

    return app
