"""FastAPI application entry point."""

import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

# Apply the same format to Uvicorn's loggers so they also show timestamps.
for _uvicorn_logger in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    _log = logging.getLogger(_uvicorn_logger)
    _log.handlers.clear()
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"))
    _log.addHandler(_handler)
    _log.propagate = False

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from ballotbatch.db import create_tables
from ballotbatch.schemas.batch import ErrorResponse
from ballotbatch.services.gemini import InferenceUnavailableError
from ballotbatch.services.job_store import BatchNotFoundError, InvalidTransitionError

logger = logging.getLogger(__name__)

app = FastAPI(title="BallotBatch")

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])


@app.on_event("startup")
def startup() -> None:
    create_tables()


_DOMAIN_ERRORS: dict[type[Exception], tuple[int, str]] = {
    BatchNotFoundError: (404, "not_found"),
    InvalidTransitionError: (409, "invalid_transition"),
    InferenceUnavailableError: (503, "inference_unavailable"),
    ValueError: (422, "invalid_request"),
}


async def _domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    for exc_type, (status_code, error) in _DOMAIN_ERRORS.items():
        if isinstance(exc, exc_type):
            return JSONResponse(
                status_code=status_code,
                content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
            )
    return await _global_exception_handler(request, exc)


for _exc_type in _DOMAIN_ERRORS:
    app.add_exception_handler(_exc_type, _domain_exception_handler)


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="internal_error", detail=str(exc)).model_dump(),
    )


# Import and register routers after app is defined to avoid circular imports.
from ballotbatch.api import batch, cron  # noqa: E402

app.include_router(cron.router, prefix="/cron", tags=["cron"])
app.include_router(batch.router, prefix="/batch", tags=["batch"])
