"""FastAPI application for the project proposal approval workflow."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from proposals.config import get_settings
from proposals.database import init_db
from proposals.errors import ApiError
from proposals.logging import setup_logging
from proposals.routes import router

logger = structlog.get_logger()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db()
    logger.info("app_started", environment=settings.ENVIRONMENT, version=settings.VERSION)
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="Project application review, final approval and follow-up budget/KPI tracking",
    version=settings.VERSION,
    lifespan=lifespan,
)


def _error_response(status_code: int, code: str, message: str, meta=None) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "meta": meta or None,
        }
    }
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(ApiError)
def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.warning("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return _error_response(exc.status_code, exc.code, exc.message, exc.meta)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
    ]
    return _error_response(422, "validation_error", "Request validation failed", {"errors": errors})


app.include_router(router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
