"""FastAPI app entry."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from affirmgate.adapters.affirmation.router import router as affirmation_router
from affirmgate.adapters.affirmation.router import upstream_config
from affirmgate.adapters.affirmation.upstream import close_upstream_async_client
from affirmgate.config.settings import cors_origins, settings
from affirmgate.util.logger import logger

app = FastAPI(title=settings.app_name)
app.include_router(affirmation_router, prefix="/api")


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    logger.debug("request enter method=%s path=%s", request.method, request.url.path)
    try:
        response = await call_next(request)
    except Exception:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "An unexpected error occurred. Please try again.", "code": "INTERNAL_ERROR"},
        )
    logger.debug(
        "request exit method=%s path=%s status=%s",
        request.method,
        request.url.path,
        response.status_code,
    )
    return response


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")}


@app.on_event("startup")
async def startup_log() -> None:
    logger.info(
        "affirmgate ready provider=%s model=%s endpoint=%s api_key_configured=%s",
        upstream_config.provider,
        upstream_config.model,
        upstream_config.endpoint,
        bool(upstream_config.api_key),
    )
    if not upstream_config.api_key:
        logger.error("upstream api key is missing, generate requests will fail with CONFIG_ERROR")


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_async_client()


# CORS 最后添加，保证预检请求与错误响应都带上跨域头
_origins = cors_origins(settings)
if _origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
