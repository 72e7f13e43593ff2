from contextlib import asynccontextmanager

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from nearhelp.core.logging import setup_logging
from nearhelp.core.init_db import init_db
from nearhelp.core.errors import NearHelpError
from nearhelp.api.router import api_router
from nearhelp.services.runtime import build_runtime

setup_logging()
logger.info("Starting NearHelp backend")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = build_runtime()
    runtime.start()
    app.state.runtime = runtime
    try:
        yield
    finally:
        await runtime.stop()
        logger.info("NearHelp backend stopped")


app = FastAPI(
    title="NearHelp Backend",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(NearHelpError)
async def nearhelp_error_handler(request: Request, exc: NearHelpError):
    if exc.status_code >= 500:
        logger.warning(f"[api] {request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# All API routes (presence, help requests, messages)
app.include_router(api_router)

# Init DB after app is created
init_db()

@app.get("/health")
def health():
    logger.debug("Health check hit")
    return {"status": "ok"}
