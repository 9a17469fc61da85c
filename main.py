import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from starlette.middleware.base import BaseHTTPMiddleware

from config import APP_NAME, APP_VERSION, DB_AUTO_CREATE, ENVIRONMENT, LOG_LEVEL
from core.db import SessionLocal, create_tables
from core.logging import configure_logging, request_id_var
from core.realtime import build_realtime
from routers.messaging.api import router as messaging_router
from utils.storage import build_storage

log_level = configure_logging(environment=ENVIRONMENT, log_level=LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=APP_NAME,
    description="Realtime messaging backend: conversations, ordered message delivery, presence, reactions and read receipts",
    version=APP_VERSION,
    swagger_ui_parameters={
        "docExpansion": "none",
        "persistAuthorization": False,
        "displayRequestDuration": True,
        "filter": True,
    },
)


# Add security scheme
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=APP_NAME,
        version=APP_VERSION,
        description="""
        Relay Chat API

        ## Authentication
        All endpoints require a Descope session JWT.

        Format: `Authorization: Bearer <session_token>`
        """,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    openapi_schema["security"] = [{"bearerAuth": []}]
    app.openapi_schema = openapi_schema
    return openapi_schema


app.openapi = custom_openapi


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Short ID for readability
        request_id = str(uuid.uuid4())[:8]
        token = request_id_var.set(request_id)
        request.state.request_id = request_id
        start_time = time.time()

        query_str = f"?{request.url.query}" if request.query_params else ""
        logger.info(
            f"REQUEST | method={request.method} | path={request.url.path}{query_str} | "
            f"ip={request.client.host if request.client else 'unknown'}"
        )
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            user_id = getattr(request.state, "user_id", None)
            logger.info(
                f"RESPONSE | method={request.method} | path={request.url.path} | "
                f"status={response.status_code} | time={process_time:.3f}s | user_id={user_id or 'anonymous'}"
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"ERROR | method={request.method} | path={request.url.path} | "
                f"error={type(e).__name__}: {str(e)} | time={process_time:.3f}s",
                exc_info=True,
            )
            raise
        finally:
            request_id_var.reset(token)


# Add request logging middleware (before CORS so it logs all requests)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*", "Authorization", "Content-Type", "Accept", "Origin", "X-Requested-With"],
    expose_headers=["X-Request-ID", "X-Session-ID", "X-Error-Code", "Retry-After"],
)

# NOTE: SSE streams must NOT be compressed. If GZipMiddleware is ever added,
# exclude 'text/event-stream'; proxies buffer compressed responses.
# Uvicorn --timeout-keep-alive and nginx proxy_read_timeout must exceed
# SSE_HEARTBEAT_SECONDS.

app.include_router(messaging_router)


@app.on_event("startup")
async def startup_event():
    if DB_AUTO_CREATE:
        create_tables()
        logger.info("Database tables ensured")
    app.state.realtime = build_realtime(session_factory=SessionLocal, storage=build_storage())
    await app.state.realtime.start()
    logger.info(f"{APP_NAME} started successfully")

    from fastapi.routing import APIRoute

    logger.debug("=== Registered Routes ===")
    for route in app.routes:
        if isinstance(route, APIRoute):
            methods = ",".join(route.methods)
            logger.debug(f"{methods:8} {route.path}")


@app.on_event("shutdown")
async def shutdown_event():
    realtime = getattr(app.state, "realtime", None)
    if realtime is not None:
        await realtime.stop()
    logger.info(f"{APP_NAME} stopped")


@app.get("/")
async def read_root():
    """
    Root endpoint to check if the server is running.
    Returns basic API information.
    """
    return {
        "status": "online",
        "message": f"Welcome to {APP_NAME}!",
        "version": APP_VERSION,
        "environment": ENVIRONMENT,
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring.
    """
    realtime = getattr(app.state, "realtime", None)
    return {
        "status": "healthy",
        "sessions": len(realtime.registry) if realtime else 0,
    }
