from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import engine, init_db
from app.core.limiter import limiter
from app.features.users.routes import router as user_router
from app.features.permissions.cache import PermissionCacheClient
from app.features.permissions.exceptions import PermissionException
from app.features.permissions.routes import router as permission_router
from app.features.permissions.registry_routes import router as registry_router
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Console Access Backend",
    description="Admin console backend with group-based dynamic permissions",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(PermissionException)
async def permission_exception_handler(_request: Request, exc: PermissionException):
    if exc.status_code >= 500:
        log.error("Permission error %s: %s", exc.error_code, exc.message)
    else:
        log.info("Permission error %s: %s", exc.error_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.error_code, "detail": exc.message})


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")
    if PermissionCacheClient.get_cache() is None:
        log.warning("PERMISSION_CACHE_URL not set, effective permissions are recomputed on every request")


@app.on_event("shutdown")
async def shutdown():
    await PermissionCacheClient.close()
    await engine.dispose()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Console Access Backend API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/users/*", "/permissions/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Group-based allow/deny permissions over modules, pages and components",
            "registry": "Resource registry with validation, health checks, bulk edits and import/export",
            "users": "Console accounts with OWNER/ADMIN/USER static roles",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])

app.include_router(registry_router, prefix="/permissions/registry", tags=["permission-registry"])
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
