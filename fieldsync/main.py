import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fieldsync.api.v1.equipment import router as equipment_router
from fieldsync.api.v1.jobs import router as jobs_router
from fieldsync.core.config import settings
from fieldsync.core.errors import InvalidTenant, StorageError
from fieldsync.db.init_db import ensure_schema
from fieldsync.db.session import engine

if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO)

logger = logging.getLogger("fieldsync")

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Ingestion des formulaires terrain, file de telechargement et import d'equipements par agence",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    ensure_schema(engine)
    if settings.ENV.lower() == "production":
        if settings.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            logger.warning("SQLALCHEMY_DATABASE_URI pointe vers SQLite en production.")
        if not settings.KIZEO_API_TOKEN:
            logger.warning("KIZEO_API_TOKEN absent en production.")


app.include_router(jobs_router, prefix="/api")
app.include_router(equipment_router, prefix="/api")


@app.exception_handler(InvalidTenant)
async def invalid_tenant_handler(request: Request, exc: InvalidTenant):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("storage error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Base de donnees indisponible"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.get("/api/health")
def health():
    return {"status": "ok"}
