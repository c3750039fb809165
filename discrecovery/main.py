import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from discrecovery.config import settings
from discrecovery.db.db import init_db
from discrecovery.routers import discs, notifications, profile, recoveries
from discrecovery.services.errors import RecoveryError, StorageFault

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.AUTO_CREATE_TABLES:
        init_db()
    yield


app = FastAPI(title="Disc Recovery", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RecoveryError)
async def recovery_error_handler(request: Request, exc: RecoveryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StorageFault)
async def storage_fault_handler(request: Request, exc: StorageFault):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Register routers
app.include_router(profile.router, prefix="/profile", tags=["Profile"])
app.include_router(recoveries.router, prefix="/recoveries", tags=["Recoveries"])
app.include_router(discs.router, prefix="/discs", tags=["Discs"])
app.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])


@app.get("/")
def root():
    return {"status": "ok"}
