import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from kartops import __version__
from kartops.config import get_settings
from kartops.database import init_db
from kartops.errors import KartopsError
from kartops.logging_config import configure_logging
from kartops.routes import finals, matches, players, qualification, time_attack, tournaments

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Kartops Tournament API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KartopsError)
def handle_kartops_error(request: Request, exc: KartopsError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
def handle_storage_error(request: Request, exc: OperationalError):
    logger.error("Storage unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable", "code": "DEPENDENCY_FAILURE"})


# Include routers
app.include_router(tournaments.router, prefix="/api", tags=["tournaments"])
app.include_router(players.router, prefix="/api", tags=["players"])

# Time Attack before the /{event}/ routes so "ta" is not taken for an event code
app.include_router(time_attack.router, prefix="/api", tags=["time-attack"])
app.include_router(qualification.router, prefix="/api", tags=["qualification"])
app.include_router(matches.router, prefix="/api", tags=["matches"])
app.include_router(finals.router, prefix="/api", tags=["finals"])


@app.on_event("startup")
def on_startup():
    configure_logging(settings.log_level)
    init_db()  # Use centralized init_db() which imports models and creates tables
    logger.info("Kartops API %s started", __version__)


@app.get("/api/health")
def health_check():
    """Liveness probe"""
    return {"app_name": "Kartops Tournament API", "version": __version__, "status": "healthy"}
