import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .core.logging import setup_logging
from .database import create_tables
from .limiter import limiter
from .routers import appointments, clinicians, health, patients, templates, transfers

settings = get_settings()
logger = setup_logging()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Lifespan for startup events
@app.on_event("startup")
def on_startup():
    create_tables()
    logger.info("startup_complete", environment=settings.environment, database=settings.database_url.split("://")[0])


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", path=request.url.path, method=request.method, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error: An unexpected error occurred."},
    )


app.include_router(appointments.router, prefix="/api/v1")
app.include_router(clinicians.router, prefix="/api/v1")
app.include_router(templates.router, prefix="/api/v1")
app.include_router(patients.router, prefix="/api/v1")
app.include_router(transfers.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("clinic_scheduler.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
