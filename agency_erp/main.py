import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Models must be imported before create_all so their tables are registered
from . import (
    models,  # noqa: F401
    models_google_calendar,  # noqa: F401
)
from .config import ALLOWED_ORIGINS, GOOGLE_CLIENT_ID
from .database import Base, engine
from .domain.calendar.router import router as calendar_router
from .routes.google_calendar import router as google_calendar_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Request lines from httpx would log every Google call
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Agency ERP calendar API starting")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
    except Exception as e:
        # Another worker may have created the tables first
        if "already exists" not in str(e):
            logger.error(f"❌ Could not create calendar tables: {e}")
            raise
        logger.info("Calendar tables already present")

    if not GOOGLE_CLIENT_ID:
        logger.warning("⚠️ GOOGLE_CLIENT_ID not set - Google Calendar endpoints will answer 503")

    yield
    logger.info("Agency ERP calendar API stopped")


app = FastAPI(title="Agency ERP Calendar API", version="1.0.0", lifespan=lifespan)


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry the raised ValueError, which is not JSON serializable
    return [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_errors(exc)
    logger.warning(f"Invalid request to {request.url.path}: {errors}")
    return JSONResponse(status_code=422, content={"detail": errors})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} - Unhandled error: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(calendar_router)
app.include_router(google_calendar_router)


@app.get("/")
def root():
    return {"message": "Agency ERP Calendar API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agency_erp.main:app", host="0.0.0.0", port=8000)
