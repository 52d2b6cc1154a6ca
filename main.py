"""Main FastAPI application"""
import os
import logging
import logging.config
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from routes import router as api_router
from services import expense_store
from services.errors import ExpenseValidationError

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# --- Unified Logging Configuration with Rich ---
LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            # RichHandler renders its own timestamp and level
            "format": "%(name)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "default": {
            "class": "rich.logging.RichHandler",
            "formatter": "default",
            "level": "DEBUG",
            "rich_tracebacks": True,
            "show_time": True,
            "show_path": False,
            "log_time_format": "%Y-%m-%d %H:%M:%S",
            "markup": False,
        },
    },
    "loggers": {
        "uvicorn": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "uvicorn.error": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "uvicorn.access": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "": {  # Root logger for our application
            "handlers": ["default"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}

logging.config.dictConfig(LOGGING_CONFIG)
logger = logging.getLogger(__name__)


def env_flag(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


MONGODB_URI = os.getenv("MONGODB_URI")
DB_NAME = os.getenv("DB_NAME", "expense_tracker")
COLLECTION_NAME = os.getenv("COLLECTION_NAME", "expenses")
ECHO_ON_KEY_CONFLICT = env_flag("ECHO_ON_KEY_CONFLICT", True)
RATE_LIMIT = os.getenv("RATE_LIMIT", "60/minute")
RATE_LIMIT_ENABLED = env_flag("RATE_LIMIT_ENABLED", True)
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
STATIC_DIR = os.getenv("STATIC_DIR", "public")
PORT = int(os.getenv("PORT", "8000"))

if not MONGODB_URI:
    logger.error("MONGODB_URI environment variable not set! Database connection will fail.")

# Application state to hold the database client and collection
app_state = {"echo_on_key_conflict": ECHO_ON_KEY_CONFLICT}

# --- Rate Limiter Setup ---
limiter = Limiter(key_func=get_remote_address, default_limits=[RATE_LIMIT], enabled=RATE_LIMIT_ENABLED)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Connect to MongoDB and make sure the indexes exist
    logger.info(f"Connecting to MongoDB database '{DB_NAME}'...")
    try:
        app_state["db_client"] = AsyncIOMotorClient(MONGODB_URI, tz_aware=True)
        app_state["db"] = app_state["db_client"][DB_NAME]
        app_state["expenses_collection"] = app_state["db"].get_collection(COLLECTION_NAME)
        await app_state["db_client"].admin.command("ping")
        logger.info("MongoDB ping successful.")
        await expense_store.ensure_indexes(app_state["expenses_collection"])
        logger.info(f"Successfully connected to MongoDB database: {DB_NAME}")
    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {e}")
        if app_state.get("db_client"):
            app_state["db_client"].close()
        app_state["db_client"] = None
        app_state["db"] = None
        app_state["expenses_collection"] = None
    logger.info(f"Configuration: ECHO_ON_KEY_CONFLICT = {app_state['echo_on_key_conflict']}, RATE_LIMIT = {RATE_LIMIT if RATE_LIMIT_ENABLED else 'disabled'}")

    yield  # Application runs here

    # Shutdown: Close MongoDB connection
    if app_state.get("db_client"):
        logger.info("Closing MongoDB connection...")
        app_state["db_client"].close()
        logger.info("MongoDB connection closed.")


app = FastAPI(
    title="Expense Tracker API",
    description="API for recording, listing and deleting personal expenses with idempotent creation.",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed payloads are reported as 400 validation errors, like missing fields."""
    logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "kind": ExpenseValidationError.kind,
                "message": "Invalid request payload.",
                "errors": jsonable_encoder(exc.errors()),
            }
        },
    )


# --- Middleware (order matters: last added runs first) ---
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Idempotent-Replayed"],
)

app.include_router(api_router, tags=["expenses"])

# Mount the built front-end if present (MUST be after API router)
if os.path.isdir(STATIC_DIR):
    app.mount("/", StaticFiles(directory=STATIC_DIR, html=True), name="static")
else:
    logger.debug(f"Static directory '{STATIC_DIR}' not found; serving API only.")


@app.middleware("http")
async def add_app_config_to_request(request: Request, call_next):
    """Adds database connection and configuration settings to the request state."""
    request.state.db_client = app_state.get("db_client")
    request.state.expenses_collection = app_state.get("expenses_collection")
    request.state.echo_on_key_conflict = app_state.get("echo_on_key_conflict", ECHO_ON_KEY_CONFLICT)
    response = await call_next(request)
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=PORT,
        reload=True,
    )
