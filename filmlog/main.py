import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError

from . import database
from .config import get_settings
from .routes_admin import router as admin_router
from .routes_movies import router as movies_router
from .routes_webhook import router as webhook_router
from .tmdb import TMDBClient

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])


@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.init_db()
    if getattr(app.state, "tmdb", None) is None:
        app.state.tmdb = TMDBClient.from_settings(settings)
    if not app.state.tmdb.enabled:
        logger.warning("TMDB_API_KEY not set, enrichment disabled")
    if not settings.admin_token:
        logger.warning("ADMIN_TOKEN not set, cleanup endpoint is unauthenticated")
    yield
    await app.state.tmdb.close()
    app.state.tmdb = None
    await database.close_db()


app = FastAPI(title="filmlog", lifespan=lifespan)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


# Rate limit error handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": "Too many requests. Please try again later."})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Database error", "details": str(exc)})


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# CORS: the webhook relay posts cross-origin, so "*" is a valid setting.
if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Admin-Token"],
    )


app.include_router(webhook_router)
app.include_router(movies_router)
app.include_router(admin_router)


@app.get("/")
async def index():
    return {
        "message": "Movie API with Auto-TMDB Enrichment!",
        "endpoints": {
            "POST /api/movies": "Process webhooks + auto-enrich",
            "POST /api/movies/debug": "Log and echo a webhook payload",
            "GET /api/movies": "Get enriched movies",
            "GET /api/movies/movie/{id}": "Get movie details",
            "GET /api/movies/watches": "Get recent watches",
            "GET /api/movies/stats": "Get statistics",
            "DELETE /api/movies/cleanup": "Delete movies and their watches",
        },
        "features": [
            "Automatic TMDB enrichment for new movies",
            "Poster and backdrop URLs",
            "Plot summaries and metadata",
            "Director and genre information",
        ],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
