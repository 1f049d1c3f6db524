from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings
from db.database import engine, Base
from auth.bootstrap import ensure_admin_account
from auth.routes import router as auth_router
from api.admin import router as admin_router
from api.challenges import router as challenges_router
from api.deps import challenge_error_handler
from api.leaderboard import router as leaderboard_router
from api.plank import router as plank_router
from services.errors import ChallengeError
from services.leaderboard_service import LeaderboardCache
from services.plank_session_registry import PlankSessionRegistry

settings.validate_security_configuration()

# Create all tables
Base.metadata.create_all(bind=engine)
ensure_admin_account()

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

app.state.leaderboard_cache = LeaderboardCache()
app.state.plank_sessions = PlankSessionRegistry(on_day_recorded=app.state.leaderboard_cache.invalidate)
app.add_exception_handler(ChallengeError, challenge_error_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.SECURITY_HEADERS_ENABLED:
        return response
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = settings.SECURITY_CSP
    return response


# Routers
app.include_router(auth_router, prefix="/api")
app.include_router(challenges_router, prefix="/api")
app.include_router(plank_router, prefix="/api")
app.include_router(leaderboard_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME}


# Serve frontend static files (in production)
static_dir = Path(__file__).parent / "static"
if static_dir.exists():
    app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
