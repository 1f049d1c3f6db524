from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Plank & Squat"
    SECRET_KEY: str = "change-me-in-production"
    DATABASE_URL: str = "sqlite:///data/plank_squat.db"
    DATA_DIR: Path = Path("data")
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_HOURS: int = 72
    ADMIN_JWT_EXPIRY_HOURS: int = 12
    ADMIN_USERNAME: str = "challengeadmin"
    ADMIN_PASSWORD: str = "Pl4nk!Admin"
    ADMIN_DISPLAY_NAME: str = "Challenge Admin"
    AUTH_COOKIE_NAME: str = "plank_session"
    AUTH_COOKIE_SECURE: bool = False
    AUTH_COOKIE_HTTPONLY: bool = True
    AUTH_COOKIE_SAMESITE: str = "lax"  # strict | lax | none
    AUTH_COOKIE_PATH: str = "/"
    SECURITY_HEADERS_ENABLED: bool = True
    SECURITY_CSP: str = (
        "default-src 'self'; "
        "img-src 'self' data:; "
        "style-src 'self' 'unsafe-inline'; "
        "script-src 'self'; "
        "connect-src 'self'; "
        "frame-ancestors 'none'; "
        "base-uri 'self'"
    )

    # Every "what day is it" question is answered in this zone (MST, no DST).
    CHALLENGE_TIMEZONE: str = "America/Phoenix"

    # Plank timer
    COUNTDOWN_STEPS: int = 3
    COUNTDOWN_STEP_SECONDS: float = 1.0
    STILL_GOING_FIRST_SECONDS: int = 300
    STILL_GOING_INTERVAL_SECONDS: int = 120
    STILL_GOING_WINDOW_SECONDS: float = 20.0
    RECOVERY_LIMIT_SECONDS: float = 60.0
    AUTO_STOP_DELAY_SECONDS: float = 0.5
    KEEP_OR_REDO_TIMEOUT_SECONDS: float = 20.0
    MAX_ATTEMPTS_PER_DAY: int = 3
    CELEBRATION_HIGH_THRESHOLD_SECONDS: int = 15

    LEADERBOARD_CACHE_TTL_SECONDS: int = 300
    LEADERBOARD_TOP_TOTAL: int = 10
    LEADERBOARD_TOP_BEST: int = 5

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if self.ADMIN_PASSWORD == "Pl4nk!Admin":
            errors.append("ADMIN_PASSWORD must be changed from the default value")
        if not self.AUTH_COOKIE_SECURE:
            errors.append("AUTH_COOKIE_SECURE must be true in production-like environments")
        if (self.AUTH_COOKIE_SAMESITE or "").strip().lower() == "none" and not self.AUTH_COOKIE_SECURE:
            errors.append("AUTH_COOKIE_SAMESITE=none requires AUTH_COOKIE_SECURE=true")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
