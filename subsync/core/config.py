import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.stripe_api_key = self._get("STRIPE_API_KEY")
        self.stripe_webhook_secret = self._get("STRIPE_WEBHOOK_SECRET")
        self.stripe_price_id = os.getenv("STRIPE_PRICE_ID")
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/subsync.db")).resolve()
        self.webhook_tolerance_seconds = self._get_int("WEBHOOK_TOLERANCE_SECONDS", default=300)
        self.trial_days = self._get_int("TRIAL_DAYS", default=14)
        self.trial_sweep_interval_seconds = self._get_int("TRIAL_SWEEP_INTERVAL_SECONDS", default=3600)
        self.trial_sweep_enabled = os.getenv("TRIAL_SWEEP_ENABLED", "true").lower() not in ("0", "false", "no")
        self.operator_token = os.getenv("OPERATOR_TOKEN")
        self.frontend_base_url = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000")
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = self._get_int("PORT", default=8000)
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

    @staticmethod
    def _get(key: str) -> str:
        value = os.getenv(key)
        if not value:
            raise RuntimeError(f"Missing required environment variable: {key}")
        return value

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc
