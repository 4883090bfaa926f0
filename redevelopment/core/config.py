from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Society Redevelopment Governance"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str

    # ─────────── JWT / AUTH ───────────
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_access_token_minutes: int = 1440  # 24 hours

    # ─────────── GOVERNANCE ───────────
    default_minimum_approval_percentage: int = 75

    # overall score = weighted mean of the three evaluation scores
    evaluation_weight_technical: float = 1.0
    evaluation_weight_financial: float = 1.0
    evaluation_weight_timeline: float = 1.0

    selection_rejection_reason: str = "Another proposal was selected for this project."
    selection_voting_session: str = "proposal_selection"

    # ─────────── NOTIFICATIONS ───────────
    notification_backend: str = "outbox"  # outbox | log


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
