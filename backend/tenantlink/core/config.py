from functools import lru_cache
from typing import List, Optional

from json import loads as json_loads, JSONDecodeError

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


INSECURE_DEFAULTS = {"supersecret", "changeme", "secret", "dev-pepper", ""}


class Settings(BaseSettings):
    """
    Central configuration for the tenantlink invite service.

    All values come from environment variables or backend/.env.
    This is the single source of truth for:
    - environment (dev/staging/prod)
    - database URL + store timeouts
    - bearer token verification
    - invite token policy (ttl, max uses, clock skew grace)
    - rate limit windows
    - cleanup retention + schedule
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # High-level environment flags
    environment: str = Field(
        default="dev",
        description="Deployment environment identifier (dev|staging|prod)",
    )
    debug: bool = Field(default=True)
    version: str = Field(default="dev")

    # Database
    database_url: str = Field(
        default="sqlite:///./tenantlink.db",
        description="SQLAlchemy-style DB URL (SQLite for dev, Postgres in prod).",
    )
    store_timeout_seconds: float = Field(
        default=5.0,
        description="Upper bound for a single store call (SQLite busy timeout / Postgres statement_timeout).",
    )

    # Bearer tokens issued by the identity provider
    jwt_secret: str = Field(
        default="supersecret",
        description="JWT verification secret shared with the identity provider.",
    )
    jwt_algorithm: str = Field(default="HS256")

    # Invite tokens
    token_pepper: str = Field(
        default="dev-pepper",
        description="Server-side HMAC key for the invite token lookup hash.",
    )
    invite_default_ttl_days: int = Field(default=7)
    invite_max_ttl_days: int = Field(default=365)
    invite_max_uses: int = Field(default=100)
    clock_skew_grace_seconds: int = Field(
        default=300,
        description="Extra seconds past expires_at during which a token is still honored.",
    )
    validate_min_latency_ms: int = Field(
        default=0,
        description="If > 0, every public validation response is padded to at least this many ms.",
    )

    # Rate limits (fixed windows, shared store)
    validate_rate_limit: int = Field(default=20)
    validate_rate_window: int = Field(default=60)
    accept_rate_limit: int = Field(default=20)
    accept_rate_window: int = Field(default=60)
    trusted_proxy_hops: int = Field(
        default=0,
        description=(
            "Reverse proxies in front of the app that append to X-Forwarded-For. "
            "0 ignores forwarding headers and keys limits on the socket peer."
        ),
    )

    # Cleanup
    invite_retention_days: int = Field(
        default=7,
        description="How long expired/exhausted tokens are kept for audit before deletion.",
    )
    revoked_retention_days: int = Field(default=30)
    cleanup_hour_utc: int = Field(default=3)
    redis_url: str = Field(default="redis://localhost:6379/0")

    # CORS / frontends
    allowed_origins: str = Field(
        default="http://localhost:8081,http://127.0.0.1:8081",
        description=(
            "Allowed frontend origins. Either a comma-separated string or a JSON list."
        ),
    )

    # API docs toggle
    enable_docs: bool = Field(default=False)

    # Performance budgets
    slow_http_ms: float = Field(default=1500.0)
    slow_db_query_ms: float = Field(default=250.0)
    slow_db_total_ms: float = Field(default=800.0)
    log_db_sql: bool = Field(default=False)

    def origins_list(self) -> List[str]:
        """
        Normalize allowed_origins into a clean List[str] for CORSMiddleware.

        Supports a comma-separated string or a JSON array.
        """
        raw_str = str(self.allowed_origins or "").strip()
        if not raw_str:
            return []

        if raw_str.startswith("[") and raw_str.endswith("]"):
            try:
                parsed = json_loads(raw_str)
                if isinstance(parsed, list):
                    return [str(o).strip() for o in parsed if str(o).strip()]
            except JSONDecodeError:
                pass

        return [o.strip() for o in raw_str.split(",") if o.strip()]

    @property
    def is_prod(self) -> bool:
        return self.environment.lower() in {"prod", "production"}

    def insecure_secrets(self) -> Optional[List[str]]:
        """
        Names of secrets still carrying a development default, or None.
        """
        bad = [
            name
            for name in ("jwt_secret", "token_pepper")
            if (getattr(self, name) or "") in INSECURE_DEFAULTS
        ]
        return bad or None


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance so the app only parses env once.
    """
    return Settings()


settings = get_settings()
