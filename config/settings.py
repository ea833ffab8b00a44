"""Settings for Clarity-Pilot, read from the environment and an optional ``.env``.

Credentials are read from the environment (or .env) rather than a config
file; the on-disk state files (session record, storage snapshot, budget
ledger) default to a per-user cache directory.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_STATE_DIR = Path.home() / ".cache" / "clarity-pilot"


class GlobalConfig(BaseSettings):
    """Validated runtime settings.

    Field names map to upper-case environment variables (``CLARITY_EMAIL``,
    ``MONTHLY_BUDGET``, ``SESSION_PATH`` ...). Timeouts are milliseconds.

    Attributes:
        app_name: Name shown in startup logs.
        environment: development, test or production.
        debug: Turn on loguru backtrace and diagnose output.
        headless: Run the resident browser without a window.
        log_level: Lowest level written to either sink.
        log_dir: Where the daily JSON-lines files go.
        log_rotation: When loguru starts a new file.
        log_retention: How long rotated files are kept.
        base_url: Marketplace origin, without trailing slash.
        clarity_email: Account login email.
        clarity_password: Account password.
        clarity_phone: Default phone number for booking forms.
        monthly_budget: Fallback monthly spending cap (0 = no cap).
        navigation_timeout_ms: Bound on page.goto calls.
        selector_timeout_ms: Bound on each selector strategy attempt.
        login_timeout_ms: Bound on the post-login URL/indicator race.
        content_timeout_ms: Bound on waiting for SPA content to render.
        enrichment_timeout_ms: Bound on each enrichment tab navigation.
        settle_delay_ms: Pause after navigation for SPA hydration.
        enrichment_settle_ms: Pause in enrichment tabs before reading text.
        submit_settle_ms: Pause after clicking submit before inspecting the page.
        browser_launch_timeout_ms: Bound on waiting for a fresh browser endpoint.
        enrichment_batch_size: Concurrent profile tabs per enrichment batch.
        max_search_limit: Hard cap on records returned from one search.
        cdp_port: Remote debugging port of the resident browser.
        session_path: Session record (reconnection handle + booking state).
        storage_state_path: Cookie/localStorage snapshot.
        user_data_dir: Chromium profile directory of the resident browser.
        budget_path: Monthly budget ledger.
        screenshot_dir: Directory for checkpoint and failure screenshots.
        output_dir: Directory for exported reports.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Metadata
    app_name: str = Field(default="Clarity-Pilot", description="Application identifier")
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development", description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Browser Configuration
    headless: bool = Field(default=False, description="Run browser in headless mode")
    cdp_port: int = Field(default=9333, ge=1024, le=65535, description="Remote debugging port")
    viewport_width: int = Field(default=1280, ge=800, le=2560)
    viewport_height: int = Field(default=800, ge=600, le=1600)
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="User agent applied to the resident browser",
    )

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    log_dir: Path = Field(default=_STATE_DIR / "logs", description="Log output directory")
    log_rotation: str = Field(default="1 week", description="Log rotation interval")
    log_retention: str = Field(default="1 month", description="Log retention period")

    # Target Configuration
    base_url: str = Field(default="https://clarity.fm", description="Marketplace origin")

    # Credentials
    clarity_email: str = Field(default="", description="Login email")
    clarity_password: SecretStr = Field(default=SecretStr(""), description="Login password")
    clarity_phone: str = Field(default="", description="Default phone for bookings")
    monthly_budget: float = Field(default=0.0, ge=0.0, description="Monthly cap in USD")

    # Timeouts
    navigation_timeout_ms: int = Field(default=30000, ge=5000, le=120000)
    selector_timeout_ms: int = Field(default=8000, ge=1000, le=30000)
    login_timeout_ms: int = Field(default=30000, ge=5000, le=120000)
    content_timeout_ms: int = Field(default=15000, ge=1000, le=60000)
    enrichment_timeout_ms: int = Field(default=20000, ge=5000, le=60000)
    settle_delay_ms: int = Field(default=3000, ge=0, le=15000)
    enrichment_settle_ms: int = Field(default=3000, ge=0, le=15000)
    submit_settle_ms: int = Field(default=5000, ge=0, le=30000)
    browser_launch_timeout_ms: int = Field(default=15000, ge=1000, le=60000)

    # Enrichment & Search
    enrichment_batch_size: int = Field(
        default=3, ge=1, le=5, description="Concurrent profile tabs per batch"
    )
    max_search_limit: int = Field(default=20, ge=1, le=50)

    # State Persistence
    session_path: Path = Field(
        default=_STATE_DIR / "session.json", description="Session record file"
    )
    storage_state_path: Path = Field(
        default=_STATE_DIR / "storage_state.json", description="Browser session state file"
    )
    user_data_dir: Path = Field(
        default=_STATE_DIR / "browser-profile", description="Chromium profile directory"
    )
    budget_path: Path = Field(default=_STATE_DIR / "budget.json", description="Budget ledger")

    # Output Configuration
    screenshot_dir: Path = Field(
        default=_STATE_DIR / "screenshots", description="Screenshot directory"
    )
    output_dir: Path = Field(default=Path("output"), description="Report output directory")

    @field_validator(
        "log_dir",
        "output_dir",
        "screenshot_dir",
        "session_path",
        "storage_state_path",
        "user_data_dir",
        "budget_path",
        mode="before",
    )
    @classmethod
    def ensure_path(cls, value: str | Path) -> Path:
        """Accept str or Path and expand a leading ``~``."""
        return Path(value).expanduser()

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Strip trailing slash so paths can be appended with a leading one."""
        return value.rstrip("/")

    @property
    def login_url(self) -> str:
        return f"{self.base_url}/login"

    @property
    def dashboard_url(self) -> str:
        return f"{self.base_url}/dashboard"

    @property
    def has_credentials(self) -> bool:
        """Whether both login email and password are configured."""
        return bool(self.clarity_email and self.clarity_password.get_secret_value())


@lru_cache(maxsize=1)
def get_config() -> GlobalConfig:
    """Build the settings once per process.

    Tests call ``get_config.cache_clear()`` after changing the environment.
    """
    return GlobalConfig()
