import json
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sleep_well.utils.paths import get_default_data_dir, get_default_log_dir


class Settings(BaseSettings):
    """Runtime settings for the daemon, managed via .env and config.json.

    The user's alarm (time, duration, selected apps) is not stored here; it
    lives in the settings store next to the lock state.
    """

    app_name: str = "sleep_well"
    debug: bool = Field(default=False, description="Master toggle for verbose logging")

    # Paths
    data_dir: Path = Field(default_factory=get_default_data_dir)
    log_dir: Path = Field(default_factory=get_default_log_dir)

    def model_post_init(self, __context):
        # Ensure paths are absolute
        self.data_dir = self.data_dir.resolve()
        self.log_dir = self.log_dir.resolve()

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def icon_path(self) -> str:
        bundled = Path(__file__).resolve().parent / "resources" / "icon.png"
        # Fall back to the icon theme's alarm clock.
        return str(bundled) if bundled.exists() else "alarm-clock"

    # Foreground monitoring
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    cooldown_seconds: float = Field(default=1.0, ge=0)
    lookback_seconds: float = Field(default=2.0, gt=0)
    probe_timeout_seconds: float = Field(default=1.0, gt=0)
    own_app_ids: list[str] = ["sleepwell", "sleep_well"]

    # Blocking surface
    presenter_poll_seconds: float = Field(default=5.0, gt=0)
    kill_blocked_apps: bool = True

    # Alarm timing
    exact_alarms: bool = True
    inexact_slack_seconds: float = Field(default=60.0, gt=0)

    # Daemon
    daemon_refresh_seconds: float = Field(default=2.0, gt=0)

    # Guardrail applied when the user edits the lockout duration
    max_lockout_minutes: int = Field(default=240, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="SLEEPWELL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def save(self):
        """Saves current settings to config.json in data_dir."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        with open(self.config_file, "w") as f:
            json.dump(data, f, indent=4)


_last_settings_mtime: float | None = None
_cached_settings: Settings | None = None


def load_settings() -> Settings:
    """Loads settings, merging with config.json if it exists."""
    global _last_settings_mtime, _cached_settings

    initial = Settings()
    config_path = initial.config_file

    if not config_path.exists():
        _last_settings_mtime = None
        _cached_settings = initial
        return initial

    current_mtime = config_path.stat().st_mtime
    if _last_settings_mtime == current_mtime and _cached_settings is not None:
        return _cached_settings

    try:
        with open(config_path) as f:
            config_data = json.load(f)
        merged = {**initial.model_dump(), **config_data}
        _cached_settings = Settings(**merged)
        _last_settings_mtime = current_mtime
        return _cached_settings
    except Exception:
        _cached_settings = initial
        return initial


# The single source of truth for the app
settings = load_settings()
