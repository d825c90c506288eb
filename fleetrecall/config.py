from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


DEFAULT_RESTART_ERROR_MARKERS = "Could not find VIN input field,NS_ERROR_ABORT"


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    input_path: str
    output_dir: str
    lookup_timeout_seconds: float
    inter_call_delay_seconds: float
    restart_cooldown_seconds: float
    primary_restart_every: int
    registry_restart_every: int
    primary_max_retries: int
    auth_timeout_seconds: float
    restart_error_markers: tuple[str, ...]
    primary_source_factory: str
    registry_source_factory: str
    max_step_retries: int
    retry_backoff_seconds: float
    schedule_hour_utc: int
    schedule_minute_utc: int


def _split_markers(raw: str) -> tuple[str, ...]:
    return tuple(marker.strip() for marker in raw.split(",") if marker.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "fleetrecall"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./fleetrecall.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        input_path=os.getenv("INPUT_PATH", "./data/input/fleet.xlsx"),
        output_dir=os.getenv("OUTPUT_DIR", "./downloads"),
        lookup_timeout_seconds=float(os.getenv("LOOKUP_TIMEOUT_SECONDS", "60")),
        inter_call_delay_seconds=float(os.getenv("INTER_CALL_DELAY_SECONDS", "3")),
        restart_cooldown_seconds=float(os.getenv("RESTART_COOLDOWN_SECONDS", "2")),
        primary_restart_every=int(os.getenv("PRIMARY_RESTART_EVERY", "50")),
        registry_restart_every=int(os.getenv("REGISTRY_RESTART_EVERY", "100")),
        primary_max_retries=int(os.getenv("PRIMARY_MAX_RETRIES", "1")),
        auth_timeout_seconds=float(os.getenv("AUTH_TIMEOUT_SECONDS", "300")),
        restart_error_markers=_split_markers(os.getenv("RESTART_ERROR_MARKERS", DEFAULT_RESTART_ERROR_MARKERS)),
        primary_source_factory=os.getenv("PRIMARY_SOURCE_FACTORY", ""),
        registry_source_factory=os.getenv("REGISTRY_SOURCE_FACTORY", ""),
        max_step_retries=int(os.getenv("MAX_STEP_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
