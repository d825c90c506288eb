from collections.abc import Generator
from pathlib import Path

import pytest

from fakes import FakePrimarySource, FakeRegistrySource, sample_primary, sample_registry
from fleetrecall.config import DEFAULT_RESTART_ERROR_MARKERS, Settings, _split_markers
from fleetrecall.database import build_session_factory
from fleetrecall.pipeline import PipelineRunner
from fleetrecall.progress import RunContext
from fleetrecall.schemas import ProgressEvent


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "input").mkdir(parents=True, exist_ok=True)
    (tmp_path / "downloads").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="fleetrecall",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        input_path=str(temp_workspace / "data" / "input" / "fleet.xlsx"),
        output_dir=str(temp_workspace / "downloads"),
        lookup_timeout_seconds=5,
        inter_call_delay_seconds=0,
        restart_cooldown_seconds=0,
        primary_restart_every=50,
        registry_restart_every=100,
        primary_max_retries=1,
        auth_timeout_seconds=5,
        restart_error_markers=_split_markers(DEFAULT_RESTART_ERROR_MARKERS),
        primary_source_factory="fakes:sample_primary",
        registry_source_factory="fakes:sample_registry",
        max_step_retries=1,
        retry_backoff_seconds=0,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def primary() -> FakePrimarySource:
    return sample_primary()


@pytest.fixture()
def registry() -> FakeRegistrySource:
    return sample_registry()


@pytest.fixture()
def events() -> list[ProgressEvent]:
    return []


@pytest.fixture()
def context(events: list[ProgressEvent]) -> Generator[RunContext, None, None]:
    with RunContext("test-run", events.append) as run_context:
        yield run_context


@pytest.fixture()
def runner(
    test_settings: Settings,
    primary: FakePrimarySource,
    registry: FakeRegistrySource,
) -> Generator[PipelineRunner, None, None]:
    session_factory = build_session_factory(test_settings.database_url)
    yield PipelineRunner(
        test_settings,
        session_factory,
        primary_factory=lambda: primary,
        registry_factory=lambda: registry,
    )
