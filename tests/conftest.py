"""Pytest configuration and fixtures."""
import sys

import pytest

from labrunner.core.settings import DEFAULT_LANGUAGES, LanguageProfile, LimitsConfig, Settings


def _languages():
    langs = {k: LanguageProfile(**v) for k, v in DEFAULT_LANGUAGES.items()}
    # run learner Python with the interpreter running the tests
    langs["python"] = LanguageProfile(runtime=[sys.executable])
    return langs


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with a private jobs dir and database, small limits and no namespaces."""
    return Settings(
        jobs_dir=tmp_path / "jobs",
        db_url=f"sqlite:///{tmp_path / 'labrunner.db'}",
        iso_strategy="none",
        pool_size=2,
        queue_size=4,
        limits=LimitsConfig(cpu_seconds=8, wall_timeout_seconds=5.0),
        languages=_languages(),
    )


@pytest.fixture
def short_timeout_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={
        "limits": LimitsConfig(cpu_seconds=10, wall_timeout_seconds=2.0),
    })


@pytest.fixture
def isolated_settings(settings: Settings) -> Settings:
    """Settings with the private filesystem view on; skips where the host cannot provide it."""
    from labrunner.isolation.namespaces import private_fs_available

    if not private_fs_available(sys.executable):
        pytest.skip("unprivileged user and mount namespaces unavailable")
    return settings.model_copy(update={"iso_strategy": "ns", "require_isolation": True})
