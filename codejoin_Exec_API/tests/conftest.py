"""
Pytest configuration for the execution-core test suite.

Pins a test-friendly environment before any settings are materialized and
provides a SandboxService wired to the in-process docker fake.
"""

import os

import pytest

os.environ.setdefault("TEST_MODE", "1")
os.environ.setdefault("SANDBOX_SESSION_IDLE_TIMEOUT_SEC", "60")
os.environ.setdefault("SANDBOX_SESSION_SWEEP_INTERVAL_SEC", "30")

from codejoin_Exec_API.app.core.Sandbox.languages import LanguageRegistry, load_language_table
from codejoin_Exec_API.app.core.Sandbox.policy import SandboxPolicyConfig
from codejoin_Exec_API.app.core.Sandbox.service import SandboxService
from codejoin_Exec_API.tests.helpers.docker_fakes import FakeDockerAPI


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    """Each test sees settings rebuilt from its own environment."""
    from codejoin_Exec_API.app.core.config import clear_config_cache

    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture()
def policy_cfg() -> SandboxPolicyConfig:
    """Policy with defaults pinned so tests do not depend on config.txt."""
    return SandboxPolicyConfig(
        max_input_bytes=1024 * 1024,
        max_output_bytes=64 * 1024,
        max_concurrent_sandboxes=16,
        admission_wait_sec=0.0,
        remove_grace_sec=2,
        docker_timeout_sec=5,
        session_idle_timeout_sec=60,
        session_sweep_interval_sec=30.0,
        stream_queue_max=100,
        enable_validation=True,
    )


@pytest.fixture()
def fake_api() -> FakeDockerAPI:
    return FakeDockerAPI()


@pytest.fixture(scope="session")
def language_table():
    return load_language_table()


@pytest.fixture()
def languages(language_table) -> LanguageRegistry:
    return LanguageRegistry(language_table)


@pytest.fixture()
def service(policy_cfg, fake_api, languages):
    """SandboxService wired to the fake docker client."""
    svc = SandboxService(policy_cfg, languages=languages, api=fake_api)
    yield svc
    svc.shutdown()
