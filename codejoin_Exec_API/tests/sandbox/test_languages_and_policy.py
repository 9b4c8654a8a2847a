from __future__ import annotations

import os

import pytest

from codejoin_Exec_API.app.core.config import clear_config_cache, settings
from codejoin_Exec_API.app.core.Sandbox.exceptions import ProvisioningError, ValidationError
from codejoin_Exec_API.app.core.Sandbox.languages import (
    LanguageProfile,
    LanguageRegistry,
    load_language_table,
    parse_memory_limit,
)
from codejoin_Exec_API.app.core.Sandbox.policy import (
    AdmissionController,
    SandboxPolicy,
    SandboxPolicyConfig,
    compute_policy_hash,
)


@pytest.mark.unit
def test_default_table_loads_core_languages(language_table) -> None:
    for lang in ("python", "javascript", "bash", "java", "c", "go"):
        assert lang in language_table
    py = language_table["python"]
    assert py.image.startswith("python:")
    assert py.file_extension == ".py"
    assert py.repl_command


@pytest.mark.unit
def test_build_command_interpreter_and_compiled(language_table) -> None:
    assert language_table["python"].build_command() == "python /workspace/code.py"
    assert language_table["c"].build_command() == "gcc -o /tmp/program /workspace/code.c && /tmp/program"
    java = language_table["java"]
    assert java.source_file_name == "Main.java"
    assert java.build_command() == "javac -d /tmp /workspace/Main.java && java -cp /tmp Main"


@pytest.mark.unit
def test_profile_accepts_external_field_names() -> None:
    prof = LanguageProfile.model_validate(
        {
            "id": "lua",
            "name": "Lua",
            "image": "nickblah/lua:5.4",
            "fileExtension": "lua",
            "runCommand": "lua",
            "timeoutMs": 3000,
            "memoryLimit": "64M",
            "cpuLimit": 0.25,
            "processLimit": 16,
        }
    )
    assert prof.file_extension == ".lua"
    assert prof.memory_limit == "64m"
    assert prof.memory_bytes == 64 * 1024 * 1024
    assert prof.compile_command is None
    assert prof.interactive_command() == "/bin/sh"
    with pytest.raises(Exception):
        prof.timeout_ms = 1  # frozen


@pytest.mark.unit
def test_parse_memory_limit() -> None:
    assert parse_memory_limit("512k") == 512 * 1024
    assert parse_memory_limit("1g") == 1024 ** 3
    assert parse_memory_limit("100") == 100
    with pytest.raises(ValueError):
        parse_memory_limit("lots")


@pytest.mark.unit
def test_invalid_profiles_are_skipped(tmp_path) -> None:
    path = tmp_path / "langs.yaml"
    path.write_text(
        "languages:\n"
        "  good:\n"
        "    name: Good\n"
        "    image: alpine:3\n"
        "    fileExtension: .sh\n"
        "    runCommand: sh\n"
        "  bad:\n"
        "    name: Bad\n"
        "    image: alpine:3\n"
        "    fileExtension: .sh\n"
        "    runCommand: sh\n"
        "    memoryLimit: plenty\n"
        "  broken: just-a-string\n",
        encoding="utf-8",
    )
    table = load_language_table(path)
    assert list(table) == ["good"]


@pytest.mark.unit
def test_registry_lookup(language_table) -> None:
    reg = LanguageRegistry(language_table)
    assert reg.get(" Python ").id == "python"
    assert "bash" in reg
    with pytest.raises(ValidationError) as exc:
        reg.get("cobol")
    assert exc.value.code == "unsupported_language"
    assert exc.value.retryable is False


@pytest.mark.unit
def test_timeout_clamped_to_profile_maximum(language_table) -> None:
    policy = SandboxPolicy(SandboxPolicyConfig())
    py = language_table["python"]
    assert policy.effective_timeout_ms(py, None) == py.timeout_ms
    assert policy.effective_timeout_ms(py, 0) == py.timeout_ms
    assert policy.effective_timeout_ms(py, 500) == 500
    assert policy.effective_timeout_ms(py, py.timeout_ms * 10) == py.timeout_ms


@pytest.mark.unit
def test_limits_clamped_to_admin_ceilings(language_table) -> None:
    java = language_table["java"]
    limits = SandboxPolicy(SandboxPolicyConfig(max_mem_mb=256, max_cpu=0.5, pids_limit=8)).limits_for(java)
    assert limits.memory_bytes == 256 * 1024 * 1024
    assert limits.cpu_quota == 50000
    assert limits.pids_limit == 8

    py = language_table["python"]
    limits = SandboxPolicy(SandboxPolicyConfig()).limits_for(py)
    assert limits.memory_bytes == py.memory_bytes
    assert limits.pids_limit == py.process_limit


@pytest.mark.unit
def test_admission_controller_capacity() -> None:
    adm = AdmissionController(2)
    adm.acquire()
    with adm.slot():
        assert adm.in_use == 2
        with pytest.raises(ProvisioningError) as exc:
            adm.acquire()
        assert exc.value.code == "capacity_exceeded"
        assert exc.value.retryable is True
    assert adm.in_use == 1
    adm.release()
    assert adm.in_use == 0
    # extra releases are ignored
    adm.release()
    assert adm.in_use == 0


@pytest.mark.unit
def test_policy_hash_deterministic_and_sensitive() -> None:
    a = compute_policy_hash(SandboxPolicyConfig())
    b = compute_policy_hash(SandboxPolicyConfig())
    c = compute_policy_hash(SandboxPolicyConfig(pids_limit=64))
    assert a == b
    assert a != c
    assert len(a) == 16


@pytest.mark.unit
def test_settings_environment_overrides_config_file(monkeypatch) -> None:
    monkeypatch.setenv("SANDBOX_MAX_INPUT_BYTES", "2048")
    monkeypatch.setenv("SANDBOX_ENABLE_VALIDATION", "false")
    monkeypatch.setenv("SANDBOX_MAX_CONCURRENT_SANDBOXES", "not-a-number")
    clear_config_cache()
    assert settings.SANDBOX_MAX_INPUT_BYTES == 2048
    cfg = SandboxPolicyConfig.from_settings()
    assert cfg.max_input_bytes == 2048
    assert cfg.enable_validation is False
    assert cfg.max_concurrent_sandboxes == 32
    assert cfg.session_idle_timeout_sec == int(os.environ["SANDBOX_SESSION_IDLE_TIMEOUT_SEC"])
