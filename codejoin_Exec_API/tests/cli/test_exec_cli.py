from __future__ import annotations

import json
import sys

import pytest
from click.testing import CliRunner
from loguru import logger

from codejoin_Exec_API import __version__
from codejoin_Exec_API.app.core.config import clear_config_cache
from codejoin_Exec_API.cli.commands import health as health_cmd
from codejoin_Exec_API.cli.commands import languages as languages_cmd
from codejoin_Exec_API.cli.commands import run as run_cmd
from codejoin_Exec_API.cli.exec_cli import main
from codejoin_Exec_API.tests.helpers.docker_fakes import ProgramContext


def _echo_program(ctx: ProgramContext) -> int:
    src = ctx.files.get("/workspace/code.py", b"").decode("utf-8")
    if "exit(3)" in src:
        ctx.stderr("bye\n")
        return 3
    if "input()" in src:
        ctx.stdout(ctx.read_stdin().upper())
        return 0
    ctx.stdout("Hello, World!\n")
    return 0


@pytest.fixture()
def cli_service(service, fake_api, monkeypatch):
    fake_api.program = _echo_program
    for mod in (run_cmd, languages_cmd, health_cmd):
        monkeypatch.setattr(mod, "get_sandbox_service", lambda: service)
    yield service
    # the CLI replaces loguru sinks with one bound to the runner's stderr
    logger.remove()
    logger.add(sys.stderr, level="WARNING")


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.mark.unit
def test_version(runner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


@pytest.mark.unit
def test_languages_json(runner, cli_service) -> None:
    result = runner.invoke(main, ["--quiet", "languages", "--format", "json"])
    assert result.exit_code == 0
    rows = json.loads(result.output)
    ids = {row["id"] for row in rows}
    assert {"python", "java", "bash"} <= ids


@pytest.mark.unit
def test_languages_table(runner, cli_service) -> None:
    result = runner.invoke(main, ["--quiet", "languages"])
    assert result.exit_code == 0
    assert "Languages (" in result.output


@pytest.mark.unit
def test_run_file(runner, cli_service, tmp_path) -> None:
    src = tmp_path / "hello.py"
    src.write_text('print("Hello, World!")\n', encoding="utf-8")
    result = runner.invoke(main, ["--quiet", "run", "python", str(src), "--format", "json"])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["success"] is True
    assert data["output"] == "Hello, World!\n"


@pytest.mark.unit
def test_run_from_stdin_with_stdin_file(runner, cli_service, tmp_path) -> None:
    names = tmp_path / "names.txt"
    names.write_text("ann\n", encoding="utf-8")
    result = runner.invoke(
        main,
        ["--quiet", "run", "python", "-", "--stdin-file", str(names)],
        input="name = input()\n",
    )
    assert result.exit_code == 0
    assert "ANN" in result.output
    assert "OK" in result.output


@pytest.mark.unit
def test_run_propagates_program_exit_code(runner, cli_service, tmp_path) -> None:
    src = tmp_path / "fail.py"
    src.write_text("import sys; sys.exit(3)\n", encoding="utf-8")
    result = runner.invoke(main, ["--quiet", "run", "python", str(src)])
    assert result.exit_code == 3
    assert "bye" in result.output


@pytest.mark.unit
def test_run_platform_error_exits_2(runner, cli_service, fake_api, tmp_path) -> None:
    src = tmp_path / "code.cob"
    src.write_text("DISPLAY 'HI'.\n", encoding="utf-8")
    result = runner.invoke(main, ["--quiet", "run", "cobol", str(src)])
    assert result.exit_code == 2
    assert "VALIDATION" in result.output
    assert fake_api.created == []


@pytest.mark.unit
def test_health_degraded_when_images_missing(runner, cli_service, fake_api) -> None:
    result = runner.invoke(main, ["--quiet", "health"])
    assert result.exit_code == 0
    assert "DEGRADED" in result.output

    fake_api.images.update(p.image for p in cli_service.languages.profiles())
    result = runner.invoke(main, ["--quiet", "health"])
    assert result.exit_code == 0
    assert "HEALTHY" in result.output


@pytest.mark.unit
def test_health_unhealthy_without_docker(runner, cli_service, fake_api) -> None:
    fake_api.ping_ok = False
    result = runner.invoke(main, ["--quiet", "health", "--format", "json"])
    assert result.exit_code == 1
    assert '"unhealthy"' in result.output


@pytest.mark.unit
def test_pull_images(runner, cli_service, fake_api) -> None:
    result = runner.invoke(main, ["--quiet", "pull-images", "python", "nope"])
    assert result.exit_code == 0
    assert fake_api.pulled == [("python", "3.11-alpine")]
    assert "Unknown language: nope" in result.output

    result = runner.invoke(main, ["--quiet", "pull-images", "python"])
    assert result.exit_code == 0
    assert "already present" in result.output
    assert len(fake_api.pulled) == 1


@pytest.mark.unit
def test_cleanup(runner, cli_service, fake_api) -> None:
    fake_api.create_container(name="codejoin-session-old", image="python:3.11-alpine")
    result = runner.invoke(main, ["--quiet", "cleanup"])
    assert result.exit_code == 0
    assert "Removed 1 orphaned" in result.output
    assert fake_api.live() == []


@pytest.mark.unit
def test_pull_images_defaults_to_configured_languages(runner, cli_service, fake_api, monkeypatch) -> None:
    monkeypatch.setenv("SANDBOX_PREPULL_LANGUAGES", "python")
    clear_config_cache()
    result = runner.invoke(main, ["--quiet", "pull-images"])
    assert result.exit_code == 0
    assert fake_api.pulled == [("python", "3.11-alpine")]


@pytest.mark.unit
def test_metrics_after_run(runner, cli_service, tmp_path) -> None:
    src = tmp_path / "hello.py"
    src.write_text('print("Hello, World!")\n', encoding="utf-8")
    assert runner.invoke(main, ["--quiet", "run", "python", str(src)]).exit_code == 0

    result = runner.invoke(main, ["--quiet", "metrics"])
    assert result.exit_code == 0
    assert 'sandbox_runs_total{language="python",outcome="success"}' in result.output

    result = runner.invoke(main, ["--quiet", "metrics", "--format", "json"])
    assert result.exit_code == 0
    assert json.loads(result.output)["sandbox_runs_total"]["count"] >= 1
