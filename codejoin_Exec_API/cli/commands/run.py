"""
Batch execution command for the codejoin-exec CLI.
"""

import sys
from pathlib import Path
from typing import Optional

import click
from loguru import logger

from codejoin_Exec_API.app.core.Sandbox.service import get_sandbox_service
from codejoin_Exec_API.cli.utils.output import print_error, print_json, print_run_result


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


@click.command('run')
@click.argument('language')
@click.argument('source', type=click.Path(exists=True, dir_okay=False, allow_dash=True, path_type=Path))
@click.option('--stdin-file', type=click.Path(exists=True, dir_okay=False, path_type=Path), help='File fed to the program on stdin')
@click.option('--timeout-ms', type=int, default=None, help='Wall-clock limit (clamped to the language maximum)')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
def run_command(language: str, source: Path, stdin_file: Optional[Path], timeout_ms: Optional[int], output_format: str):
    """
    Run SOURCE once in a LANGUAGE sandbox and print its output.

    The process exits with the program's exit code, or 2 when the platform
    could not run it.

    Examples:
        codejoin-exec run python hello.py
        codejoin-exec run python greet.py --stdin-file names.txt
        cat main.go | codejoin-exec run go - --format json
    """
    code = sys.stdin.read() if str(source) == '-' else _read_text(source)
    stdin = _read_text(stdin_file) if stdin_file else None

    try:
        result = get_sandbox_service().run_batch(language, code, stdin, timeout_ms)
    except Exception as e:
        logger.exception("Batch run failed")
        print_error(f"Run failed: {e}", exit_code=2)
        return

    data = result.to_dict()
    if output_format == 'json':
        print_json(data)
    else:
        print_run_result(data)

    if result.error_kind is not None:
        sys.exit(2)
    sys.exit(result.exit_code or 0)
