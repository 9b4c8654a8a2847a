"""
Main CLI entry point for the codejoin execution core.

Provides a command-line interface for:
- Running a source file once inside a sandbox
- Listing language profiles and pre-pulling their images
- Health checks, process metrics and orphaned-sandbox cleanup
"""

import sys

import click
from loguru import logger
from rich.traceback import install as install_rich_traceback

from codejoin_Exec_API import __version__
from codejoin_Exec_API.cli.commands.health import cleanup_command, health_command, metrics_command
from codejoin_Exec_API.cli.commands.languages import languages_command, pull_images_command
from codejoin_Exec_API.cli.commands.run import run_command
from codejoin_Exec_API.cli.utils.output import print_error, print_info

# Install rich traceback for better error display
install_rich_traceback()


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
    default='WARNING',
    help='Logging level'
)
@click.option('--quiet', '-q', is_flag=True, help='Suppress output except errors')
@click.version_option(version=__version__, prog_name="codejoin-exec")
@click.pass_context
def main(ctx, log_level, quiet):
    """
    codejoin-exec - run untrusted code in Docker sandboxes.

    Examples:
        codejoin-exec languages              # Show supported languages
        codejoin-exec run python hello.py    # Run a file once
        codejoin-exec pull-images python     # Pre-pull an image
        codejoin-exec health                 # Check Docker and images
    """
    logger.remove()
    if not quiet:
        log_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        )
        logger.add(sys.stderr, format=log_format, level=log_level.upper())
    else:
        logger.add(sys.stderr, level="ERROR", format="{message}")

    ctx.ensure_object(dict)
    ctx.obj['log_level'] = log_level.upper()
    ctx.obj['quiet'] = quiet


main.add_command(languages_command, name='languages')
main.add_command(run_command, name='run')
main.add_command(pull_images_command, name='pull-images')
main.add_command(health_command, name='health')
main.add_command(cleanup_command, name='cleanup')
main.add_command(metrics_command, name='metrics')


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print_info("\nOperation cancelled.")
        sys.exit(130)
    except Exception as e:
        logger.exception("CLI error")
        print_error(f"CLI error: {e}")
        sys.exit(1)
