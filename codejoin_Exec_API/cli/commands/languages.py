"""
Language profile commands: list the table and pre-pull sandbox images.
"""

import sys
from typing import Tuple

import click
from loguru import logger

from codejoin_Exec_API.app.core.config import settings
from codejoin_Exec_API.app.core.Sandbox.exceptions import ProvisioningError
from codejoin_Exec_API.app.core.Sandbox.service import get_sandbox_service
from codejoin_Exec_API.cli.utils.output import (
    console, print_error, print_json, print_success, print_table, print_warning
)


@click.command('languages')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
def languages_command(output_format: str):
    """List the configured language profiles and their limits."""
    svc = get_sandbox_service()
    rows = [p.summary() for p in svc.languages.profiles()]
    if output_format == 'json':
        print_json(rows)
    else:
        print_table(rows, title=f"Languages ({len(rows)})")


@click.command('pull-images')
@click.argument('languages', nargs=-1)
@click.option('--missing-only/--all', default=True, help='Skip images that are already present')
def pull_images_command(languages: Tuple[str, ...], missing_only: bool):
    """
    Pull the Docker images used by LANGUAGES.

    Without arguments the configured prepull_languages are pulled, or every
    profile when that list is empty.

    Examples:
        codejoin-exec pull-images
        codejoin-exec pull-images python javascript
    """
    svc = get_sandbox_service()
    languages = languages or tuple(settings.get("SANDBOX_PREPULL_LANGUAGES") or ())
    if languages:
        profiles = []
        for lang in languages:
            prof = svc.languages.find(lang)
            if prof is None:
                print_warning(f"Unknown language: {lang}")
                continue
            profiles.append(prof)
    else:
        profiles = svc.languages.profiles()

    images = sorted({p.image for p in profiles})
    failures = 0
    for image in images:
        try:
            if missing_only and svc.docker.image_present(image):
                console.print(f"[dim]{image} already present[/dim]")
                continue
            with console.status(f"Pulling {image}..."):
                svc.docker.pull(image)
            print_success(f"Pulled {image}")
        except ProvisioningError as e:
            failures += 1
            logger.warning(f"Pull of {image} failed ({e.code})")
            print_error(f"{image}: {e.message}")
    if failures:
        sys.exit(1)
