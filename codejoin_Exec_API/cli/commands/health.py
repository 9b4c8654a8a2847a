"""
Health and maintenance commands for the codejoin-exec CLI.
"""

import sys
from typing import Any, Dict

import click
from loguru import logger

from codejoin_Exec_API.app.core.Sandbox.service import SandboxService, get_sandbox_service
from codejoin_Exec_API.cli.utils.output import print_error, print_health_status, print_info, print_json


def _perform_health_check(svc: SandboxService) -> Dict[str, Any]:
    features = svc.feature_discovery()
    docker_ok = bool(features.get("available"))
    components: Dict[str, Any] = {
        "docker": {"status": "healthy" if docker_ok else "unhealthy"},
        "languages": {
            "status": "healthy" if features["languages"] else "unhealthy",
            "count": len(features["languages"]),
        },
        "admission": {
            "status": "healthy",
            "in_use": features["sandboxes_in_use"],
            "capacity": features["max_concurrent_sandboxes"],
        },
    }
    if docker_ok:
        missing = [
            p.image for p in svc.languages.profiles()
            if not svc.docker.image_present(p.image)
        ]
        components["images"] = {
            "status": "degraded" if missing else "healthy",
            "missing": ", ".join(sorted(set(missing))) or "none",
        }
    statuses = [c["status"] for c in components.values()]
    if "unhealthy" in statuses:
        overall = "unhealthy"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"
    return {"status": overall, "policy_hash": features["policy_hash"], "components": components}


@click.command('health')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
def health_command(output_format: str):
    """
    Check Docker reachability, the language table and image availability.

    Exits non-zero when unhealthy.
    """
    try:
        health_data = _perform_health_check(get_sandbox_service())
    except Exception as e:
        logger.exception("Health check failed")
        print_error(f"Health check failed: {e}", exit_code=1)
        return

    if output_format == 'json':
        print_json(health_data, "Execution Core Health")
    else:
        print_health_status(health_data)
    if health_data.get('status') == 'unhealthy':
        sys.exit(1)


@click.command('cleanup')
def cleanup_command():
    """Remove sandbox containers left behind by a crashed process."""
    removed = get_sandbox_service().cleanup_orphans()
    print_info(f"Removed {removed} orphaned sandbox container(s)")


@click.command('metrics')
@click.option('--format', 'output_format', type=click.Choice(['prometheus', 'json']), default='prometheus', help='Output format')
def metrics_command(output_format: str):
    """Print the sandbox metrics recorded by this process."""
    svc = get_sandbox_service()
    if output_format == 'json':
        print_json(svc.metrics_snapshot())
    else:
        click.echo(svc.export_metrics(), nl=False)
