"""
GKE Diagnostics - CLI Interface

Thin command-line layer over the diagnostic orchestrator. Reports go to
stdout (or --output); logs and the progress spinner go to stderr.
"""

import contextlib
import logging
import sys
from typing import Any, Dict, List, Optional

import click
from rich.console import Console
from rich.markup import escape

from . import __version__
from .config import OUTPUT_FORMATS, DiagnosticConfig, load_config_file
from .errors import ConfigError
from .orchestrator import Phase, run_passes
from .report import render_all, write_report

logger = logging.getLogger(__name__)

console = Console(stderr=True)

ALL_PASSES = ["restarts", "probes", "shutdown", "evictions", "certificates"]

# CLI option name -> DiagnosticConfig field
_CONFIG_OPTIONS = {
    "project": "project",
    "cluster": "cluster",
    "zone": "zone",
    "region": "region",
    "namespaces": "namespaces",
    "all_namespaces": "all_namespaces",
    "output_format": "output_format",
    "auto_login": "auto_login",
    "fix_tls": "fix_tls",
    "use_current_context": "use_current_context",
    "kubeconfig": "kubeconfig",
    "timeout": "pass_timeout",
    "workers": "workers",
    "secret_name": "secret_name",
    "verify": "verify",
}


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def common_options(func):
    """Options shared by every diagnostic command."""
    options = [
        click.option("--project", "-p", help="GCP project ID"),
        click.option("--cluster", "-c", help="GKE cluster name"),
        click.option("--zone", "-z", help="Cluster zone (zonal clusters)"),
        click.option("--region", "-r", help="Cluster region (regional clusters)"),
        click.option("--namespace", "-n", "namespaces", multiple=True,
                     help="Namespace to inspect (repeatable, default: default)"),
        click.option("--all-namespaces", "-A", is_flag=True, help="Inspect all namespaces"),
        click.option("--format", "-f", "output_format", type=click.Choice(OUTPUT_FORMATS),
                     help="Output format (default: human)"),
        click.option("--auto-login", "-a", is_flag=True,
                     help="Run 'gcloud auth login' if no account is active"),
        click.option("--fix-tls", is_flag=True,
                     help="On TLS trust failure, retry once without certificate verification"),
        click.option("--use-current-context", is_flag=True,
                     help="Use the active kubeconfig context instead of fetching credentials"),
        click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Path to kubeconfig"),
        click.option("--timeout", type=float, help="Overall deadline in seconds"),
        click.option("--workers", type=int, help="Passes to run in parallel"),
        click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the report to a file"),
        click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False),
                     help="YAML configuration file"),
        click.option("--verbose", "-v", is_flag=True, help="Debug logging"),
        click.option("--quiet", "-q", is_flag=True, help="Errors only, no spinner"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_config(options: Dict[str, Any]) -> DiagnosticConfig:
    """
    Merge the config file (if any) with CLI options; CLI wins.

    Raises:
        ConfigError: On invalid file contents or option combinations
    """
    values: Dict[str, Any] = {}
    if options.get("config_file"):
        values.update(load_config_file(options["config_file"]))

    for option, field_name in _CONFIG_OPTIONS.items():
        value = options.get(option)
        if value is None or value is False or value == ():
            continue
        values[field_name] = list(value) if isinstance(value, tuple) else value

    return DiagnosticConfig(**values).validate()


def execute(pass_names: List[str], options: Dict[str, Any]) -> None:
    configure_logging(options.get("verbose", False), options.get("quiet", False))

    try:
        config = build_config(options)
    except ConfigError as e:
        message = e.message if not e.hint else f"{e.message} ({e.hint})"
        raise click.UsageError(message)

    quiet = options.get("quiet", False)
    spinner = contextlib.nullcontext() if quiet else console.status("[bold green]Starting diagnostics...[/bold green]")

    try:
        with spinner as status:
            progress = _spinner_progress(status) if status is not None else None
            results = run_passes(config, pass_names, progress=progress)
    except KeyboardInterrupt:
        console.print("[red]Interrupted[/red]")
        raise SystemExit(130)
    except ConfigError as e:
        raise click.UsageError(e.message)

    text = render_all(results, config.output_format)
    output: Optional[str] = options.get("output")
    if output:
        write_report(output, text)
        if not quiet:
            console.print(f"[dim]Report written to {escape(output)}[/dim]")
    else:
        click.echo(text, nl=False)

    if any(not r.ok for r in results):
        raise SystemExit(1)


def _spinner_progress(status):
    def progress(pass_name: str, namespace: Optional[str], phase: Phase) -> None:
        scope = escape(namespace or "all namespaces")
        status.update(f"[bold green]{pass_name} ({scope}): {phase.value}...[/bold green]")
    return progress


@click.group()
@click.version_option(version=__version__)
def cli():
    """GKE cluster diagnostics: restarts, probes, shutdown, evictions and certificates."""
    pass


@cli.command()
@common_options
def restarts(**options):
    """Pod restart status with exit-code analysis."""
    execute(["restarts"], options)


@cli.command()
@common_options
def probes(**options):
    """Liveness/readiness probe configuration and failures."""
    execute(["probes"], options)


@cli.command()
@common_options
def shutdown(**options):
    """SIGTERM/SIGKILL shutdown analysis."""
    execute(["shutdown"], options)


@cli.command()
@common_options
def evictions(**options):
    """Evicted pods, node pressure and eviction risk."""
    execute(["evictions"], options)


@cli.command()
@common_options
@click.option("--secret", "-s", "secret_name", help="Inspect a single secret")
@click.option("--verify", "-V", is_flag=True, help="Check key match and find workloads using the secret")
def certs(**options):
    """TLS certificate expiry check."""
    execute(["certificates"], options)


@cli.command(name="all")
@common_options
def all_passes(**options):
    """Run every diagnostic pass."""
    execute(ALL_PASSES, options)


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
