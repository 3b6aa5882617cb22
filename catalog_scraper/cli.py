"""CLI for running scrapes, inspecting sites and managing saved sessions."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Optional, Tuple

import click

from .antibot.storage import SessionStore
from .config import Settings
from .engine import ScrapeRun
from .errors import UnknownSiteError
from .models import Credentials, ExecutionContext, ScrapeOptions
from .sites import available_sites, get_adapter
from .telemetry import install_backend_sink

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)

LOGGER = logging.getLogger(__name__)


def _parse_search(values: Tuple[str, ...]) -> dict:
    search = {}
    for value in values:
        key, sep, raw = value.partition("=")
        if not sep:
            raise click.BadParameter(f"expected key=value, got {value!r}", param_hint="--search")
        search[key.strip()] = raw.strip()
    return search


@click.group()
def cli():
    """Catalog scraper CLI."""
    pass


@cli.command()
@click.option("--site", "site_id", required=True, help="Site id (see `sites`)")
@click.option("--url", "urls", multiple=True, help="Start URL (repeatable)")
@click.option(
    "--input-file",
    type=click.Path(exists=True, dir_okay=False),
    help="File with start URLs (one per line)",
)
@click.option("--max-products", type=int, help="Target number of items (default 20)")
@click.option("--max-requests", type=int, help="Request ceiling")
@click.option("--concurrency", default=5, show_default=True, type=int, help="Parallel pages (1 = sequential)")
@click.option("--max-load-clicks", default=10, show_default=True, type=int)
@click.option("--headed", is_flag=True, help="Show the browser window")
@click.option("--no-details", is_flag=True, help="Emit list-stage records without visiting detail pages")
@click.option("--images", is_flag=True, help="Download product images into the run directory")
@click.option("--search", "search_terms", multiple=True, help="Search parameter key=value (repeatable)")
@click.option("--username", default=lambda: os.getenv("SCRAPER_USERNAME"), help="Login username")
@click.option("--execution-id", help="Reuse a specific execution id")
def run(
    site_id: str,
    urls: Tuple[str, ...],
    input_file: Optional[str],
    max_products: Optional[int],
    max_requests: Optional[int],
    concurrency: int,
    max_load_clicks: int,
    headed: bool,
    no_details: bool,
    images: bool,
    search_terms: Tuple[str, ...],
    username: Optional[str],
    execution_id: Optional[str],
) -> None:
    """Run one scrape to completion and print its summary."""
    try:
        get_adapter(site_id)
    except UnknownSiteError as exc:
        raise click.ClickException(str(exc)) from exc

    start_urls = list(urls)
    if input_file:
        with open(input_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#"):
                    start_urls.append(line)

    credentials = None
    if username:
        password = os.getenv("SCRAPER_PASSWORD") or click.prompt("Password", hide_input=True)
        credentials = Credentials(username=username, password=password)

    context_data = dict(
        site_id=site_id,
        start_urls=start_urls,
        options=ScrapeOptions(
            max_products=max_products,
            max_requests=max_requests,
            max_concurrency=concurrency,
            max_load_clicks=max_load_clicks,
            headless=not headed,
            include_details=not no_details,
            download_images=images,
        ),
        credentials=credentials,
        search=_parse_search(search_terms),
    )
    if execution_id:
        context_data["execution_id"] = execution_id
    context = ExecutionContext(**context_data)

    settings = Settings.from_env()
    listener = install_backend_sink(settings.log_api_endpoint)
    try:
        summary = asyncio.run(ScrapeRun(context, settings).execute())
    finally:
        if listener is not None:
            listener.stop()

    click.echo(
        f"{summary.stop_reason.value}: {summary.records} record(s), "
        f"{summary.successful_tasks} ok / {summary.failed_tasks} failed in {summary.total_time_seconds:.1f}s"
    )
    click.echo(f"Run directory: {settings.storage_dir / context.site_id / context.execution_id}")
    if summary.error:
        click.echo(f"Error: {summary.error}", err=True)
        sys.exit(1)


@cli.command()
def sites() -> None:
    """List registered site adapters."""
    for site_id in available_sites():
        adapter = get_adapter(site_id)
        login = "login required" if adapter.requires_login else "public"
        click.echo(f"{site_id:<12} {adapter.base_url:<32} {login}, {adapter.pagination_mode}")


@cli.group()
def sessions():
    """Inspect and clear persisted login sessions."""
    pass


def _session_store() -> SessionStore:
    settings = Settings.from_env()
    return SessionStore(settings.session_dir, max_age_seconds=settings.session_max_age)


@sessions.command("list")
def sessions_list() -> None:
    store = _session_store()
    states = store.list_states()
    if not states:
        click.echo("No saved sessions")
        return
    for state in states:
        status = "fresh" if state.is_fresh() else "expired"
        click.echo(f"{state.site_id:<12} {state.owner_identity:<32} {state.age() / 60:7.1f} min  {status}")
    stats = store.get_stats()
    click.echo(f"{stats['fresh_states']} of {stats['total_states']} session(s) fresh")


@sessions.command("clear")
@click.option("--site", "site_id", help="Only this site")
@click.option("--identity", help="Only this username")
@click.option("--expired", is_flag=True, help="Only remove expired sessions")
def sessions_clear(site_id: Optional[str], identity: Optional[str], expired: bool) -> None:
    store = _session_store()
    if expired:
        removed = store.cleanup_expired()
    else:
        removed = 0
        for state in store.list_states():
            if site_id and state.site_id != site_id:
                continue
            if identity and state.owner_identity != identity.strip().lower():
                continue
            if store.delete(state.site_id, state.owner_identity):
                removed += 1
    click.echo(f"Removed {removed} session(s)")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(host: str, port: int) -> None:
    """Serve the job API."""
    import uvicorn

    settings = Settings.from_env()
    listener = install_backend_sink(settings.log_api_endpoint)
    try:
        uvicorn.run("catalog_scraper.api.app:create_app", factory=True, host=host, port=port)
    finally:
        if listener is not None:
            listener.stop()


if __name__ == "__main__":
    cli()
