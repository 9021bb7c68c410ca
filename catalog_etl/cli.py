"""CLI for the catalog sync engine.

Usage:
    catalog-sync run --worker-index 0 --worker-count 3
    catalog-sync run-all --workers 3 --enrich
    catalog-sync enrich --worker-index 0 --worker-count 2
    catalog-sync partition --worker-count 3
    catalog-sync stats
"""
from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import click
import orjson

from catalog_etl.checkpoint import Checkpointer, FileCheckpointSink
from catalog_etl.config import SyncSettings, dump_categories, load_categories
from catalog_etl.errors import CatalogSyncError, SessionAcquisitionError
from catalog_etl.models import CategoryState
from catalog_etl.partition import partition_categories
from catalog_etl.upsert import fetch_stats, get_db_connection, init_schema
from catalog_etl.worker import (
    EXECUTORS,
    WorkerConfig,
    run_discovery,
    run_enrichment,
    run_worker,
)

LOGGER = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Catalog sync CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@cli.command()
@click.option("--worker-index", "-i", type=int, required=True, help="Zero-based worker index")
@click.option("--worker-count", "-w", type=int, required=True, help="Total number of workers")
@click.option(
    "--categories-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Categories YAML (bundled list by default)",
)
@click.option("--enrich/--no-enrich", default=False, help="Fetch resources for every record")
@click.option("--dry-run", is_flag=True, help="Keep records in memory instead of PostgreSQL")
@click.option("--resume", is_flag=True, help="Skip categories finished by the last run")
@click.option("--executor", type=click.Choice(EXECUTORS), default="playwright", show_default=True)
def run(
    worker_index: int,
    worker_count: int,
    categories_file: Optional[Path],
    enrich: bool,
    dry_run: bool,
    resume: bool,
    executor: str,
) -> None:
    """Run one worker over its slice of the categories."""
    if worker_count < 1 or not 0 <= worker_index < worker_count:
        raise click.BadParameter(
            f"worker index must be in [0, {worker_count}) with at least one worker",
            param_hint="--worker-index",
        )

    settings = SyncSettings.from_env()
    config = WorkerConfig(
        worker_index=worker_index,
        worker_count=worker_count,
        categories_file=categories_file,
        enrich=enrich,
        dry_run=dry_run,
        resume=resume,
        executor=executor,
    )
    click.echo(f"🚀 Starting worker {worker_index + 1}/{worker_count}")

    try:
        report = asyncio.run(run_worker(config, settings))
    except SessionAcquisitionError as exc:
        click.echo(f"❌ Could not acquire a session: {exc}", err=True)
        sys.exit(1)

    click.echo(f"\n📊 Worker {worker_index + 1}/{worker_count} summary\n" + "=" * 40)
    for result in report.categories:
        marker = "✅" if result.state == CategoryState.CATEGORY_DONE else "⚠️ "
        click.echo(
            f"{marker} {result.category_id:45s} {result.saved:6d}/{result.total_elements:<6d}"
            f" failed={result.failed} enriched={result.enriched}"
        )
    click.echo(f"Saved: {report.records_saved}, failed: {report.records_failed}")
    if report.skipped_categories:
        click.echo(f"Skipped categories: {', '.join(report.skipped_categories)}")


@cli.command()
@click.option("--worker-index", "-i", type=int, default=0, show_default=True)
@click.option("--worker-count", "-w", type=int, default=1, show_default=True)
@click.option("--executor", type=click.Choice(EXECUTORS), default="playwright", show_default=True)
def enrich(worker_index: int, worker_count: int, executor: str) -> None:
    """Fetch resources for stored records that have none yet."""
    if worker_count < 1 or not 0 <= worker_index < worker_count:
        raise click.BadParameter(
            f"worker index must be in [0, {worker_count}) with at least one worker",
            param_hint="--worker-index",
        )

    settings = SyncSettings.from_env()
    config = WorkerConfig(
        worker_index=worker_index,
        worker_count=worker_count,
        executor=executor,
    )
    click.echo(f"🔎 Enriching records, worker {worker_index + 1}/{worker_count}")

    try:
        report = asyncio.run(run_enrichment(config, settings))
    except CatalogSyncError as exc:
        click.echo(f"❌ Enrichment failed: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"✅ Assigned: {report.assigned}, enriched: {report.ok}, no resources: {report.skipped},"
        f" errors: {report.errors}, missing: {report.missing}"
    )


@cli.command("run-all")
@click.option("--workers", "-w", type=int, default=3, show_default=True)
@click.option(
    "--categories-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--enrich/--no-enrich", default=False)
@click.option("--dry-run", is_flag=True)
@click.option("--resume", is_flag=True)
@click.option("--executor", type=click.Choice(EXECUTORS), default="playwright", show_default=True)
@click.pass_context
def run_all(
    ctx: click.Context,
    workers: int,
    categories_file: Optional[Path],
    enrich: bool,
    dry_run: bool,
    resume: bool,
    executor: str,
) -> None:
    """Start one ``run`` process per worker and wait for all of them."""
    if workers < 1:
        raise click.BadParameter("at least one worker is required", param_hint="--workers")

    log_level = ctx.parent.params["log_level"] if ctx.parent else "INFO"
    processes: List[subprocess.Popen] = []
    for index in range(workers):
        command = [
            sys.executable,
            "-m",
            "catalog_etl.cli",
            "--log-level",
            log_level,
            "run",
            "--worker-index",
            str(index),
            "--worker-count",
            str(workers),
            "--executor",
            executor,
            "--enrich" if enrich else "--no-enrich",
        ]
        if categories_file:
            command += ["--categories-file", str(categories_file)]
        if dry_run:
            command.append("--dry-run")
        if resume:
            command.append("--resume")
        LOGGER.info("Spawning worker %d/%d", index + 1, workers)
        processes.append(subprocess.Popen(command))

    failures = 0
    for index, process in enumerate(processes):
        code = process.wait()
        if code != 0:
            failures += 1
            click.echo(f"❌ Worker {index + 1}/{workers} exited with code {code}", err=True)

    if failures:
        sys.exit(1)
    click.echo(f"✅ All {workers} workers finished")


@cli.command()
@click.option("--worker-count", "-w", type=int, required=True)
@click.option(
    "--categories-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def partition(worker_count: int, categories_file: Optional[Path]) -> None:
    """Show which categories each worker owns."""
    if worker_count < 1:
        raise click.BadParameter("at least one worker is required", param_hint="--worker-count")

    categories = load_categories(categories_file)
    slices = [
        partition_categories(categories, index, worker_count) for index in range(worker_count)
    ]

    for index, assigned in enumerate(slices):
        click.echo(f"Worker {index + 1}/{worker_count}: {len(assigned)} categories")
        for category in assigned:
            click.echo(f"  - {category.id}")


@cli.command()
@click.option("--worker-index", "-i", type=int, required=True)
def checkpoint(worker_index: int) -> None:
    """Print the last progress snapshot of a worker."""
    settings = SyncSettings.from_env()
    snapshot = Checkpointer(FileCheckpointSink(settings.checkpoint_dir)).load(worker_index)
    if snapshot is None:
        click.echo(f"No checkpoint for worker {worker_index}")
        return
    click.echo(
        orjson.dumps(snapshot.model_dump(mode="json"), option=orjson.OPT_INDENT_2).decode()
    )


@cli.command("init-db")
def init_db() -> None:
    """Create the datasets table and its indexes."""
    settings = SyncSettings.from_env()
    conn = get_db_connection(settings.database_url)
    try:
        init_schema(conn)
    finally:
        conn.close()
    click.echo("✅ Schema is ready")


@cli.command()
def stats() -> None:
    """Show record counts by sync status and category."""
    settings = SyncSettings.from_env()
    conn = get_db_connection(settings.database_url)
    try:
        data = fetch_stats(conn)
    finally:
        conn.close()
    click.echo("\n📊 Catalog Statistics\n" + "=" * 40)
    click.echo(f"Total records: {data['total']}")
    for status, count in sorted(data["by_status"].items()):
        click.echo(f"  {status:15s}: {count:6d}")
    click.echo("\nBy category:")
    for category, count in data["by_category"].items():
        click.echo(f"  {category or '(none)':45s}: {count:6d}")
    click.echo()


@cli.command("discover-categories")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("categories.yaml"),
    show_default=True,
)
@click.option("--executor", type=click.Choice(EXECUTORS), default="playwright", show_default=True)
def discover(output: Path, executor: str) -> None:
    """Fetch the portal's category list and write it as YAML."""
    settings = SyncSettings.from_env()
    try:
        categories = asyncio.run(run_discovery(settings, executor_name=executor))
    except CatalogSyncError as exc:
        click.echo(f"❌ Discovery failed: {exc}", err=True)
        sys.exit(1)

    dump_categories(categories, output)
    click.echo(f"✅ Wrote {len(categories)} categories to {output}")


if __name__ == "__main__":
    cli()
