"""Main entry point for the promoter CLI."""

import asyncio
import importlib
import json
import sys
from pathlib import Path
from typing import Optional

import click
from prometheus_client import CollectorRegistry

from promoter.config import PromoterConfig, WarehouseConfig, load_config
from promoter.exceptions import ConfigurationError, PromoterError
from promoter.job import Job
from promoter.metrics import PromoterMetrics
from promoter.queries import QueryBuilder
from promoter.runner import PromotionRunner
from promoter.sequencer import PromotionSequencer
from promoter.warehouse import Warehouse
from utils.logging import LOG_LEVELS, configure_logging


def load_warehouse(config: WarehouseConfig) -> Warehouse:
    """Instantiate the warehouse client named by ``client_factory``.

    Raises:
        ConfigurationError: If no factory is configured or it cannot be loaded
    """
    if not config.client_factory:
        raise ConfigurationError("warehouse.client_factory is required for this command")
    module_name, _, attr = config.client_factory.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"client_factory must look like 'module:callable', got {config.client_factory!r}"
        )
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Cannot load warehouse client factory {config.client_factory!r}: {e}"
        ) from e

    client = factory(project=config.project, **config.client_options)
    if not isinstance(client, Warehouse):
        raise ConfigurationError(
            f"client_factory returned {type(client).__name__}, expected a Warehouse"
        )
    return client


def _parse_job(bucket: str, experiment: str, datatype: str, date: str) -> Job:
    try:
        return Job.create(bucket, experiment, datatype, date)
    except ValueError as e:
        raise click.BadParameter(f"Invalid date {date!r}: {e}", param_hint="--date") from e


def _load(ctx: click.Context) -> PromoterConfig:
    config_path: Optional[Path] = ctx.obj["config_path"]
    if config_path is None:
        raise click.UsageError("--config is required for this command")
    config = load_config(config_path)
    config.register_datatypes()
    return config


def _build_sequencer(config: PromoterConfig) -> PromotionSequencer:
    metrics = (
        PromoterMetrics(registry=CollectorRegistry())
        if config.monitoring.metrics_enabled
        else None
    )
    return PromotionSequencer(load_warehouse(config.warehouse), config, metrics=metrics)


def _export_metrics(sequencer: PromotionSequencer, config: PromoterConfig) -> None:
    if sequencer.metrics and config.monitoring.metrics_textfile:
        sequencer.metrics.write_textfile(config.monitoring.metrics_textfile)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Log level",
)
@click.option(
    "--log-format",
    default="console",
    type=click.Choice(["console", "json"], case_sensitive=False),
    help="Log format: 'console' for human-readable output, 'json' for structured logs",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], log_level: str, log_format: str) -> None:
    """Deduplicate staging partitions and promote them into archive tables."""
    logger = configure_logging(log_level=log_level, log_format=log_format)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["logger"] = logger.bind(component="main")


@main.command()
@click.option("--datatype", required=True, help="Datatype, e.g. ndt7")
@click.option("--experiment", required=True, help="Experiment, e.g. ndt")
@click.option("--date", "date_", required=True, help="Partition date (YYYY-MM-DD or YYYYMMDD)")
@click.option("--project", help="Project (defaults to warehouse.project from --config)")
@click.option("--bucket", default="", help="Source bucket of the job")
@click.pass_context
def queries(
    ctx: click.Context,
    datatype: str,
    experiment: str,
    date_: str,
    project: Optional[str],
    bucket: str,
) -> None:
    """Print the dedup and cleanup SQL for one partition."""
    logger = ctx.obj["logger"]
    try:
        staging_prefix, archive_prefix = "staging_", "archive_"
        if ctx.obj["config_path"] is not None:
            config = _load(ctx)
            project = project or config.warehouse.project
            staging_prefix = config.warehouse.staging_prefix
            archive_prefix = config.warehouse.archive_prefix
        if not project:
            raise click.UsageError("--project or --config is required")

        job = _parse_job(bucket, experiment, datatype, date_)
        builder = QueryBuilder(
            project, job, staging_prefix=staging_prefix, archive_prefix=archive_prefix
        )
        click.echo(f"-- dedup {builder.staging_partition}")
        click.echo(builder.dedup_query())
        click.echo()
        click.echo(f"-- cleanup {builder.staging_partition}")
        click.echo(builder.cleanup_query())
    except PromoterError as e:
        logger.error("Cannot render queries", error=str(e))
        sys.exit(1)


@main.command("dry-run")
@click.option("--datatype", required=True, help="Datatype, e.g. ndt7")
@click.option("--experiment", required=True, help="Experiment, e.g. ndt")
@click.option("--date", "date_", required=True, help="Partition date (YYYY-MM-DD or YYYYMMDD)")
@click.pass_context
def dry_run(ctx: click.Context, datatype: str, experiment: str, date_: str) -> None:
    """Validate and cost the dedup query without modifying data."""
    logger = ctx.obj["logger"]
    try:
        config = _load(ctx)
        job = _parse_job("", experiment, datatype, date_)
        sequencer = _build_sequencer(config)
        status = asyncio.run(sequencer.dry_run_dedup(job))
        click.echo(json.dumps({"job": job.key, "bytes_processed": status.total_bytes_processed}))
    except PromoterError as e:
        logger.error("Dry run failed", error=str(e))
        sys.exit(1)


@main.command()
@click.option("--experiment", required=True, help="Experiment, e.g. ndt")
@click.option("--date", "date_", required=True, help="Partition date (YYYY-MM-DD or YYYYMMDD)")
@click.option("--datatype", "datatypes", required=True, multiple=True, help="Datatype (repeatable)")
@click.option("--bucket", default="", help="Source bucket of the jobs")
@click.pass_context
def promote(
    ctx: click.Context,
    experiment: str,
    date_: str,
    datatypes: tuple[str, ...],
    bucket: str,
) -> None:
    """Dedup, check, copy and clean up partitions of one date."""
    logger = ctx.obj["logger"]
    try:
        config = _load(ctx)
        jobs = [_parse_job(bucket, experiment, datatype, date_) for datatype in datatypes]
        sequencer = _build_sequencer(config)
        runner = PromotionRunner(
            sequencer,
            retry=config.retry,
            runner=config.runner,
            logger=logger,
        )
        stats = asyncio.run(runner.run(jobs))
        _export_metrics(sequencer, config)
    except PromoterError as e:
        logger.error("Promotion failed", error=str(e))
        sys.exit(1)

    click.echo(json.dumps(stats, indent=2, default=str))
    if stats["aborted"] or stats["promoted_cleanup_failed"]:
        sys.exit(1)


@main.command()
@click.option("--experiment", required=True, help="Experiment, e.g. ndt")
@click.option("--date", "date_", required=True, help="Partition date (YYYY-MM-DD or YYYYMMDD)")
@click.option("--datatype", required=True, help="Datatype, e.g. ndt7")
@click.pass_context
def cleanup(ctx: click.Context, experiment: str, date_: str, datatype: str) -> None:
    """Retry only the cleanup of an already promoted partition."""
    logger = ctx.obj["logger"]
    try:
        config = _load(ctx)
        job = _parse_job("", experiment, datatype, date_)
        sequencer = _build_sequencer(config)
        result = asyncio.run(sequencer.cleanup(job))
        if sequencer.metrics:
            sequencer.metrics.record_outcome(job.datatype, result.outcome)
        _export_metrics(sequencer, config)
    except PromoterError as e:
        logger.error("Cleanup failed", error=str(e))
        sys.exit(1)

    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.succeeded:
        sys.exit(1)


if __name__ == "__main__":
    main()
