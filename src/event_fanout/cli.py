"""CLI entry point for the event fan-out worker."""

from __future__ import annotations

import click

from .core.enums import BrokerBackend


@click.group()
def main() -> None:
    """Event fan-out: route domain events to handlers through durable queues."""


@main.command()
@click.option("--config", default="configs/default.toml", help="Config file path")
@click.option("--concurrency", default=None, type=int, help="Jobs in flight per queue")
@click.option(
    "--backend",
    default=None,
    type=click.Choice([b.value for b in BrokerBackend]),
    help="Broker backend override",
)
def worker(config: str, concurrency: int | None, backend: str | None) -> None:
    """Run queue workers for every registered handler."""
    import asyncio

    from .main import run_worker

    overrides: dict = {}
    if concurrency is not None:
        overrides["processor"] = {"concurrency": concurrency}
    if backend:
        overrides["broker"] = {"backend": backend}

    asyncio.run(run_worker(config_path=config, overrides=overrides))


@main.command("publish-demo")
@click.option("--config", default="configs/default.toml", help="Config file path")
@click.option(
    "--backend",
    default=None,
    type=click.Choice([b.value for b in BrokerBackend]),
    help="Broker backend override",
)
def publish_demo(config: str, backend: str | None) -> None:
    """Publish a sample user.account.created and order.created event."""
    import asyncio

    from .main import publish_demo as _publish_demo

    overrides: dict = {}
    if backend:
        overrides["broker"] = {"backend": backend}

    results = asyncio.run(_publish_demo(config_path=config, overrides=overrides))
    for result in results:
        click.echo(f"{result.event_type} {result.event_id}")
        if result.dropped:
            click.echo("  (no handlers bound)")
        for job in result.jobs:
            status = "enqueued" if job.created else "duplicate"
            click.echo(f"  {job.queue_name:35s} {job.job_id}  [{status}]")


@main.command()
def routes() -> None:
    """Print the event type -> queue -> handler routing table."""
    from .bus.registry import HandlerRegistry
    from .handlers import ALL_HANDLERS

    registry = HandlerRegistry()
    for definition in ALL_HANDLERS:
        registry.register(definition)

    click.echo(f"{'EVENT TYPE':25s} {'QUEUE':35s} HANDLER")
    click.echo("-" * 90)
    for binding in registry.bindings:
        click.echo(
            f"{binding.event_type.value:25s} {binding.queue_name:35s} "
            f"{binding.handler_class}"
        )
