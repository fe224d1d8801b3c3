from __future__ import annotations
import logging
import sys

import click

from .collectors import ContainersCollector, OsCollector, ProcCollector, StorageCollector
from .config import AppConfig, ConfigError, DigestThresholds, load_config
from .logs import setup_logging
from .models import CollectionContext
from .network import NetworkCollector
from .registry import Registry
from .report import collect_report

log = logging.getLogger(__name__)


def build_registry(cfg: AppConfig) -> Registry:
    """Every built-in collector, registered in one place."""
    registry = Registry()

    def proc() -> ProcCollector:
        return ProcCollector(proc_root=cfg.proc_root)

    def network() -> NetworkCollector:
        return NetworkCollector(cfg.proc_root, cfg.max_socket_samples)

    def containers() -> ContainersCollector:
        return ContainersCollector(cfg.command_timeout_seconds)

    registry.register(OsCollector, id="os")
    registry.register(proc, id="proc")
    registry.register(StorageCollector, id="storage")
    registry.register(network, id="network")
    registry.register(containers, id="containers")
    return registry


@click.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False),
              help="Config file (default: ~/.hostreport/config.json).")
@click.option("--since", default=None, help="Time filter passed to collectors.")
@click.option("--compact", is_flag=True, help="Print JSON on a single line.")
@click.option("--log-level", default=None, help="Override the configured log level.")
def main(config_path, since, compact, log_level):
    """Collect a point-in-time diagnostics report for this host and print it as JSON."""
    try:
        cfg = load_config(config_path)
        thresholds = DigestThresholds.from_config(cfg)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(2)

    setup_logging(log_level or cfg.log_level)
    registry = build_registry(cfg)
    log.info("Running %d collectors", len(registry))

    report = collect_report(registry, CollectionContext(since=since), thresholds)
    click.echo(report.to_json(indent=None if compact else 2))


if __name__ == "__main__":
    main()
