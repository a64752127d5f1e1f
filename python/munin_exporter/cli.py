from __future__ import annotations

import argparse
import logging
import signal
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .catalog import Catalog
from .client import MuninClientConfig, RetryPolicy
from .errors import ConnectError, MuninError, ProtocolDesyncError
from .exporter import Exporter, ExporterConfig

logger = logging.getLogger("munin_exporter")


def _catalog_table(catalog: Catalog, hostname: str | None) -> Table:
    t = Table(title=f"munin node {hostname or '?'}")
    t.add_column("Metric", style="bold")
    t.add_column("Kind")
    t.add_column("Help")
    t.add_column("Value", justify="right")

    for entry in catalog:
        d = entry.descriptor
        value = "-" if entry.sample is None else f"{entry.sample.value:g}"
        t.add_row(d.name, d.kind.value, d.help, value)
    return t


def _setup_logging(verbose: bool, quiet: bool, console: Console) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def build_config(args: argparse.Namespace) -> ExporterConfig:
    munin = MuninClientConfig(
        host=args.host,
        port=args.port,
        retry=RetryPolicy(interval_s=args.retry_interval, max_attempts=args.max_retries),
    )
    extra: dict[str, Any] = {}
    if args.cmd == "serve":
        extra = dict(
            listen_address=args.listen_address,
            listen_port=args.listen_port,
            listen_path=args.listen_path,
            scrape_interval_s=args.interval,
            scrape_wait_s=args.scrape_wait,
        )
    return ExporterConfig(munin=munin, **extra)


def make_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="munin-exporter")
    p.add_argument("--host", default="localhost", help="munin-node host")
    p.add_argument("--port", default=4949, type=int, help="munin-node port")
    p.add_argument("--retry-interval", default=1.0, type=float, help="Seconds between reconnect attempts")
    p.add_argument("--max-retries", default=None, type=int, help="Give up reconnecting after N attempts (default: never)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log every fetched value")
    p.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")

    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Expose munin metrics to Prometheus")
    serve.add_argument("--listen-address", default="0.0.0.0")
    serve.add_argument("--listen-port", default=8080, type=int)
    serve.add_argument("--listen-path", default="/metrics")
    serve.add_argument("--interval", default=60.0, type=float, help="Seconds between scrapes of munin-node")
    serve.add_argument(
        "--scrape-wait",
        default=None,
        type=float,
        help="Max seconds a Prometheus scrape waits for a running fetch cycle (default: until it ends)",
    )

    sub.add_parser("catalog", help="List the metrics munin-node offers")
    sub.add_parser("once", help="Fetch every metric once and print it")
    return p


def main(argv: list[str] | None = None) -> int:
    args = make_parser().parse_args(argv)
    console = Console(stderr=True)
    _setup_logging(args.verbose, args.quiet, console)

    exporter = Exporter(build_config(args))
    try:
        catalog = exporter.discover()
    except ConnectError as e:
        logger.critical("Could not connect to %s: %s", exporter.cfg.munin.address, e)
        return 1
    except MuninError as e:
        logger.critical("Could not register metrics: %s", e)
        exporter.close()
        return 1

    if args.cmd == "catalog":
        Console().print(_catalog_table(catalog, exporter.client.hostname))
        exporter.close()
        return 0

    if args.cmd == "once":
        sampler = exporter.sampler
        try:
            ok = sampler.run_cycle()
        except ProtocolDesyncError as e:
            logger.critical("%s", e)
            return 1
        finally:
            exporter.close()
        Console().print(_catalog_table(catalog, exporter.client.hostname))
        return 0 if ok else 1

    if args.cmd == "serve":
        signal.signal(signal.SIGTERM, lambda signum, frame: exporter.stop())
        exporter.serve()
        try:
            exporter.run()
        except ProtocolDesyncError as e:
            logger.critical("Lost sync with munin-node, exiting: %s", e)
            return 1
        except KeyboardInterrupt:
            return 0
        return 0

    console.print("[red]Unknown command[/red]")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
