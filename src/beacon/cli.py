"""CLI entry point for Beacon."""

import argparse
import json
import logging
import signal
import sys
import threading

from .client import EurekaClient
from .config import ClientConfig, config_to_yaml, load_config_file, merge_cli_args
from .endpoints import EndpointResolver, ServiceUrlRing
from .errors import BeaconError, TransportError
from .events import SIGNALS
from .registry import RegistryCache, RegistryFetcher
from .transport import HttpTransport


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by `run` and `config`."""
    parser.add_argument("--config", type=str, required=True, help="Path to YAML config file")
    parser.add_argument(
        "--env", type=str, default=None,
        help="Environment name; also loads <config>-<env>.yml (default: $BEACON_ENV or development)",
    )
    parser.add_argument(
        "--service-url", action="append", dest="service_urls",
        help="Registry base URL, e.g. http://eureka:8761/eureka/apps/ (repeatable)",
    )
    parser.add_argument(
        "--heartbeat-interval", type=float, dest="heartbeat_interval",
        help="Seconds between heartbeats (default: 30)",
    )
    parser.add_argument(
        "--registry-fetch-interval", type=float, dest="registry_fetch_interval",
        help="Seconds between registry fetches (default: 30)",
    )
    parser.add_argument(
        "--ec2-region", type=str, dest="ec2_region",
        help="EC2 region used for DNS based registry discovery",
    )
    parser.add_argument(
        "--wait-for-registry", action="store_true", dest="wait_for_registry",
        default=None,
        help="Block start-up until this instance's VIP address appears in the registry",
    )


def _build_config(args) -> ClientConfig:
    """Build a ClientConfig from the config file(s) + CLI overrides."""
    try:
        return load_config_file(args.config, env=args.env, overrides=merge_cli_args(args))
    except BeaconError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_run(args) -> None:
    """Register this instance and keep it alive until SIGINT/SIGTERM."""
    config = _build_config(args)
    client = EurekaClient(config)

    for name in SIGNALS:
        client.on(name, lambda name=name: print(f"[beacon] {name}", file=sys.stderr))

    shutdown = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: shutdown.set())
    signal.signal(signal.SIGTERM, lambda *_: shutdown.set())

    print(
        f"Registering {config.instance.app} with {client.current_service_url}",
        file=sys.stderr,
    )
    try:
        client.start()
    except BeaconError as exc:
        print(f"Error: failed to start: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"Running as {config.instance.app}/{client.instance_id}; Ctrl-C to stop", file=sys.stderr)
    while not shutdown.wait(1.0):
        pass

    print("Stopping, deregistering...", file=sys.stderr)
    try:
        client.stop()
    except BeaconError as exc:
        print(f"Error: deregistration failed: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_config(args) -> None:
    """Print the fully resolved configuration."""
    print(config_to_yaml(_build_config(args)), end="")


# ---------------------------------------------------------------------------
# beacon registry subcommand
# ---------------------------------------------------------------------------

def _fetch_registry(args) -> RegistryCache:
    """Fetch the registry once, trying each service URL in turn on transport errors."""
    ring = ServiceUrlRing(args.service_urls)
    cache = RegistryCache()
    fetcher = RegistryFetcher(
        EndpointResolver(ring),
        HttpTransport(timeout=args.timeout),
        cache,
        filter_up_instances=not args.all,
    )
    for _ in range(len(ring)):
        try:
            fetcher.fetch()
            return cache
        except TransportError as exc:
            print(f"Warning: {exc}", file=sys.stderr)
            ring.rotate()
        except BeaconError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
    print("Error: no registry server could be reached.", file=sys.stderr)
    sys.exit(1)


def _instance_port(instance: dict):
    port = instance.get("port")
    if isinstance(port, dict):
        return port.get("$")
    return port


def _format_instances(instances, fmt: str) -> str:
    """Format a list of registry instance records for output."""
    if fmt == "json":
        return json.dumps(instances, indent=2)
    lines = []
    for i in instances:
        instance_id = i.get("instanceId") or i.get("hostName")
        lines.append(
            f"{i.get('app')}  {instance_id}  {i.get('hostName')}:{_instance_port(i)}"
            f"  {i.get('status')}  vip={i.get('vipAddress')}"
        )
    return "\n".join(lines) if lines else "(no instances)"


def cmd_registry_apps(args) -> None:
    cache = _fetch_registry(args)
    apps = cache.snapshot.apps
    if args.format == "json":
        print(json.dumps({app: len(apps[app]) for app in sorted(apps)}, indent=2))
        return
    lines = [f"{app}  {len(apps[app])} instance(s)" for app in sorted(apps)]
    print("\n".join(lines) if lines else "(no applications)")


def cmd_registry_app(args) -> None:
    cache = _fetch_registry(args)
    print(_format_instances(cache.get_instances_by_app_id(args.app_id), args.format))


def cmd_registry_vip(args) -> None:
    cache = _fetch_registry(args)
    print(_format_instances(cache.get_instances_by_vip_address(args.vip_address), args.format))


def _add_registry_args(parser: argparse.ArgumentParser) -> None:
    """Add --service-url, --format and friends to a registry sub-parser."""
    parser.add_argument(
        "--service-url", action="append", dest="service_urls", required=True,
        help="Registry base URL, e.g. http://eureka:8761/eureka/apps/ (repeatable)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    parser.add_argument(
        "--all", action="store_true",
        help="Include instances that are not UP",
    )
    parser.add_argument(
        "--timeout", type=float, default=10.0,
        help="HTTP timeout in seconds (default: 10)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="beacon",
        description="Beacon: Eureka service registry client",
    )
    parser.add_argument(
        "--log-level", default="WARNING", dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # run
    run_parser = subparsers.add_parser(
        "run", help="Register this instance and send heartbeats until interrupted",
    )
    _add_config_args(run_parser)
    run_parser.set_defaults(func=cmd_run)

    # config
    config_parser = subparsers.add_parser(
        "config", help="Print the resolved configuration",
    )
    _add_config_args(config_parser)
    config_parser.set_defaults(func=cmd_config)

    # registry
    registry_parser = subparsers.add_parser(
        "registry", help="Query a registry server",
    )
    registry_sub = registry_parser.add_subparsers(dest="registry_command")

    # registry apps
    reg_apps = registry_sub.add_parser("apps", help="List registered applications")
    _add_registry_args(reg_apps)
    reg_apps.set_defaults(func=cmd_registry_apps)

    # registry app
    reg_app = registry_sub.add_parser("app", help="List the instances of one application")
    _add_registry_args(reg_app)
    reg_app.add_argument("app_id", type=str, help="Application name")
    reg_app.set_defaults(func=cmd_registry_app)

    # registry vip
    reg_vip = registry_sub.add_parser("vip", help="List the instances behind a VIP address")
    _add_registry_args(reg_vip)
    reg_vip.add_argument("vip_address", type=str, help="VIP address")
    reg_vip.set_defaults(func=cmd_registry_vip)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "registry" and not args.registry_command:
        registry_parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.func(args)
