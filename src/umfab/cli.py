"""CLI entry point for umfab."""

import argparse
import asyncio
import json
import logging
import sys

from .config import FabricConfig, config_to_yaml, load_config, merge_cli_args
from .errors import FabricError
from .fabric import Fabric


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add store connection and output flags shared by every subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--namespace", type=str, help="Key and channel prefix (default: umfab)")
    parser.add_argument(
        "--redis-host", type=str, dest="redis_host",
        help="Redis host (default: 127.0.0.1)",
    )
    parser.add_argument("--redis-port", type=int, dest="redis_port", help="Redis port (default: 6379)")
    parser.add_argument("--redis-db", type=int, dest="redis_db", help="Redis database (default: 0)")
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def _add_service_args(parser: argparse.ArgumentParser) -> None:
    """Add the flags describing the service this process registers as."""
    parser.add_argument("--service-name", type=str, dest="service_name", help="Service name")
    parser.add_argument("--service-type", type=str, dest="service_type", help="Service type tag")
    parser.add_argument(
        "--service-description", type=str, dest="service_description",
        help="Human readable description",
    )
    parser.add_argument("--service-ip", type=str, dest="service_ip", help="Address peers reach us on")
    parser.add_argument("--service-port", type=int, dest="service_port", help="Port peers reach us on")
    parser.add_argument("--service-version", type=str, dest="service_version", help="Service version")
    parser.add_argument(
        "--heartbeat-interval", type=float, dest="heartbeat_interval",
        help="Seconds between presence refreshes (default: 1.0)",
    )
    parser.add_argument(
        "--presence-ttl", type=float, dest="presence_ttl",
        help="Seconds a presence key lives without a refresh (default: 3.0)",
    )


def _build_config(args) -> FabricConfig:
    """Build a FabricConfig from a config file + CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = FabricConfig()
    return merge_cli_args(config, args)


# ---------------------------------------------------------------------------
# Output formatting
# ---------------------------------------------------------------------------

def _format_services(services, counts: dict, fmt: str) -> str:
    """Format a list of ServiceEntry objects for output."""
    if fmt == "json":
        return json.dumps(
            [dict(s.to_dict(), instances=counts.get(s.service_name, 0)) for s in services],
            indent=2,
        )
    lines = []
    for s in services:
        lines.append(
            f"{s.service_name}  type={s.service_type}  version={s.version}"
            f"  instances={counts.get(s.service_name, 0)}"
        )
    return "\n".join(lines) if lines else "(no services)"


def _format_presence(records, fmt: str) -> str:
    """Format a list of PresenceRecord objects for output."""
    if fmt == "json":
        return json.dumps([r.to_dict() for r in records], indent=2)
    lines = []
    for r in records:
        lines.append(f"{r.instance_id}  {r.host}:{r.port}  pid={r.process_id}  updated_on={r.updated_on}")
    return "\n".join(lines) if lines else "(no live instances)"


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

async def _services(args) -> None:
    async with Fabric(_build_config(args)) as fabric:
        services = await fabric.get_services()
        counts = await fabric.discovery.count_instances()
    print(_format_services(services, counts, args.format))


async def _find(args) -> None:
    async with Fabric(_build_config(args)) as fabric:
        entry = await fabric.find_service(args.name)
    if args.format == "json":
        print(json.dumps(entry.to_dict(), indent=2))
    else:
        print(f"{entry.service_name}  type={entry.service_type}  {entry.description}")


async def _presence(args) -> None:
    async with Fabric(_build_config(args)) as fabric:
        records = await fabric.get_service_presence(args.name)
    print(_format_presence(records, args.format))


async def _send(args) -> None:
    try:
        body = json.loads(args.body)
    except ValueError as exc:
        raise FabricError(f"--body is not valid JSON: {exc}") from exc
    async with Fabric(_build_config(args)) as fabric:
        message = fabric.create_message({"to": args.to, "from": args.sender, "body": body})
        result = await fabric.send_message(message)
    if args.format == "json":
        print(json.dumps({"mid": result.mid, "channel": result.channel, "receivers": result.receivers}))
    else:
        print(f"{result.mid} -> {result.channel} ({result.receivers} receiver(s))")


async def _prune(args) -> None:
    async with Fabric(_build_config(args)) as fabric:
        pruned = await fabric.registry.prune_stale()
    print(f"Pruned {len(pruned)} stale instance(s)")


async def _run(args) -> None:
    async with Fabric(_build_config(args)) as fabric:
        descriptor = await fabric.register_service()
        print(
            f"Registered {descriptor.service_name} as {fabric.instance_id} "
            f"({descriptor.host}:{descriptor.port})",
            file=sys.stderr,
        )
        async for message in fabric.messages():
            if args.format == "json":
                print(json.dumps(message.to_dict()), flush=True)
            else:
                print(f"{message.timestamp}  {message.from_} -> {message.to}  {json.dumps(message.body)}", flush=True)


def cmd_show_config(args) -> None:
    print(config_to_yaml(_build_config(args)), end="")


def _async_command(coro_fn):
    def run(args) -> None:
        asyncio.run(coro_fn(args))
    return run


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="umfab",
        description="umfab: service registry and UMF messaging over Redis",
    )
    parser.add_argument(
        "--log-level", type=str, default="WARNING", dest="log_level",
        help="Logging level for library messages (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # services
    services_parser = subparsers.add_parser("services", help="List services with live instances")
    _add_common_args(services_parser)
    services_parser.set_defaults(func=_async_command(_services))

    # find
    find_parser = subparsers.add_parser("find", help="Look up one live service")
    _add_common_args(find_parser)
    find_parser.add_argument("name", type=str, help="Service name")
    find_parser.set_defaults(func=_async_command(_find))

    # presence
    presence_parser = subparsers.add_parser("presence", help="List live instances of a service")
    _add_common_args(presence_parser)
    presence_parser.add_argument("name", type=str, help="Service name")
    presence_parser.set_defaults(func=_async_command(_presence))

    # send
    send_parser = subparsers.add_parser("send", help="Send a UMF message")
    _add_common_args(send_parser)
    send_parser.add_argument("to", type=str, help="Address: [instanceID@]serviceName[:path]")
    send_parser.add_argument(
        "--from", type=str, dest="sender", default="umfab-cli:/",
        help="Sender address (default: umfab-cli:/)",
    )
    send_parser.add_argument("--body", type=str, default="{}", help="JSON message body (default: {})")
    send_parser.set_defaults(func=_async_command(_send))

    # run
    run_parser = subparsers.add_parser(
        "run", help="Register as a service and print inbound messages until interrupted",
    )
    _add_common_args(run_parser)
    _add_service_args(run_parser)
    run_parser.set_defaults(func=_async_command(_run))

    # prune
    prune_parser = subparsers.add_parser("prune", help="Remove records of expired instances")
    _add_common_args(prune_parser)
    prune_parser.set_defaults(func=_async_command(_prune))

    # show-config
    show_parser = subparsers.add_parser("show-config", help="Print the effective configuration")
    _add_common_args(show_parser)
    _add_service_args(show_parser)
    show_parser.set_defaults(func=cmd_show_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        args.func(args)
    except KeyboardInterrupt:
        pass
    except FabricError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
