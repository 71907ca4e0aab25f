"""CLI entry point for flowchat."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from flowchat.app import FlowChatApp
from flowchat.config import AppConfig, load_config
from flowchat.core.context import PageInfo, RequestContext, VisitorInfo
from flowchat.core.errors import ChatError
from flowchat.core.registry import InstanceRegistry
from flowchat.log import setup_logging, webhook_host
from flowchat.routing.resolver import InstanceResolver


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="flowchat",
        description="Routing, session and streaming runtime for webhook-backed chat widgets",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def _add_config_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    # start command
    start_parser = subparsers.add_parser("start", help="Run the maintenance scheduler")
    _add_config_args(start_parser)

    # config-check command
    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    # route command
    route_parser = subparsers.add_parser("route", help="Show which instance a page resolves to")
    _add_config_args(route_parser)
    route_parser.add_argument("--url", required=True, help="Page URL")
    route_parser.add_argument("--role", action="append", default=[], help="Visitor role (repeatable)")
    route_parser.add_argument("--post-type", default="", help="Page post type")
    route_parser.add_argument("--page-id", default=None, help="Page ID")
    route_parser.add_argument("--category", action="append", default=[], help="Page category (repeatable)")

    # chat command
    chat_parser = subparsers.add_parser("chat", help="Talk to an instance from the terminal")
    _add_config_args(chat_parser)
    chat_parser.add_argument("--instance", required=True, help="Instance ID")
    chat_parser.add_argument("--url", default="http://localhost/", help="Page URL for the context map")
    chat_parser.add_argument("--token", default=None, help="Capability token sent as a bearer header")

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Close idle sessions and purge old ones once")
    _add_config_args(sweep_parser)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load_or_exit(args.config, args.env)
    setup_logging(config.log_level)

    match args.command:
        case "route":
            _route(config, args)
        case "chat":
            asyncio.run(_chat(config, args.instance, args.url, args.token))
        case "sweep":
            asyncio.run(_sweep(config))
        case "start":
            asyncio.run(_run(config))


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and fill in your instances")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load_or_exit(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Site: {config.site.name or '(unnamed)'} ({config.site.timezone})")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Instances configured: {len(config.instances)}")
    for instance in config.instances:
        flags = []
        if instance.is_default:
            flags.append("default")
        if not instance.is_enabled:
            flags.append("disabled")
        if instance.targeting.enabled:
            flags.append(f"priority={instance.targeting.priority}, rules={len(instance.targeting.rules)}")
        suffix = f" [{'; '.join(flags)}]" if flags else ""
        print(f"    - {instance.id} -> {webhook_host(instance.webhook_url)}{suffix}")
    limits = ", ".join(f"{op} {r.threshold}/{r.window_seconds:g}s" for op, r in config.rate_limits.items())
    print(f"  Rate limits: {limits}")
    print(f"  Sweep: {config.scheduler.sweep_cron} ({config.scheduler.timezone})")


def _route(config: AppConfig, args: argparse.Namespace) -> None:
    """Print the targeted and embed-fallback instance for a URL."""
    roles = tuple(args.role)
    visitor = VisitorInfo(user_id="cli", roles=roles) if roles and roles != ("guest",) else VisitorInfo()
    request = RequestContext(
        url=args.url,
        visitor=visitor,
        page=PageInfo(id=args.page_id, post_type=args.post_type, categories=tuple(args.category)),
    )
    resolver = InstanceResolver(InstanceRegistry(config.instances))
    targeted = resolver.resolve(request)
    embed = resolver.resolve_with_default(request)
    print(f"URL: {args.url} (path {request.path})")
    print(f"  Targeted: {targeted.id if targeted else '(none)'}")
    print(f"  Embed:    {embed.id if embed else '(none)'}")


async def _chat(config: AppConfig, instance_id: str, url: str, token: str | None) -> None:
    """Interactive terminal conversation that prints streamed text."""
    app = FlowChatApp(config)
    await app.start(run_scheduler=False)
    try:
        try:
            conversation = await app.open_conversation(
                instance_id, RequestContext(url=url), client_identity="cli", token=token
            )
        except ChatError as e:
            print(f"[{e.code}] {e}", file=sys.stderr)
            return

        print(f"Session {conversation.get_session_id()} - empty line or Ctrl-D to quit")
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, _read_line)
            if not line:
                break
            printed = 0
            try:
                async for result in conversation.send(line):
                    print(result.text[printed:], end="", flush=True)
                    printed = len(result.text)
                print()
            except ChatError as e:
                print(f"\n[{e.code}] {e} (recovery: {e.recovery.value})", file=sys.stderr)
    finally:
        await app.stop()


def _read_line() -> str:
    try:
        return input("> ").strip()
    except EOFError:
        return ""


async def _sweep(config: AppConfig) -> None:
    app = FlowChatApp(config)
    await app.start(run_scheduler=False)
    try:
        purged = await app.scheduler.run_sweep()
        print(f"Purged {purged} session(s)")
    finally:
        await app.stop()


async def _run(config: AppConfig) -> None:
    """Run maintenance until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(stop_event.set))

    app = FlowChatApp(config)
    await app.start()
    try:
        await stop_event.wait()
    finally:
        await app.stop()


if __name__ == "__main__":
    main()
