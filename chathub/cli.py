"""Command line interface for the chat hub."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any

from chathub.config import get_config
from chathub.hub import Hub
from chathub.models.registry import ModelRegistry


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def cmd_serve(args: argparse.Namespace) -> None:
    from chathub.server import serve
    config = get_config()
    host = args.host or config.server.get("host", "127.0.0.1")
    port = args.port or int(config.server.get("port", 3000))
    serve(host, port)


def cmd_models(args: argparse.Namespace) -> None:
    config = get_config()
    registry = ModelRegistry.from_config(config.models)
    if args.models_cmd == "status":
        _print({"providers": registry.provider_status()})
    else:
        _print({"mediator": registry.mediator, "models": registry.list_models()})


async def _ask(args: argparse.Namespace) -> dict:
    hub = Hub.build(get_config())
    card = hub.registry.get_model(hub.registry.normalize_model_id(args.model))
    if card is None:
        return {"success": False, "error": f"unknown model {args.model}"}
    result = await hub.gateway.invoke(card.id, args.prompt, timeout=args.timeout)
    payload = result.to_dict()
    if result.ok:
        payload["validation"] = hub.validator.validate(card.id, result.text)
    return payload


def cmd_ask(args: argparse.Namespace) -> None:
    _print(asyncio.run(_ask(args)))


async def _opinions(args: argparse.Namespace) -> dict:
    config = get_config()
    hub = Hub.build(config)
    registry = hub.registry
    if args.models:
        models = [registry.normalize_model_id(m) for m in args.models]
    else:
        await hub.availability.refresh()
        models = [m for m in registry.working_models() if m != registry.mediator]
    issue_id = args.issue or config.default_issue_id
    session = hub.sessions.create_session(args.topic, issue_id, models, origin="cli")
    try:
        await hub.sessions.run_session(session.session_id)
        return hub.sessions.get_session(session.session_id) or {}
    finally:
        await hub.shutdown()


def cmd_opinions(args: argparse.Namespace) -> None:
    _print(asyncio.run(_opinions(args)))


async def _create_issue(args: argparse.Namespace) -> dict:
    hub = Hub.build(get_config())
    issue = await hub.store.create_issue(
        args.title, args.body, labels=args.label or [], priority=args.priority,
    )
    return {"success": True, "issue_id": issue["id"], "title": issue["title"]}


def cmd_create_issue(args: argparse.Namespace) -> None:
    _print(asyncio.run(_create_issue(args)))


async def _issues(args: argparse.Namespace) -> dict:
    hub = Hub.build(get_config())
    if args.feed:
        return await hub.store.feed()
    return await hub.store.load()


def cmd_issues(args: argparse.Namespace) -> None:
    _print(asyncio.run(_issues(args)))


async def _retest(args: argparse.Namespace) -> dict:
    hub = Hub.build(get_config())
    snapshot = await hub.availability.refresh(force=True)
    return snapshot.to_dict()


def cmd_retest(args: argparse.Namespace) -> None:
    _print(asyncio.run(_retest(args)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chathub")
    parser.add_argument("--log-level")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    models = sub.add_parser("models")
    models_sub = models.add_subparsers(dest="models_cmd")
    models_sub.add_parser("list")
    models_sub.add_parser("status")

    ask = sub.add_parser("ask", help="Invoke one model directly")
    ask.add_argument("model")
    ask.add_argument("prompt")
    ask.add_argument("--timeout", type=float)

    opinions = sub.add_parser("opinions", help="Collect opinions from several models")
    opinions.add_argument("--topic", required=True)
    opinions.add_argument("--issue", type=int)
    opinions.add_argument("--models", nargs="*")

    create = sub.add_parser("create-issue")
    create.add_argument("--title", required=True)
    create.add_argument("--body", required=True)
    create.add_argument("--label", action="append")
    create.add_argument("--priority", default="medium", choices=["high", "medium", "low"])

    issues = sub.add_parser("issues")
    issues.add_argument("--feed", action="store_true", help="Flattened comment feed")

    sub.add_parser("retest", help="Probe provider availability now")
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=(args.log_level or get_config().log_level).upper())
    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "models":
        cmd_models(args)
    elif args.command == "ask":
        cmd_ask(args)
    elif args.command == "opinions":
        cmd_opinions(args)
    elif args.command == "create-issue":
        cmd_create_issue(args)
    elif args.command == "issues":
        cmd_issues(args)
    elif args.command == "retest":
        cmd_retest(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
