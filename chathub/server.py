"""FastAPI server for the chat hub."""
from __future__ import annotations

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from typing import Any, Dict, List
import asyncio
import json
import logging

from chathub.config import get_config
from chathub.hub import Hub
from chathub.store import IssueNotFoundError, StoreError

logger = logging.getLogger(__name__)

app = FastAPI(title="Chat Hub")


def _field(payload: dict, *names: str, default: Any = None) -> Any:
    for name in names:
        if payload.get(name) is not None:
            return payload[name]
    return default


def _issue_id(value: Any, default: int) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def _install_loop_handler(hub: Hub) -> None:
    loop = asyncio.get_running_loop()

    async def _fatal() -> None:
        await hub.shutdown()
        # routes are useless once the hub is down
        server = getattr(app.state, "server", None)
        if server is not None:
            server.should_exit = True

    def _handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is None:
            loop.default_exception_handler(context)
            return
        logger.critical(f"Unhandled error in event loop: {context.get('message')}", exc_info=exc)
        loop.create_task(_fatal())

    loop.set_exception_handler(_handler)


@app.on_event("startup")
async def _startup() -> None:
    if getattr(app.state, "hub", None) is None:
        config = get_config()
        app.state.hub = Hub.build(config)
    hub = app.state.hub
    _install_loop_handler(hub)
    hub.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    hub = getattr(app.state, "hub", None)
    if hub is not None:
        await hub.shutdown()


@app.get("/health")
async def health():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "chathub"}


@app.get("/api/status")
async def status_api(request: Request):
    hub = request.app.state.hub
    registry = hub.registry
    working = registry.working_models()
    return {
        "working_apis": working,
        "providers": registry.provider_status(),
        "available_models": {
            "builtin": registry.builtin_ids(),
            "external": [m for m in working if m not in registry.builtin_ids()],
        },
        "mediator": registry.mediator,
        "sessions": hub.sessions.list_sessions(),
        "cache_info": hub.availability.cache_info(),
    }


@app.get("/api/models-list")
async def models_list_api(request: Request):
    registry = request.app.state.hub.registry
    snapshot = registry.snapshot
    external: Dict[str, Dict[str, List]] = {}
    for card in registry.list_models():
        if card["concurrency_class"] == "builtin":
            continue
        bucket = external.setdefault(card["provider"], {"working": [], "failed": []})
        key = "working" if card["provider"] in snapshot.working_providers else "failed"
        bucket[key].append(card["id"])
    return {
        "builtin": registry.builtin_ids(),
        "external": external,
        "working_providers": sorted(snapshot.working_providers),
        "failed": [dict(item) for item in snapshot.failed],
        "checked_at": snapshot.checked_at,
    }


@app.post("/api/retest")
async def retest_api(request: Request):
    snapshot = await request.app.state.hub.availability.refresh(force=True)
    return {"success": True, **snapshot.to_dict()}


@app.get("/api/costs")
async def costs_api(request: Request):
    return request.app.state.hub.ledger.summary()


@app.post("/api/models/opinions")
async def opinions_api(payload: dict, request: Request):
    hub = request.app.state.hub
    topic = str(payload.get("topic") or "").strip()
    if not topic:
        return _error("topic required", 400)
    issue_id = _issue_id(_field(payload, "issueId", "issue_id"), hub.config.default_issue_id)
    if issue_id is None:
        return _error("issueId must be an integer", 400)
    targets = _field(payload, "targetModels", "target_models", "models")
    requested_by = _field(payload, "requestedBy", "requested_by")
    registry = hub.registry
    if targets:
        if not isinstance(targets, list):
            return _error("targetModels must be a list", 400)
        models = [registry.normalize_model_id(str(m)) for m in targets]
    else:
        candidates = [m for m in registry.working_models() if m != registry.mediator]
        if requested_by == registry.mediator:
            models = await hub.chat.plan_models(topic, candidates)
        else:
            models = candidates
    session = hub.sessions.start_session(topic, issue_id, models, origin=requested_by or "api")
    return {
        "success": True,
        "session_id": session.session_id,
        "total_models": session.total_models,
        "models": list(session.models),
    }


@app.get("/api/models/opinions/{session_id}")
async def opinion_status_api(session_id: str, request: Request):
    snapshot = request.app.state.hub.sessions.get_session(session_id)
    if snapshot is None:
        return _error("session not found", 404)
    return snapshot


@app.post("/api/models/option")
async def option_api(payload: dict, request: Request):
    hub = request.app.state.hub
    topic = str(payload.get("topic") or "").strip()
    model_id = str(_field(payload, "modelId", "model_id", default="")).strip()
    if not topic or not model_id:
        return _error("topic and modelId required", 400)
    issue_id = _issue_id(_field(payload, "issueId", "issue_id"), hub.config.default_issue_id)
    if issue_id is None:
        return _error("issueId must be an integer", 400)
    model_id = hub.registry.normalize_model_id(model_id)
    session = hub.sessions.start_session(topic, issue_id, [model_id], origin="option", prefix="option")
    return {"success": True, "session_id": session.session_id, "model_id": model_id}


@app.post("/api/model")
async def model_api(payload: dict, request: Request):
    hub = request.app.state.hub
    model_id = str(_field(payload, "model_id", "modelId", default="")).strip()
    prompt = str(payload.get("prompt") or "").strip()
    if not model_id or not prompt:
        return _error("model_id and prompt required", 400)
    result = await hub.chat.ask_model(model_id, prompt, context=payload.get("context"))
    if result is None:
        return _error(f"model {model_id} not available", 404)
    if not result["validation"]["valid"]:
        return JSONResponse(result, status_code=422)
    if not result["success"]:
        return JSONResponse(result, status_code=502)
    return result


@app.post("/api/create-issue")
async def create_issue_api(payload: dict, request: Request):
    hub = request.app.state.hub
    title = str(payload.get("title") or "").strip()
    body = payload.get("body")
    if not title or not isinstance(body, str) or not body.strip():
        return _error("title and body required", 400)
    labels = payload.get("labels") or []
    if not isinstance(labels, list):
        labels = [labels]
    try:
        issue = await hub.store.create_issue(
            title, body, labels=[str(label) for label in labels], priority=str(payload.get("priority") or "medium"),
        )
    except StoreError as exc:
        logger.error(f"create-issue failed for {title!r}: {exc}")
        return _error(str(exc), 500)
    return JSONResponse(
        {"success": True, "issue_id": issue["id"], "title": issue["title"],
         "message": f"Issue #{issue['id']} created"},
        status_code=201,
    )


@app.post("/api/comment")
async def comment_api(payload: dict, request: Request):
    hub = request.app.state.hub
    text = str(payload.get("text") or "").strip()
    if not text:
        return _error("text required", 400)
    try:
        result = await hub.chat.contribute(text, model_id=payload.get("model"))
    except IssueNotFoundError as exc:
        return _error(str(exc), 404)
    except StoreError as exc:
        logger.error(f"comment append failed: {exc}")
        return _error(str(exc), 500)
    if not result.get("success"):
        return JSONResponse(result, status_code=502)
    return result


@app.get("/api/issues")
async def issues_api(request: Request):
    try:
        return await request.app.state.hub.store.load()
    except StoreError as exc:
        return _error(str(exc), 500)


@app.websocket("/ws")
async def websocket_feed(websocket: WebSocket):
    """Live feed: chat messages, opinion progress and issue updates."""
    hub = websocket.app.state.hub
    await hub.broadcaster.connect(websocket)
    try:
        await hub.broadcaster.send_issues(websocket, hub.store)
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.info(f"Ignoring malformed client message: {raw[:200]!r}")
                continue
            try:
                await hub.chat.handle_inbound(message)
            except StoreError as exc:
                logger.error(f"Chat message failed: {exc}")
                await hub.broadcaster.broadcast_chat(type="error", text=str(exc))
    except WebSocketDisconnect:
        pass
    finally:
        hub.broadcaster.disconnect(websocket)


def serve(host: str, port: int) -> None:
    import uvicorn
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, reload=False))
    app.state.server = server
    server.run()


def main():
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = config.server.get("host", "127.0.0.1")
    port = int(config.server.get("port", 3000))
    serve(host, port)


if __name__ == "__main__":
    main()
