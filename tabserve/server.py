"""Async HTTP front end for tabserve (aiohttp).

Run as: python -m tabserve.server
"""
from __future__ import annotations

import json
import logging
import math
from urllib.parse import quote

import structlog
from aiohttp import web

from tabserve import __version__
from tabserve import config as config_module
from tabserve.config import Config
from tabserve.dispatcher import ActionKind, ActionRequest, ActionResult, Dispatcher
from tabserve.engine import PlaywrightEngine
from tabserve.errors import InvalidRequest, TabserveError
from tabserve.policy import WaitPolicy
from tabserve.sessions import SessionStore

log = structlog.get_logger(__name__)

SERVICE_NAME = "tabserve"
URL_HEADER = "X-Page-Url"
TITLE_HEADER = "X-Page-Title"

STORE_KEY = web.AppKey("store", SessionStore)
DISPATCHER_KEY = web.AppKey("dispatcher", Dispatcher)

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Expose-Headers": f"{URL_HEADER}, {TITLE_HEADER}",
}


# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------

@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=_CORS_HEADERS)
    try:
        resp = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(_CORS_HEADERS)
        raise
    resp.headers.update(_CORS_HEADERS)
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except TabserveError as exc:
        return web.json_response(
            {"error": exc.code, "message": str(exc)}, status=exc.status,
        )
    except web.HTTPException:
        raise
    except Exception as exc:
        log.exception("unhandled error", path=request.path)
        return web.json_response(
            {"error": "internal_error", "message": str(exc)}, status=500,
        )


# ---------------------------------------------------------------------------
# Parameter helpers
# ---------------------------------------------------------------------------

async def _params(request: web.Request) -> dict:
    """Query string, overlaid with a JSON or form body on POST."""
    params: dict = dict(request.query)
    if request.method != "POST" or not request.can_read_body:
        return params
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise InvalidRequest("malformed JSON body") from exc
        if not isinstance(body, dict):
            raise InvalidRequest("JSON body must be an object")
        params.update(body)
    elif request.content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
        params.update(await request.post())
    return params


def _number(
    params: dict,
    name: str,
    default: float | None = None,
    required: bool = False,
    minimum: float | None = None,
) -> float | None:
    raw = params.get(name)
    if raw is None or raw == "":
        if required:
            raise InvalidRequest(f"{name} is required")
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be a number, got {raw!r}")
    if not math.isfinite(value):
        raise InvalidRequest(f"{name} must be finite, got {raw!r}")
    if minimum is not None and value < minimum:
        raise InvalidRequest(f"{name} must be at least {minimum:g}, got {raw!r}")
    return value


def _int(params: dict, name: str, default: int | None = None, minimum: int | None = None) -> int | None:
    value = _number(params, name, minimum=minimum)
    return default if value is None else int(value)


def _flag(params: dict, name: str) -> bool:
    return str(params.get(name, "")).lower() in ("1", "true", "yes")


def _session_id(cfg: Config, params: dict) -> str:
    sid = str(params.get("sid") or "")
    if sid:
        return sid
    if cfg.require_session_id:
        raise InvalidRequest("sid is required")
    return cfg.default_session_id


def _image_response(result: ActionResult) -> web.Response:
    headers = {"Cache-Control": "no-cache"}
    if result.url is not None:
        headers[URL_HEADER] = quote(result.url, safe="")
    if result.title is not None:
        headers[TITLE_HEADER] = quote(result.title, safe="")
    return web.Response(body=result.image, content_type=result.content_type, headers=headers)


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

def create_app(cfg: Config, engine: PlaywrightEngine | None = None) -> web.Application:
    """Build the aiohttp application with all routes."""
    if engine is None:
        engine = PlaywrightEngine.from_config(cfg)
    store = SessionStore.from_config(cfg, engine)
    policy = WaitPolicy.from_config(cfg)
    dispatcher = Dispatcher(cfg, store, policy, engine)

    async def run(kind: ActionKind, params: dict, action_params: dict | None = None) -> web.Response:
        req = ActionRequest(_session_id(cfg, params), kind, action_params or {})
        return _image_response(await dispatcher.dispatch(req))

    async def index(_request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "service": SERVICE_NAME,
            "version": __version__,
            "sessions": len(store),
        })

    async def list_sessions(_request: web.Request) -> web.Response:
        return web.json_response({
            "sessions": [
                {
                    "id": s.id,
                    "url": s.last_url,
                    "idle_seconds": round(s.idle_for(), 1),
                    "age_seconds": round(s.age(), 1),
                }
                for s in store.snapshot()
            ],
        })

    async def navigate(request: web.Request) -> web.Response:
        params = await _params(request)
        url = str(params.get("url") or "")
        if not url:
            raise InvalidRequest("url parameter is required")
        return await run(ActionKind.NAVIGATE, params, {"url": url})

    async def screenshot(request: web.Request) -> web.Response:
        params = await _params(request)
        url = str(params.get("url") or "")
        if url:
            result = await dispatcher.capture_once(
                url,
                width=_int(params, "width", minimum=1),
                height=_int(params, "height", minimum=1),
                delay_ms=_int(params, "delay", minimum=0),
                full_page=_flag(params, "full"),
            )
            return _image_response(result)
        return await run(ActionKind.SCREENSHOT, params)

    async def refresh(request: web.Request) -> web.Response:
        params = await _params(request)
        wait = _int(params, "wait", minimum=0)
        return await run(ActionKind.REFRESH, params, {} if wait is None else {"wait": wait})

    async def click(request: web.Request) -> web.Response:
        params = await _params(request)
        x = _number(params, "x", required=True, minimum=0)
        y = _number(params, "y", required=True, minimum=0)
        return await run(ActionKind.CLICK, params, {"x": x, "y": y})

    async def scroll(request: web.Request) -> web.Response:
        params = await _params(request)
        return await run(ActionKind.SCROLL, params, {"delta_y": _number(params, "deltaY", 500)})

    async def type_text(request: web.Request) -> web.Response:
        params = await _params(request)
        return await run(ActionKind.TYPE, params, {"text": str(params.get("text") or "")})

    async def key(request: web.Request) -> web.Response:
        params = await _params(request)
        return await run(ActionKind.KEY, params, {"key": str(params.get("key") or "Enter")})

    async def back(request: web.Request) -> web.Response:
        return await run(ActionKind.BACK, await _params(request))

    async def forward(request: web.Request) -> web.Response:
        return await run(ActionKind.FORWARD, await _params(request))

    async def close_session(request: web.Request) -> web.Response:
        sid = _session_id(cfg, await _params(request))
        async with store.hold(sid):
            closed = await store.invalidate(sid)
        return web.json_response({"sid": sid, "closed": closed})

    async def on_startup(_app: web.Application) -> None:
        await engine.start()
        log.info("engine started")

    async def on_cleanup(_app: web.Application) -> None:
        await store.close_all()
        await engine.stop()
        log.info("engine stopped")

    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[STORE_KEY] = store
    app[DISPATCHER_KEY] = dispatcher
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/", index)
    app.router.add_get("/sessions", list_sessions)
    app.router.add_get("/navigate", navigate)
    app.router.add_get("/screenshot", screenshot)
    app.router.add_get("/refresh", refresh)
    app.router.add_post("/click", click)
    app.router.add_post("/scroll", scroll)
    app.router.add_post("/type", type_text)
    app.router.add_post("/key", key)
    app.router.add_post("/back", back)
    app.router.add_post("/forward", forward)
    app.router.add_delete("/session", close_session)
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def main() -> None:
    cfg = config_module.load()
    _configure_logging(cfg.log_level)
    app = create_app(cfg)

    log.info("starting server", host=cfg.host, port=cfg.port, ttl=cfg.session_ttl)
    web.run_app(app, host=cfg.host, port=cfg.port, print=None)


if __name__ == "__main__":
    main()
