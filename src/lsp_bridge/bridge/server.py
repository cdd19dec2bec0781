# src/lsp_bridge/bridge/server.py

"""HTTP surface of the bridge, built on aiohttp.

Every route forwards to one `SessionBridge` operation and answers with a JSON
object. Failures are answered with `{"error": message, "kind": kind}` where
`kind` comes from the exception hierarchy in `lsp_bridge.errors`.
"""

import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from lsp_bridge.bridge.session import SessionBridge
from lsp_bridge.config.loader import get_setting
from lsp_bridge.errors import LspBridgeError

logger = logging.getLogger(__name__)

BRIDGE_APP_KEY = web.AppKey("bridge", SessionBridge)

STATUS_BY_KIND = {
    "validation": 400,
    "configuration": 400,
    "precondition": 400,
    "remote": 502,
    "transport": 502,
    "protocol": 502,
}


class RequestValidationError(LspBridgeError):
    """The request body is missing a field or has a field of the wrong type."""

    kind = "validation"


def _json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status)


def _error_response(message: str, kind: str = "validation", status: Optional[int] = None) -> web.Response:
    return _json_response(
        {"error": message, "kind": kind},
        status=status if status is not None else STATUS_BY_KIND.get(kind, 500),
    )


async def _get_json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RequestValidationError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object.")
    return body


def _require_str(body: Dict[str, Any], *names: str) -> None:
    missing = [n for n in names if not isinstance(body.get(n), str) or body.get(n) == ""]
    if missing:
        raise RequestValidationError(f"Required: {', '.join(names)}")


def _position(body: Dict[str, Any]) -> Dict[str, Any]:
    _require_str(body, "uri")
    line, character = body.get("line"), body.get("character")
    # bool is a subclass of int
    if any(not isinstance(v, int) or isinstance(v, bool) or v < 0 for v in (line, character)):
        raise RequestValidationError("Required: uri, line, character (non-negative integers)")
    return {"uri": body["uri"], "line": line, "character": character}


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except LspBridgeError as e:
        status = STATUS_BY_KIND.get(e.kind, 500)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed ({e.kind}): {e}")
        else:
            logger.info(f"{request.method} {request.path} rejected ({e.kind}): {e}")
        return _error_response(str(e), kind=e.kind, status=status)
    except Exception as e:
        logger.exception(f"Unhandled error in {request.method} {request.path}")
        return _error_response(str(e) or type(e).__name__, kind="internal", status=500)


def cors_middleware_factory(origin: str):
    """Builds a middleware adding CORS headers and answering preflight requests."""

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    return cors_middleware


# --- Handlers: lifecycle ---


async def handle_start(request: web.Request) -> web.Response:
    bridge = request.app[BRIDGE_APP_KEY]
    body = await _get_json_body(request)
    backend_kind = body.get("language") or body.get("backend")
    if not isinstance(backend_kind, str) or not backend_kind:
        raise RequestValidationError("Required: language")
    _require_str(body, "rootUri")
    capabilities = await bridge.start(backend_kind, body)
    return _json_response({"capabilities": capabilities})


async def handle_stop(request: web.Request) -> web.Response:
    await request.app[BRIDGE_APP_KEY].stop()
    return _json_response({"success": True})


async def handle_status(request: web.Request) -> web.Response:
    return _json_response(request.app[BRIDGE_APP_KEY].status())


async def handle_health(request: web.Request) -> web.Response:
    return _json_response({"status": "ok"})


# --- Handlers: documents ---


async def handle_document_open(request: web.Request) -> web.Response:
    body = await _get_json_body(request)
    _require_str(body, "uri", "languageId")
    if not isinstance(body.get("text"), str):
        raise RequestValidationError("Required: uri, languageId, text")
    await request.app[BRIDGE_APP_KEY].open_document(body["uri"], body["languageId"], body["text"])
    return _json_response({"success": True})


async def handle_document_change(request: web.Request) -> web.Response:
    body = await _get_json_body(request)
    _require_str(body, "uri")
    if not isinstance(body.get("text"), str):
        raise RequestValidationError("Required: uri, text")
    await request.app[BRIDGE_APP_KEY].change_document(body["uri"], body["text"])
    return _json_response({"success": True})


async def handle_document_close(request: web.Request) -> web.Response:
    body = await _get_json_body(request)
    _require_str(body, "uri")
    await request.app[BRIDGE_APP_KEY].close_document(body["uri"])
    return _json_response({"success": True})


# --- Handlers: features ---


async def handle_completion(request: web.Request) -> web.Response:
    pos = _position(await _get_json_body(request))
    items = await request.app[BRIDGE_APP_KEY].completion(pos["uri"], pos["line"], pos["character"])
    return _json_response({"items": items})


async def handle_hover(request: web.Request) -> web.Response:
    pos = _position(await _get_json_body(request))
    hover = await request.app[BRIDGE_APP_KEY].hover(pos["uri"], pos["line"], pos["character"])
    return _json_response({"hover": hover})


async def handle_definition(request: web.Request) -> web.Response:
    pos = _position(await _get_json_body(request))
    locations = await request.app[BRIDGE_APP_KEY].definition(pos["uri"], pos["line"], pos["character"])
    return _json_response({"locations": locations})


async def handle_references(request: web.Request) -> web.Response:
    body = await _get_json_body(request)
    pos = _position(body)
    include_declaration = body.get("includeDeclaration", True)
    if not isinstance(include_declaration, bool):
        raise RequestValidationError("includeDeclaration must be a boolean.")
    locations = await request.app[BRIDGE_APP_KEY].references(
        pos["uri"], pos["line"], pos["character"], include_declaration=include_declaration
    )
    return _json_response({"locations": locations})


async def handle_symbols(request: web.Request) -> web.Response:
    body = await _get_json_body(request)
    _require_str(body, "uri")
    symbols = await request.app[BRIDGE_APP_KEY].document_symbols(body["uri"])
    return _json_response({"symbols": symbols})


# --- Handlers: diagnostics ---


async def handle_get_diagnostics(request: web.Request) -> web.Response:
    bridge = request.app[BRIDGE_APP_KEY]
    uri = request.query.get("uri")
    if uri:
        return _json_response({"diagnostics": {uri: bridge.get_diagnostics(uri)}})
    return _json_response({"diagnostics": bridge.get_diagnostics()})


async def handle_clear_diagnostics(request: web.Request) -> web.Response:
    request.app[BRIDGE_APP_KEY].clear_diagnostics()
    return _json_response({"success": True})


async def _stop_bridge(app: web.Application) -> None:
    logger.info("Application shutting down; stopping active session.")
    await app[BRIDGE_APP_KEY].stop()


def create_app(bridge: Optional[SessionBridge] = None, cors_origin: Optional[str] = None) -> web.Application:
    """Builds the aiohttp application serving `bridge`.

    Args:
        bridge: The session bridge to expose. A new one is created when None.
        cors_origin: Value for `Access-Control-Allow-Origin`. Defaults to the
            `bridge.cors_origin` setting.
    """
    origin = cors_origin or get_setting("bridge", "cors_origin", "*")
    app = web.Application(middlewares=[cors_middleware_factory(origin), error_middleware])
    app[BRIDGE_APP_KEY] = bridge if bridge is not None else SessionBridge()

    app.router.add_post("/start", handle_start)
    app.router.add_post("/stop", handle_stop)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/health", handle_health)

    app.router.add_post("/document/open", handle_document_open)
    app.router.add_post("/document/change", handle_document_change)
    app.router.add_post("/document/close", handle_document_close)

    app.router.add_post("/completion", handle_completion)
    app.router.add_post("/hover", handle_hover)
    app.router.add_post("/definition", handle_definition)
    app.router.add_post("/references", handle_references)
    app.router.add_post("/symbols", handle_symbols)

    app.router.add_get("/diagnostics", handle_get_diagnostics)
    app.router.add_delete("/diagnostics", handle_clear_diagnostics)

    app.on_cleanup.append(_stop_bridge)
    return app
