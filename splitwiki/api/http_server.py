"""
Read-path HTTP server for SplitWiki.

Serves pages of the local store and redirects reads of documents owned by a
peer (peer-exclusive namespaces and the foreign band) to the peer's
canonical URL.

Endpoints:
    GET /wiki/{title}          Latest revision as JSON, or 302 to the owner
    GET /v1/recentchanges      Recent changes feed of the local store
    GET /v1/health             Health check

Invariants:
    - Content of a peer-owned document is never served locally
    - Titles are parsed with this store's namespace names

How to change safely:
    - Keep redirects pointing at the peer's own naming of the document
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from ..errors import InvariantViolation, SplitWikiError, TransientStoreFailure
from ..ownership.table import OwnershipTable, RouteKind
from ..store.sqlite_store import SqliteDocumentStore

logger = logging.getLogger(__name__)

STORE_KEY = web.AppKey("store", SqliteDocumentStore)
OWNERSHIP_KEY = web.AppKey("ownership", OwnershipTable)
HEALTH_KEY = web.AppKey("health", object)


def create_http_app(
    store: SqliteDocumentStore,
    ownership: OwnershipTable,
    health: Callable[[], dict[str, Any]] | None = None,
) -> web.Application:
    """Create the read-path application.

    Args:
        store: Local document store
        ownership: Ownership table of the local store
        health: Extra fields for the health endpoint (worker stats)

    Returns:
        aiohttp Application instance
    """

    @web.middleware
    async def error_middleware(
        request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
    ) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except InvariantViolation as e:
            return web.json_response({"error": e.message, "error_code": e.code}, status=400)
        except TransientStoreFailure as e:
            logger.error(f"Store failure serving {request.path}: {e.message}")
            return web.json_response({"error": e.message, "error_code": e.code}, status=503)
        except SplitWikiError as e:
            logger.error(f"HTTP handler error: {e.message}", exc_info=True)
            return web.json_response({"error": e.message, "error_code": e.code}, status=500)

    app = web.Application(middlewares=[error_middleware])
    app[STORE_KEY] = store
    app[OWNERSHIP_KEY] = ownership
    app[HEALTH_KEY] = health or (lambda: {})

    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/recentchanges", handle_recent_changes)
    app.router.add_get("/wiki/{title:.+}", handle_page)
    return app


async def handle_page(request: web.Request) -> web.StreamResponse:
    """Handle GET /wiki/{title} - Read a page or redirect to its owner."""
    store = request.app[STORE_KEY]
    ownership = request.app[OWNERSHIP_KEY]
    layout = ownership.namespace_layout(store.store_id)

    identity = layout.parse(request.match_info["title"])
    route = ownership.route_read(identity, store.store_id)

    if route.kind == RouteKind.REDIRECT:
        logger.debug(
            "Redirecting read to owner",
            extra={"document": identity.key, "owner": route.store_id, "url": route.url},
        )
        raise web.HTTPFound(location=route.url)

    if route.kind == RouteKind.UNKNOWN:
        return web.json_response(
            {"error": f"No store owns namespace {identity.namespace}", "error_code": "NOT_FOUND"},
            status=404,
        )

    revision = await store.latest_revision(identity)
    if revision is None:
        return web.json_response(
            {"error": f"Page {layout.prefixed(identity)} does not exist", "error_code": "NOT_FOUND"},
            status=404,
        )

    return web.json_response(
        {
            "title": layout.prefixed(identity),
            "namespace": identity.namespace,
            "path": identity.path,
            "rev_id": revision.seq,
            "timestamp": revision.timestamp,
            "author": revision.author,
            "comment": revision.comment,
            "content_model": revision.content_model,
            "content_format": revision.content_format,
            "text": revision.text,
            "read_only": identity.namespace in layout.protected,
        }
    )


async def handle_recent_changes(request: web.Request) -> web.Response:
    """Handle GET /v1/recentchanges - Recent changes of the local store."""
    store = request.app[STORE_KEY]
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        raise web.HTTPBadRequest(text="limit must be an integer")
    changes = await store.recent_changes(limit=max(1, min(limit, 500)))
    return web.json_response({"store": store.store_id, "changes": changes})


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health - Health check."""
    store = request.app[STORE_KEY]
    healthy = store.exists()
    result = {"healthy": healthy, "store": store.store_id, **request.app[HEALTH_KEY]()}
    return web.json_response(result, status=200 if healthy else 503)


async def run_http_server(app: web.Application, host: str = "0.0.0.0", port: int = 8080) -> None:
    """Serve the application until cancelled."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server running on http://{host}:{port}")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()
