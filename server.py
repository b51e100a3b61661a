"""
HTTP transport for the content service.

Book resources are mounted under the configured prefix
(/epub/<bookKey>/<resourcePath> for epub://<bookKey>/<resourcePath>), the
command surface lives under /api/books, and the host page forwards
cross-frame messages to /api/messages.
"""

import logging
import webbrowser
from contextlib import asynccontextmanager
from typing import Callable, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from commands import LibraryCommands
from epubshelf import InvalidUri, NotFound
from library import LibraryIndex
from protocol import ExternalLinkMessage, LinkKind, classify_href, decode_message
from resolver import Resource, ResourceResolver
from rewriter import ContentRewriter
from settings import Settings, load_settings

logger = logging.getLogger(__name__)


async def _run_sync(func, *args, **kwargs):
    """Runs blocking archive or browser work in the worker thread pool."""
    return await run_in_threadpool(func, *args, **kwargs)


# --- Middleware ---

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=()"
        )
        return response


class CacheControlMiddleware(BaseHTTPMiddleware):
    """Book resources never change while the process runs, so let the webview cache them."""

    STATIC_PREFIXES = ("/epub/",)
    CACHE_VALUE = "private, max-age=3600"

    def __init__(self, app, prefixes=None):
        super().__init__(app)
        if prefixes is not None:
            self.STATIC_PREFIXES = tuple(prefixes)

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if (
            response.status_code == 200
            and request.url.path.startswith(self.STATIC_PREFIXES)
            and "cache-control" not in response.headers
        ):
            response.headers["Cache-Control"] = self.CACHE_VALUE
        return response


# --- Dependencies ---

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_commands(request: Request) -> LibraryCommands:
    commands = getattr(request.app.state, "commands", None)
    if commands is None:
        raise HTTPException(status_code=503, detail="Library is still loading")
    return commands


def get_resolver(request: Request) -> ResourceResolver:
    resolver = getattr(request.app.state, "resolver", None)
    if resolver is None:
        raise HTTPException(status_code=503, detail="Library is still loading")
    return resolver


def install_library(app: FastAPI, library: LibraryIndex) -> None:
    settings = app.state.settings
    rewriter = ContentRewriter(settings.scheme, settings.mount_prefix)
    app.state.library = library
    app.state.resolver = ResourceResolver(library, rewriter, settings.scheme)
    app.state.commands = LibraryCommands(library, settings.scheme)


def resource_uri_for(request: Request, settings: Settings, target: str) -> str:
    """
    Rebuilds the resource URI from the still-encoded request path so that
    percent-escapes reach the resolver exactly once.
    """
    raw_path = request.scope.get("raw_path")
    prefix = (settings.mount_prefix + "/").encode("ascii")
    if raw_path:
        raw_path = raw_path.split(b"?", 1)[0]
        if raw_path.startswith(prefix):
            return f"{settings.scheme}://{raw_path[len(prefix):].decode('latin-1')}"
    return f"{settings.scheme}://{quote(target, safe='/')}"


def _raise_http(error: Exception):
    if isinstance(error, InvalidUri):
        raise HTTPException(status_code=400, detail=error.user_message) from error
    raise HTTPException(status_code=404, detail=error.user_message) from error


# --- Application ---

def create_app(
    settings: Optional[Settings] = None,
    library: Optional[LibraryIndex] = None,
    opener: Optional[Callable[[str], object]] = None,
) -> FastAPI:
    """
    Builds the application. Without a prebuilt `library` the books
    directory is scanned during startup, before any request is served.
    """
    settings = settings or load_settings()
    opener = opener or webbrowser.open

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "library", None) is None:
            logger.info("Scanning %s", settings.books_dir)
            scanned = await _run_sync(LibraryIndex.load_all, settings.books_dir)
            install_library(app, scanned)
        yield

    app = FastAPI(title="epubshelf", lifespan=lifespan)
    app.state.settings = settings
    app.state.library = None
    if library is not None:
        install_library(app, library)

    app.add_middleware(CacheControlMiddleware, prefixes=(settings.mount_prefix + "/",))
    app.add_middleware(SecurityHeadersMiddleware)

    @app.get(settings.mount_prefix + "/{target:path}")
    async def read_resource(
        target: str,
        request: Request,
        resolver: ResourceResolver = Depends(get_resolver),
    ):
        uri = resource_uri_for(request, settings, target)
        try:
            resource: Resource = await _run_sync(resolver.resolve, uri)
        except (InvalidUri, NotFound) as e:
            _raise_http(e)
        return Response(content=resource.content, media_type=resource.mime_type)

    @app.get("/api/books")
    async def list_books(commands: LibraryCommands = Depends(get_commands)):
        return [cover._asdict() for cover in commands.list_book_covers()]

    @app.get("/api/books/{book_key}/title")
    async def book_title(book_key: str, commands: LibraryCommands = Depends(get_commands)):
        try:
            return {"title": commands.get_book_title(book_key)}
        except NotFound as e:
            _raise_http(e)

    @app.get("/api/books/{book_key}/toc")
    async def book_toc(book_key: str, commands: LibraryCommands = Depends(get_commands)):
        try:
            return commands.get_toc(book_key).to_list()
        except NotFound as e:
            _raise_http(e)

    @app.get("/api/books/{book_key}/spine")
    async def book_spine(book_key: str, commands: LibraryCommands = Depends(get_commands)):
        try:
            return commands.get_spine(book_key)
        except NotFound as e:
            _raise_http(e)

    @app.get("/api/books/{book_key}/spine-index")
    async def book_spine_index(
        book_key: str,
        content_path: str,
        commands: LibraryCommands = Depends(get_commands),
    ):
        try:
            return {"index": commands.get_spine_index(book_key, content_path)}
        except NotFound as e:
            _raise_http(e)

    @app.get("/api/books/{book_key}/spine/{index}")
    async def book_spine_item(
        book_key: str,
        index: int,
        commands: LibraryCommands = Depends(get_commands),
    ):
        try:
            return {"content_path": commands.get_spine_item(book_key, index)}
        except NotFound as e:
            _raise_http(e)

    @app.post("/api/messages", status_code=204)
    async def receive_message(request: Request):
        """Relay for messages posted by rendered content. Always answers 204."""
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.warning("Dropped message envelope that is not a JSON object")
            return Response(status_code=204)

        allowed = (settings.base_url, str(request.base_url).rstrip("/"))
        message = decode_message(
            body.get("message"),
            origin=body.get("origin"),
            scheme=settings.scheme,
            allowed_origins=allowed,
        )
        if isinstance(message, ExternalLinkMessage):
            if classify_href(message.url, settings.scheme) is not LinkKind.EXTERNAL:
                logger.warning("Refused to open non-external link %r", message.url)
            elif settings.open_external_links:
                try:
                    await _run_sync(opener, message.url)
                except (webbrowser.Error, OSError) as e:
                    logger.warning("Could not open %s: %s", message.url, e)
        elif message is not None:
            logger.debug("Received %s", message)
        return Response(status_code=204)

    return app
