"""
Command line entry point: builds settings, scans the library and runs the
server under uvicorn, writing crashes to a log file in ~/Documents.
"""

import argparse
import logging
import os
import sys
import threading
import time
import traceback
import webbrowser
from dataclasses import replace
from datetime import datetime

from epubshelf import LibraryDirectoryError
from settings import Settings, load_settings

logger = logging.getLogger("epubshelf")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_error_log_path():
    """Get the path for the error log file."""
    return os.path.expanduser("~/Documents/epubshelf_error.log")


def log_error(message, include_traceback=True):
    """Log an error message to file."""
    try:
        error_log = get_error_log_path()
        with open(error_log, "a") as f:
            f.write(f"\n[{datetime.now().isoformat()}]\n")
            f.write(f"{message}\n")
            if include_traceback:
                f.write(traceback.format_exc())
                f.write("\n")
    except OSError:
        pass


def configure_logging(settings: Settings):
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if settings.log_file:
        handler = logging.FileHandler(settings.log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def open_browser(url, delay=2.0):
    """Open the browser after a short delay to ensure server is running."""
    time.sleep(delay)
    try:
        webbrowser.open(url)
    except webbrowser.Error as e:
        log_error(f"Failed to open browser: {e}", include_traceback=False)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="epubshelf",
        description="Serve a folder of EPUB books to a local reader.",
    )
    parser.add_argument("books_dir", nargs="?", help="Directory containing .epub files")
    parser.add_argument("--config", help="JSON settings file")
    parser.add_argument("--host", help="Interface to bind")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--no-browser", action="store_true", help="Do not open a browser window")
    return parser.parse_args(argv)


def build_settings(args) -> Settings:
    settings = load_settings(args.config)
    overrides = {}
    if args.books_dir:
        overrides["books_dir"] = args.books_dir
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.no_browser:
        overrides["open_browser"] = False
    if overrides:
        settings = replace(settings, **overrides)
    return settings


def main(argv=None):
    args = parse_args(argv)
    settings = build_settings(args)
    configure_logging(settings)

    # Import here after logging is set up
    import uvicorn
    from library import LibraryIndex
    from server import create_app

    logger.info("Books directory: %s", os.path.abspath(settings.books_dir))
    try:
        library = LibraryIndex.load_all(settings.books_dir)
    except LibraryDirectoryError as e:
        logger.error("%s", e.user_message)
        log_error(f"Fatal error: {e}")
        return 2

    app = create_app(settings, library=library)

    if settings.open_browser:
        threading.Thread(target=open_browser, args=(settings.base_url,), daemon=True).start()

    uvicorn_kwargs = {
        "host": settings.host,
        "port": settings.port,
        "log_level": settings.log_level.lower(),
    }

    # Prefer uvloop/httptools for faster event loop and HTTP parsing
    if sys.platform != "win32":
        uvicorn_kwargs.update({"loop": "uvloop", "http": "httptools"})
    else:
        uvicorn_kwargs.update({"http": "h11"})

    try:
        uvicorn.run(app, **uvicorn_kwargs)
    except Exception as e:
        log_error(f"Fatal error: {e}")
        raise
    return 0


if __name__ == "__main__":
    sys.exit(main())
