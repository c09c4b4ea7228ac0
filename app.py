"""
ImgDrop – self-hosted image hosting (FastAPI + SQLite)

Quick start
-----------
1) python -m venv .venv && source .venv/bin/activate  # or .venv\\Scripts\\activate on Windows
2) pip install -e .
3) python app.py  # creates ./data/imgdrop.db and ./uploads on first run
4) Log in as admin/admin, change the credentials, upload

Notes
-----
• Originals are served from /uploads/, thumbnails from /uploads/thumbs/.
• API clients authenticate with the X-API-Key header instead of the session cookie.
• Set LEGACY_DB_FILE to an old db.json to import its users and images into an empty store.
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from auth import ApiKeyResolver, PrincipalResolver, SessionResolver
from config import Settings, get_settings
from database import RecordStore, make_engine
from errors import ImgDropError
from processor import ImageProcessor
from routes import (
    api_delete,
    api_list,
    bulk_delete_images,
    get_api_key,
    get_branding,
    list_images,
    login,
    logout,
    regenerate_api_key,
    stats,
    update_branding,
    update_credentials,
    upload_image,
    user_status,
)
from service import GalleryService
from workers import ProcessingPool

logger = logging.getLogger(__name__)


async def handle_error(request: Request, exc: ImgDropError) -> JSONResponse:
    """Map domain errors to JSON responses."""
    if exc.internal:
        logger.error(
            "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message,
            exc_info=exc,
        )
    return JSONResponse({"message": exc.client_message}, status_code=exc.status_code)


async def handle_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and parameters answer 400 with a message."""
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse({"message": "Invalid request"}, status_code=400)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application and its components from ``settings``."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    store = RecordStore(make_engine(settings.sqlite_url))
    store.init(settings.legacy_db_file)

    pool = ProcessingPool(settings.worker_threads, settings.worker_queue)
    processor = ImageProcessor(settings.thumb_size, settings.thumb_quality)
    gallery = GalleryService(settings, store, processor, pool)
    gallery.ensure_dirs()
    gallery.purge_expired()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        pool.shutdown(wait=False)

    app = FastAPI(title="ImgDrop", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.gallery = gallery
    app.state.resolver = PrincipalResolver(
        SessionResolver(store, settings.session_cookie),
        ApiKeyResolver(store),
    )
    app.add_exception_handler(ImgDropError, handle_error)
    app.add_exception_handler(RequestValidationError, handle_invalid_request)

    # Mount uploaded files
    app.mount("/uploads", StaticFiles(directory=str(settings.upload_dir)), name="uploads")

    # Auth & account
    app.get("/api/user/status")(user_status)
    app.post("/api/auth/login")(login)
    app.post("/api/auth/logout")(logout)
    app.post("/api/user/password")(update_credentials)
    app.post("/api/user/credentials")(update_credentials)
    app.get("/api/user/api-key")(get_api_key)
    app.post("/api/user/regenerate-api-key")(regenerate_api_key)

    # Settings & stats
    app.get("/api/settings/branding")(get_branding)
    app.post("/api/settings/branding")(update_branding)
    app.get("/api/stats")(stats)

    # Images
    app.post("/api/upload")(upload_image)
    app.get("/api/images")(list_images)
    app.post("/api/images/delete")(bulk_delete_images)

    # API-key friendly endpoints
    app.get("/api/v1/list")(api_list)
    app.delete("/api/v1/delete/{image_id}")(api_delete)

    logger.info("ImgDrop ready: data in %s, uploads in %s", settings.data_dir, settings.upload_dir)
    return app


if __name__ == "__main__":
    # Allow `python app.py 7878`
    port = int(sys.argv[1]) if len(sys.argv) > 1 else get_settings().port
    print(f"→ Open http://localhost:{port}")
    import uvicorn

    uvicorn.run("app:create_app", factory=True, host="0.0.0.0", port=port)
