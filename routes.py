"""FastAPI routes for ImgDrop."""
import logging
from datetime import timedelta
from typing import Optional

from fastapi import Body, Depends, File, Form, Request, Response, UploadFile

from auth import attach_user, require_auth
from database import ADMIN_ID, DEFAULT_ADMIN_PASSWORD
from errors import InvalidCredential, NotFound, ValidationError
from models import User
from security import generate_api_key, hash_password, verify_password
from service import GalleryService, UploadOptions
from utils import get_base_url

logger = logging.getLogger(__name__)

USERNAME_MAX = 30


def _gallery(request: Request) -> GalleryService:
    return request.app.state.gallery


def _base_url(request: Request) -> str:
    return get_base_url(request, request.app.state.settings.public_base_url)


def _field(payload: Optional[dict], name: str) -> str:
    value = (payload or {}).get(name)
    return value if isinstance(value, str) else ""


def _clear_session_cookie(request: Request, response: Response) -> None:
    response.delete_cookie(request.app.state.settings.session_cookie, path="/")


# ----------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------

def user_status(request: Request, user: Optional[User] = Depends(attach_user)):
    """Authentication state of the caller."""
    if user is None:
        return {"authenticated": False}
    gallery = _gallery(request)
    return {
        "authenticated": True,
        "username": user.username,
        "level": user.level,
        "dailyUploads": gallery.uploads_today(user),
        "dailyUploadLimit": request.app.state.settings.daily_upload_limit,
        "apiKey": user.api_key,
    }


def login(request: Request, response: Response, payload: Optional[dict] = Body(None)):
    """Log in with username and password.

    A user without a stored credential adopts the first password presented.
    """
    username = _field(payload, "username").strip()[:USERNAME_MAX]
    password = _field(payload, "password")
    if not username or not password:
        raise ValidationError("Username and password are required")

    store = request.app.state.store
    user = store.get_user_by_username(username)
    if user is None:
        logger.warning("Login attempt for unknown user %r", username)
        raise InvalidCredential("User does not exist")
    if not user.password_hash:
        user.password_hash = hash_password(password)
        user = store.put_user(user)
    elif not verify_password(password, user.password_hash):
        logger.warning("Wrong password for user %r", username)
        raise InvalidCredential("Wrong password")

    settings = request.app.state.settings
    session = store.create_session(user.id, timedelta(hours=settings.session_ttl_hours))
    response.set_cookie(
        settings.session_cookie,
        session.token,
        max_age=settings.session_ttl_hours * 3600,
        httponly=True,
        samesite="lax",
        path="/",
    )
    logger.info("User %s logged in", user.id)
    return {
        "message": "Logged in",
        "user": {"username": user.username, "level": user.level},
        "defaultCreds": user.username == ADMIN_ID and password == DEFAULT_ADMIN_PASSWORD,
    }


def logout(request: Request, response: Response):
    """Revoke the current session."""
    token = request.cookies.get(request.app.state.settings.session_cookie)
    if token:
        request.app.state.store.delete_session(token)
    _clear_session_cookie(request, response)
    return {"message": "Logged out"}


def update_credentials(
    request: Request,
    response: Response,
    payload: Optional[dict] = Body(None),
    user: User = Depends(require_auth),
):
    """Change username and password; every session of the user ends."""
    old_password = _field(payload, "oldPassword")
    new_password = _field(payload, "newPassword")
    new_username = _field(payload, "newUsername").strip()
    if not old_password or not new_password or not new_username:
        raise ValidationError("Missing required fields")

    store = request.app.state.store
    current = store.get_user(user.id)
    if current is None:
        raise NotFound("User does not exist")
    if not verify_password(old_password, current.password_hash):
        raise InvalidCredential("Old password is incorrect")

    current.username = new_username[:USERNAME_MAX]
    current.password_hash = hash_password(new_password)
    current = store.put_user(current)
    store.delete_user_sessions(current.id)
    _clear_session_cookie(request, response)
    logger.info("User %s changed credentials", current.id)
    return {"message": "Credentials updated, please log in again", "username": current.username}


def get_api_key(user: User = Depends(require_auth)):
    return {"apiKey": user.api_key}


def regenerate_api_key(request: Request, user: User = Depends(require_auth)):
    """Issue a new API key; the old one stops working."""
    store = request.app.state.store
    current = store.get_user(user.id)
    if current is None:
        raise NotFound("User does not exist")
    current.api_key = generate_api_key()
    current = store.put_user(current)
    return {"apiKey": current.api_key}


# ----------------------------------------------------------------------
# Settings & stats
# ----------------------------------------------------------------------

def get_branding(request: Request):
    return request.app.state.store.get_branding()


def update_branding(
    request: Request,
    payload: Optional[dict] = Body(None),
    user: User = Depends(require_auth),
):
    branding = request.app.state.store.set_branding(
        name=_field(payload, "name"),
        subtitle=_field(payload, "subtitle"),
        icon=_field(payload, "icon"),
        footer=_field(payload, "footer"),
    )
    return {"message": "Branding updated", "branding": branding}


def stats(request: Request):
    """Totals across all users."""
    return _gallery(request).stats()


# ----------------------------------------------------------------------
# Images
# ----------------------------------------------------------------------

def upload_image(
    request: Request,
    image: Optional[UploadFile] = File(None),
    compressToWebp: Optional[str] = Form(None),
    webpQuality: Optional[str] = Form(None),
    autoWatermark: Optional[str] = Form(None),
    watermarkContent: Optional[str] = Form(None),
    autoDelete: Optional[str] = Form(None),
    deleteDays: Optional[str] = Form(None),
    user: User = Depends(require_auth),
):
    """Upload one image (multipart field ``image``)."""
    gallery = _gallery(request)
    options = UploadOptions.from_form({
        "compressToWebp": compressToWebp if compressToWebp is not None else "true",
        "webpQuality": webpQuality,
        "autoWatermark": autoWatermark,
        "watermarkContent": watermarkContent,
        "autoDelete": autoDelete,
        "deleteDays": deleteDays,
    })
    data = None
    content_type = None
    if image is not None:
        # One byte past the ceiling is enough to know it is too large
        data = image.file.read(request.app.state.settings.max_upload_bytes + 1)
        content_type = image.content_type
    return gallery.upload(data, content_type, options, user, _base_url(request))


def list_images(
    request: Request,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    user: User = Depends(require_auth),
):
    """Paginated personal gallery, most recent first."""
    return _gallery(request).list_page(user, page, limit, _base_url(request))


def bulk_delete_images(
    request: Request,
    payload: Optional[dict] = Body(None),
    user: User = Depends(require_auth),
):
    """Delete several images; ids the user does not own are ignored."""
    ids = (payload or {}).get("ids")
    _gallery(request).delete_many(user, ids)
    return {"message": "Deleted"}


def api_list(request: Request, user: User = Depends(require_auth)):
    """Flat listing for API clients."""
    return {"items": _gallery(request).list_all(user, _base_url(request))}


def api_delete(image_id: str, request: Request, user: User = Depends(require_auth)):
    _gallery(request).delete_one(user, image_id)
    return {"message": "Deleted"}
