"""Database configuration and the record store."""
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from errors import PersistenceFailure, RateLimited, ValidationError
from models import ImageRecord, LoginSession, Setting, User
from security import generate_api_key, generate_session_token, hash_password, random_token

logger = logging.getLogger(__name__)

ADMIN_ID = "admin"
DEFAULT_ADMIN_PASSWORD = "admin"

DEFAULT_BRANDING = {
    "name": "ImgDrop",
    "subtitle": "Self-hosted image hosting",
    "icon": "",
    "footer": "ImgDrop · self-hosted",
}


def make_engine(url: str):
    """Create the SQLAlchemy engine for a database URL."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


class RecordStore:
    """Users, image records, login sessions and settings.

    Every mutation runs in its own transaction under a process-wide lock, so
    writers are serialized and check-then-insert sequences are atomic.
    """

    def __init__(self, engine):
        self.engine = engine
        self._write_lock = threading.RLock()

    @contextmanager
    def get_session(self):
        """Get a database session context manager."""
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"database error: {e}") from e

    @contextmanager
    def transaction(self):
        """Serialized session that commits on success."""
        with self._write_lock:
            with self.get_session() as s:
                yield s
                s.commit()

    def init(self, legacy_file: Optional[Path] = None) -> None:
        """Create tables, import a legacy document into an empty store and
        make sure the admin user exists."""
        try:
            SQLModel.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"cannot initialize database: {e}") from e
        if legacy_file is not None and Path(legacy_file).exists() and not self.count_users():
            self.import_document(Path(legacy_file))
        self.ensure_default_user()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def ensure_default_user(self) -> User:
        with self.transaction() as s:
            admin = s.get(User, ADMIN_ID)
            if admin:
                return admin
            username = ADMIN_ID
            if s.exec(select(User).where(User.username == username)).first():
                username = f"{ADMIN_ID}-{random_token(4)}"
            admin = User(
                id=ADMIN_ID,
                username=username,
                password_hash=hash_password(DEFAULT_ADMIN_PASSWORD),
                api_key=generate_api_key(),
                level=1,
            )
            s.add(admin)
        logger.info("Created default admin user %r", admin.username)
        return admin

    def count_users(self) -> int:
        with self.get_session() as s:
            return s.exec(select(func.count()).select_from(User)).one()

    def get_user(self, user_id: str) -> Optional[User]:
        with self.get_session() as s:
            return s.get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.get_session() as s:
            return s.exec(select(User).where(User.username == username)).first()

    def get_user_by_api_key(self, api_key: str) -> Optional[User]:
        if not api_key:
            return None
        with self.get_session() as s:
            return s.exec(select(User).where(User.api_key == api_key)).first()

    def put_user(self, user: User) -> User:
        """Insert or update a user, enforcing unique usernames and API keys."""
        with self.transaction() as s:
            clash = s.exec(
                select(User).where(User.username == user.username, User.id != user.id)
            ).first()
            if clash:
                raise ValidationError("Username is already taken")
            clash = s.exec(
                select(User).where(User.api_key == user.api_key, User.id != user.id)
            ).first()
            if clash:
                raise ValidationError("API key is already in use")
            user = s.merge(user)
        return user

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def _next_seq(self, s: Session) -> int:
        current = s.exec(select(func.max(ImageRecord.seq))).one()
        return (current or 0) + 1

    def _count(self, s: Session, user_id=None, start=None, end=None) -> int:
        stmt = select(func.count()).select_from(ImageRecord)
        if user_id is not None:
            stmt = stmt.where(ImageRecord.user_id == user_id)
        if start is not None:
            stmt = stmt.where(ImageRecord.created_at >= start)
        if end is not None:
            stmt = stmt.where(ImageRecord.created_at <= end)
        return s.exec(stmt).one()

    def insert_image(self, record: ImageRecord) -> ImageRecord:
        with self.transaction() as s:
            record.seq = self._next_seq(s)
            s.add(record)
        return record

    def insert_image_within_quota(
        self, record: ImageRecord, limit: int, start: datetime, end: datetime
    ) -> ImageRecord:
        """Insert ``record`` unless its owner already has ``limit`` records
        created within ``[start, end]``."""
        with self.transaction() as s:
            if self._count(s, record.user_id, start, end) >= limit:
                raise RateLimited("Daily upload limit reached")
            record.seq = self._next_seq(s)
            s.add(record)
        return record

    def list_images_by_owner(self, user_id: str) -> list[ImageRecord]:
        """All records owned by ``user_id``, most recent first."""
        with self.get_session() as s:
            stmt = (
                select(ImageRecord)
                .where(ImageRecord.user_id == user_id)
                .order_by(ImageRecord.seq.desc())
            )
            return list(s.exec(stmt).all())

    def get_image(self, record_id: str) -> Optional[ImageRecord]:
        with self.get_session() as s:
            return s.get(ImageRecord, record_id)

    def delete_image(self, record_id: str) -> Optional[ImageRecord]:
        with self.transaction() as s:
            record = s.get(ImageRecord, record_id)
            if record:
                s.delete(record)
            return record

    def delete_images(self, user_id: str, ids: Iterable[str]) -> list[ImageRecord]:
        """Delete the records among ``ids`` owned by ``user_id``."""
        ids = list(ids)
        if not ids:
            return []
        with self.transaction() as s:
            rows = s.exec(
                select(ImageRecord).where(
                    ImageRecord.user_id == user_id, ImageRecord.id.in_(ids)
                )
            ).all()
            for row in rows:
                s.delete(row)
            return list(rows)

    def count_images(self, user_id=None, start=None, end=None) -> int:
        with self.get_session() as s:
            return self._count(s, user_id, start, end)

    def total_size(self) -> int:
        with self.get_session() as s:
            return s.exec(select(func.coalesce(func.sum(ImageRecord.size), 0))).one()

    def list_expired_images(self, now: datetime) -> list[ImageRecord]:
        with self.get_session() as s:
            rows = s.exec(
                select(ImageRecord).where(
                    ImageRecord.auto_delete == True,  # noqa: E712
                    ImageRecord.delete_after_days != None,  # noqa: E711
                )
            ).all()
        return [
            r for r in rows
            if r.created_at + timedelta(days=r.delete_after_days) <= now
        ]

    # ------------------------------------------------------------------
    # Login sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str, ttl: timedelta) -> LoginSession:
        now = datetime.now()
        row = LoginSession(
            token=generate_session_token(),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
        )
        with self.transaction() as s:
            s.add(row)
        return row

    def get_session_user(self, token: str, now: Optional[datetime] = None) -> Optional[User]:
        if not token:
            return None
        now = now or datetime.now()
        with self.get_session() as s:
            row = s.get(LoginSession, token)
            if row is None:
                return None
            if row.expires_at > now:
                return s.get(User, row.user_id)
        self.delete_session(token)
        return None

    def delete_session(self, token: str) -> None:
        with self.transaction() as s:
            row = s.get(LoginSession, token)
            if row:
                s.delete(row)

    def delete_user_sessions(self, user_id: str) -> int:
        with self.transaction() as s:
            rows = s.exec(select(LoginSession).where(LoginSession.user_id == user_id)).all()
            for row in rows:
                s.delete(row)
            return len(rows)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        """Get a setting value by key."""
        with self.get_session() as s:
            row = s.get(Setting, key)
            return row.value if row else None

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value."""
        with self.transaction() as s:
            row = s.get(Setting, key)
            if row:
                row.value = value
            else:
                s.add(Setting(key=key, value=value))

    def get_branding(self) -> dict:
        return {
            field: self.get_setting(f"branding.{field}") or default
            for field, default in DEFAULT_BRANDING.items()
        }

    def set_branding(self, **values) -> dict:
        for field, default in DEFAULT_BRANDING.items():
            self.set_setting(f"branding.{field}", values.get(field) or default)
        return self.get_branding()

    # ------------------------------------------------------------------
    # Legacy JSON document
    # ------------------------------------------------------------------

    def import_document(self, path: Path) -> dict:
        """Import a whole-document JSON store (users, images, settings).

        An unreadable or malformed document is fatal.
        """
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
            users = [_user_from_doc(u) for u in doc.get("users") or []]
            images = [_image_from_doc(i) for i in doc.get("images") or []]
            branding = (doc.get("settings") or {}).get("branding") or {}
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            raise PersistenceFailure(f"cannot load {path}: {e}") from e

        with self.transaction() as s:
            for user in users:
                s.merge(user)
        if not any(u.id == ADMIN_ID for u in users):
            self.ensure_default_user()
        known = {u.id for u in users} | {ADMIN_ID}

        with self.transaction() as s:
            # Document order is most recent first
            for seq, record in enumerate(reversed(images), start=1):
                if record.user_id not in known:
                    record.user_id = ADMIN_ID
                record.seq = seq
                s.merge(record)

        if branding:
            self.set_branding(**{k: branding.get(k) for k in DEFAULT_BRANDING})
        logger.info(
            "Imported %d users and %d images from %s", len(users), len(images), path
        )
        return {"users": len(users), "images": len(images)}


def _from_millis(value) -> datetime:
    if value is None:
        return datetime.now()
    return datetime.fromtimestamp(float(value) / 1000)


def _user_from_doc(doc: dict) -> User:
    return User(
        id=str(doc["id"]),
        username=str(doc["username"]),
        password_hash=doc.get("passwordHash"),
        api_key=doc.get("apiKey") or generate_api_key(),
        level=int(doc.get("level") or 1),
        created_at=_from_millis(doc.get("createdAt")),
    )


def _image_from_doc(doc: dict) -> ImageRecord:
    auto_delete = bool(doc.get("autoDelete"))
    return ImageRecord(
        id=str(doc["id"]),
        user_id=str(doc.get("userId") or ADMIN_ID),
        filename=str(doc["filename"]),
        thumb_name=str(doc.get("thumbName") or ""),
        mime=str(doc.get("mime") or "application/octet-stream"),
        size=int(doc.get("size") or 0),
        width=int(doc.get("width") or 0),
        height=int(doc.get("height") or 0),
        created_at=_from_millis(doc.get("createdAt")),
        auto_delete=auto_delete,
        delete_after_days=doc.get("deleteAfterDays") if auto_delete else None,
    )
