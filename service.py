"""Upload and gallery operations on top of the record store."""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from config import Settings
from database import RecordStore
from errors import NotFound, RateLimited, ValidationError
from models import ImageRecord, User
from processor import ImageProcessor, ProcessOptions
from security import generate_id
from utils import embed_snippets, parse_bool, parse_int, resolve_under_root, to_millis, today_range
from workers import ProcessingPool

logger = logging.getLogger(__name__)

ALLOWED_MIME = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "image/avif",
}
DEFAULT_WATERMARK = "imgdrop"
PAGE_LIMIT_DEFAULT = 20
PAGE_LIMIT_MAX = 60


@dataclass
class UploadOptions:
    compress_to_webp: bool = True
    webp_quality: int = 90
    auto_watermark: bool = False
    watermark_content: str = ""
    auto_delete: bool = False
    delete_days: int = 30

    @classmethod
    def from_form(cls, form) -> "UploadOptions":
        """Build options from raw form values, applying defaults and clamps."""
        return cls(
            compress_to_webp=str(form.get("compressToWebp", "true")) != "false",
            webp_quality=parse_int(form.get("webpQuality"), 90, 10, 100),
            auto_watermark=parse_bool(form.get("autoWatermark"), False),
            watermark_content=(form.get("watermarkContent") or "").strip(),
            auto_delete=parse_bool(form.get("autoDelete"), False),
            delete_days=parse_int(form.get("deleteDays"), 30, 1, 365),
        )

    @property
    def watermark_text(self) -> str:
        if not self.auto_watermark:
            return ""
        return self.watermark_content or DEFAULT_WATERMARK


def file_url(base_url: str, record: ImageRecord) -> str:
    return f"{base_url}/uploads/{record.filename}"


def thumb_url(base_url: str, record: ImageRecord) -> str:
    return f"{base_url}/uploads/thumbs/{record.thumb_name}"


def serialize_record(record: ImageRecord, base_url: str) -> dict:
    return {
        "id": record.id,
        "userId": record.user_id,
        "filename": record.filename,
        "thumbName": record.thumb_name,
        "mime": record.mime,
        "size": record.size,
        "width": record.width,
        "height": record.height,
        "createdAt": to_millis(record.created_at),
        "autoDelete": record.auto_delete,
        "deleteAfterDays": record.delete_after_days,
        "url": file_url(base_url, record),
        "thumbUrl": thumb_url(base_url, record),
    }


class GalleryService:
    """Ingests uploads and serves each user's own image records."""

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        processor: ImageProcessor,
        pool: ProcessingPool,
    ):
        self.settings = settings
        self.store = store
        self.processor = processor
        self.pool = pool
        self.upload_dir = Path(settings.upload_dir)
        self.thumb_dir = Path(settings.thumb_dir)

    def ensure_dirs(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.thumb_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    def uploads_today(self, user: User) -> int:
        start, end = today_range()
        return self.store.count_images(user_id=user.id, start=start, end=end)

    def check_quota(self, user: User) -> None:
        if self.uploads_today(user) >= self.settings.daily_upload_limit:
            raise RateLimited("Daily upload limit reached")

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def validate(self, data: Optional[bytes], content_type: Optional[str]) -> None:
        if data is None:
            raise ValidationError("Missing image file")
        if (content_type or "").lower() not in ALLOWED_MIME:
            raise ValidationError("Unsupported file type")
        if len(data) > self.settings.max_upload_bytes:
            raise ValidationError("File too large", status_code=413)

    def upload(
        self,
        data: Optional[bytes],
        content_type: Optional[str],
        options: UploadOptions,
        user: User,
        base_url: str,
    ) -> dict:
        self.validate(data, content_type)
        self.check_quota(user)

        processed = self.pool.run(
            self.processor.process,
            data,
            ProcessOptions(
                compress_to_webp=options.compress_to_webp,
                quality=options.webp_quality,
                watermark_text=options.watermark_text,
            ),
        )
        thumb = self.pool.run(self.processor.thumbnail, processed.data)

        image_id = generate_id()
        record = ImageRecord(
            id=image_id,
            user_id=user.id,
            filename=f"{image_id}.{processed.ext}",
            thumb_name=f"{image_id}_thumb.{thumb.ext}",
            mime=processed.mime,
            size=processed.size,
            width=processed.width,
            height=processed.height,
            created_at=datetime.now(),
            auto_delete=options.auto_delete,
            delete_after_days=options.delete_days if options.auto_delete else None,
        )

        self.ensure_dirs()
        (self.upload_dir / record.filename).write_bytes(processed.data)
        (self.thumb_dir / record.thumb_name).write_bytes(thumb.data)

        start, end = today_range()
        try:
            self.store.insert_image_within_quota(
                record, self.settings.daily_upload_limit, start, end
            )
        except Exception:
            self._remove_files(record)
            raise

        logger.info(
            "User %s uploaded %s (%s, %dx%d, %d bytes)",
            user.id, record.filename, record.mime, record.width, record.height, record.size,
        )
        url = file_url(base_url, record)
        return {
            "id": record.id,
            "url": url,
            "thumbUrl": thumb_url(base_url, record),
            "size": record.size,
            "width": record.width,
            "height": record.height,
            "format": processed.ext,
            **embed_snippets(url),
        }

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_page(self, user: User, page, limit, base_url: str) -> dict:
        page = parse_int(page, 1, low=1)
        limit = parse_int(limit, PAGE_LIMIT_DEFAULT, 1, PAGE_LIMIT_MAX)
        items = self.store.list_images_by_owner(user.id)
        offset = (page - 1) * limit
        return {
            "items": [serialize_record(r, base_url) for r in items[offset:offset + limit]],
            "total": len(items),
            "totalPages": max(1, math.ceil(len(items) / limit)),
            "currentPage": page,
        }

    def list_all(self, user: User, base_url: str) -> list[dict]:
        return [
            {
                "id": r.id,
                "url": file_url(base_url, r),
                "thumbUrl": thumb_url(base_url, r),
                "size": r.size,
                "width": r.width,
                "height": r.height,
                "createdAt": to_millis(r.created_at),
            }
            for r in self.store.list_images_by_owner(user.id)
        ]

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _remove_files(self, record: ImageRecord) -> None:
        targets = [self.upload_dir / record.filename]
        if record.thumb_name:
            targets.append(self.thumb_dir / record.thumb_name)
        for target in targets:
            path = resolve_under_root(self.upload_dir, target)
            path.unlink(missing_ok=True)

    def _delete_records(self, records: Iterable[ImageRecord]) -> list[ImageRecord]:
        """Remove backing files, then the records."""
        records = list(records)
        for record in records:
            self._remove_files(record)
        if not records:
            return []
        removed = self.store.delete_images(records[0].user_id, [r.id for r in records])
        return removed

    def delete_many(self, user: User, ids) -> int:
        """Delete the user's records among ``ids``; unknown ids are ignored."""
        if not isinstance(ids, list) or not ids:
            raise ValidationError("Missing ids to delete")
        wanted = {str(i) for i in ids}
        owned = [r for r in self.store.list_images_by_owner(user.id) if r.id in wanted]
        removed = self._delete_records(owned)
        logger.info("User %s deleted %d of %d requested images", user.id, len(removed), len(wanted))
        return len(removed)

    def delete_one(self, user: User, image_id: str) -> None:
        record = self.store.get_image(image_id)
        if record is None or record.user_id != user.id:
            raise NotFound("Image not found")
        self._delete_records([record])
        logger.info("User %s deleted %s", user.id, record.filename)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete auto-delete images whose retention period has passed."""
        now = now or datetime.now()
        expired = self.store.list_expired_images(now)
        for record in expired:
            self._remove_files(record)
            self.store.delete_image(record.id)
        if expired:
            logger.info("Purged %d expired images", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        start, end = today_range()
        return {
            "total": self.store.count_images(),
            "today": self.store.count_images(start=start, end=end),
            "totalSize": self.store.total_size(),
        }
