"""Upload, gallery and deletion through the HTTP API."""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app import create_app
from config import Settings
from conftest import SVG_DOC, make_image, upload
from models import ImageRecord


def stored_path(settings, url, thumb=False):
    name = url.rsplit("/", 1)[-1]
    return (settings.thumb_dir if thumb else settings.upload_dir) / name


def test_png_upload_is_stored_as_webp(admin_client, settings):
    resp = upload(admin_client, make_image("PNG", (640, 480)))
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["format"] == "webp"
    assert body["url"] == f"http://testserver/uploads/{body['id']}.webp"
    assert body["thumbUrl"] == f"http://testserver/uploads/thumbs/{body['id']}_thumb.webp"
    assert body["markdown"] == f"![image]({body['url']})"
    assert body["html"] == f'<img src="{body["url"]}" alt="image" />'
    assert body["bbcode"] == f"[img]{body['url']}[/img]"

    primary = stored_path(settings, body["url"])
    thumb = stored_path(settings, body["thumbUrl"], thumb=True)
    assert primary.exists() and thumb.exists()
    assert body["size"] == primary.stat().st_size
    with Image.open(primary) as im:
        assert im.size == (body["width"], body["height"]) == (640, 480)
    with Image.open(thumb) as im:
        assert im.size == (400, 300)

    served = admin_client.get(f"/uploads/{body['id']}.webp")
    assert served.status_code == 200
    assert served.content == primary.read_bytes()


def test_gif_upload_keeps_format(admin_client):
    resp = upload(admin_client, make_image("GIF", (30, 30)), filename="a.gif", content_type="image/gif")
    assert resp.status_code == 200
    assert resp.json()["format"] == "gif"
    assert resp.json()["url"].endswith(".gif")


def test_upload_without_compression_keeps_png(admin_client):
    resp = upload(admin_client, make_image("PNG"), compressToWebp="false")
    assert resp.json()["format"] == "png"


def test_watermarked_upload(admin_client, settings):
    raw = make_image("PNG", (400, 200))
    plain = upload(admin_client, raw, compressToWebp="false").json()
    marked = upload(
        admin_client, raw, compressToWebp="false", autoWatermark="true", watermarkContent="mine"
    ).json()
    assert (plain["width"], plain["height"]) == (marked["width"], marked["height"])
    assert stored_path(settings, plain["url"]).read_bytes() != stored_path(settings, marked["url"]).read_bytes()


def test_svg_upload(admin_client, settings):
    resp = upload(admin_client, SVG_DOC, filename="v.svg", content_type="image/svg+xml")
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["format"] == "svg"
    assert (body["width"], body["height"]) == (800, 600)
    assert body["thumbUrl"].endswith(f"{body['id']}_thumb.webp")
    with Image.open(stored_path(settings, body["thumbUrl"], thumb=True)) as im:
        assert im.format == "WEBP"
        assert im.size == (400, 300)


def test_upload_validation(admin_client, settings):
    resp = upload(admin_client, b"hello", filename="a.txt", content_type="text/plain")
    assert resp.status_code == 400
    resp = admin_client.post("/api/upload", data={"compressToWebp": "true"})
    assert resp.status_code == 400
    assert list(settings.upload_dir.glob("*.*")) == []


def test_undecodable_upload_is_a_generic_failure(admin_client, settings):
    resp = upload(admin_client, b"\x89PNG but not really")
    assert resp.status_code == 500
    assert resp.json() == {"message": "Upload failed"}
    assert list(settings.upload_dir.glob("*.*")) == []


def test_oversized_upload_is_rejected(tmp_path):
    settings = Settings(
        DATA_DIR=tmp_path / "d", UPLOAD_DIR=tmp_path / "u", MAX_UPLOAD_BYTES=1024, LOG_LEVEL="WARNING"
    )
    with TestClient(create_app(settings)) as client:
        client.post("/api/auth/login", json={"username": "admin", "password": "admin"})
        big = make_image("BMP", (200, 200))
        resp = upload(client, big, content_type="image/png")
        assert resp.status_code == 413


def test_listing_pagination_and_order(admin_client):
    ids = [upload(admin_client).json()["id"] for _ in range(3)]
    first = admin_client.get("/api/images", params={"page": 1, "limit": 2}).json()
    assert first["total"] == 3
    assert first["totalPages"] == 2
    assert first["currentPage"] == 1
    assert [i["id"] for i in first["items"]] == [ids[2], ids[1]]
    assert first["items"][0]["url"].endswith(first["items"][0]["filename"])

    second = admin_client.get("/api/images", params={"page": 2, "limit": 2}).json()
    assert [i["id"] for i in second["items"]] == [ids[0]]

    # limit is clamped, bad values fall back to defaults
    clamped = admin_client.get("/api/images", params={"limit": 1000, "page": "abc"}).json()
    assert clamped["currentPage"] == 1
    assert clamped["totalPages"] == 1
    assert len(clamped["items"]) == 3

    for bad in ("inf", "-inf", "1e999"):
        resp = admin_client.get("/api/images", params={"page": bad, "limit": bad})
        assert resp.status_code == 200
        assert resp.json()["currentPage"] == 1

    assert admin_client.get("/api/images").json() == admin_client.get("/api/images").json()


def test_flat_listing(admin_client):
    uploaded = upload(admin_client).json()
    items = admin_client.get("/api/v1/list").json()["items"]
    assert len(items) == 1
    assert items[0]["id"] == uploaded["id"]
    assert set(items[0]) == {"id", "url", "thumbUrl", "size", "width", "height", "createdAt"}


def test_users_only_see_their_own_images(admin_client, bob):
    upload(admin_client)
    upload(admin_client)
    admin_client.post("/api/auth/logout")
    headers = {"X-API-Key": bob.api_key}
    mine = upload(admin_client, headers=headers).json()

    bob_items = admin_client.get("/api/v1/list", headers=headers).json()["items"]
    assert [i["id"] for i in bob_items] == [mine["id"]]
    admin_client.post("/api/auth/login", json={"username": "admin", "password": "admin"})
    admin_items = admin_client.get("/api/images").json()["items"]
    assert len(admin_items) == 2
    assert all(i["userId"] == "admin" for i in admin_items)
    assert mine["id"] not in {i["id"] for i in admin_items}


def test_single_delete(admin_client, settings):
    body = upload(admin_client).json()
    primary = stored_path(settings, body["url"])
    thumb = stored_path(settings, body["thumbUrl"], thumb=True)

    resp = admin_client.delete(f"/api/v1/delete/{body['id']}")
    assert resp.status_code == 200
    assert not primary.exists() and not thumb.exists()
    assert admin_client.get("/api/images").json()["total"] == 0

    assert admin_client.delete(f"/api/v1/delete/{body['id']}").status_code == 404


def test_cannot_delete_someone_elses_image(admin_client, bob, settings):
    body = upload(admin_client).json()
    admin_client.post("/api/auth/logout")
    resp = admin_client.delete(f"/api/v1/delete/{body['id']}", headers={"X-API-Key": bob.api_key})
    assert resp.status_code == 404
    assert stored_path(settings, body["url"]).exists()


def test_bulk_delete(admin_client, bob, settings):
    a = upload(admin_client).json()
    b = upload(admin_client).json()
    admin_client.post("/api/auth/logout")
    theirs = upload(admin_client, headers={"X-API-Key": bob.api_key}).json()
    admin_client.post("/api/auth/login", json={"username": "admin", "password": "admin"})

    resp = admin_client.post("/api/images/delete", json={"ids": [a["id"], theirs["id"], "ghost"]})
    assert resp.status_code == 200
    remaining = [i["id"] for i in admin_client.get("/api/images").json()["items"]]
    assert remaining == [b["id"]]
    assert not stored_path(settings, a["url"]).exists()
    assert stored_path(settings, theirs["url"]).exists()

    # nothing matches, still reported as done
    assert admin_client.post("/api/images/delete", json={"ids": ["ghost"]}).status_code == 200
    assert admin_client.post("/api/images/delete", json={"ids": []}).status_code == 400
    assert admin_client.post("/api/images/delete", json={}).status_code == 400

    resp = admin_client.post("/api/images/delete", json=[b["id"]])
    assert resp.status_code == 400
    assert resp.json() == {"message": "Invalid request"}
    assert [i["id"] for i in admin_client.get("/api/images").json()["items"]] == [b["id"]]


def fill_quota(store, user_id, count):
    now = datetime.now()
    for i in range(count):
        store.insert_image(ImageRecord(
            id=f"{user_id}-{i}", user_id=user_id, filename=f"{user_id}-{i}.webp",
            thumb_name=f"{user_id}-{i}_thumb.webp", mime="image/webp", size=1,
            width=1, height=1, created_at=now,
        ))


def test_daily_quota(admin_client, app, bob):
    fill_quota(app.state.store, "admin", 199)
    assert upload(admin_client).status_code == 200
    assert admin_client.get("/api/user/status").json()["dailyUploads"] == 200

    resp = upload(admin_client)
    assert resp.status_code == 429
    assert "message" in resp.json()

    admin_client.post("/api/auth/logout")
    assert upload(admin_client, headers={"X-API-Key": bob.api_key}).status_code == 200


def test_yesterdays_uploads_do_not_count(admin_client, app):
    store = app.state.store
    fill_quota(store, "admin", 200)
    yesterday = datetime.now() - timedelta(days=1)
    with store.transaction() as s:
        for i in range(200):
            s.get(ImageRecord, f"admin-{i}").created_at = yesterday
    assert upload(admin_client).status_code == 200


def test_stats(admin_client, bob):
    a = upload(admin_client).json()
    admin_client.post("/api/auth/logout")
    b = upload(admin_client, headers={"X-API-Key": bob.api_key}).json()
    stats = admin_client.get("/api/stats").json()
    assert stats == {"total": 2, "today": 2, "totalSize": a["size"] + b["size"]}


def test_expired_images_are_purged(admin_client, app, settings):
    body = upload(admin_client, autoDelete="true", deleteDays="1").json()
    listed = admin_client.get("/api/images").json()["items"][0]
    assert listed["autoDelete"] is True
    assert listed["deleteAfterDays"] == 1

    gallery = app.state.gallery
    assert gallery.purge_expired(datetime.now()) == 0
    assert gallery.purge_expired(datetime.now() + timedelta(days=2)) == 1
    assert not stored_path(settings, body["url"]).exists()
    assert admin_client.get("/api/images").json()["total"] == 0


@pytest.mark.parametrize("quality", ["5", "500", "abc", "inf", "1e999", "nan"])
def test_quality_is_clamped(admin_client, quality):
    assert upload(admin_client, webpQuality=quality).status_code == 200
