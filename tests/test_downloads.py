from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

from app.core.settings import settings
from app.db.session import SessionLocal
from app.models.download import DownloadToken
from app.security.download_tokens import hash_download_token
from app.services.downloads import is_over_daily_limit
from app.services.storage import get_storage

from conftest import bearer, login


def _setup_purchase(client, market):
    creator_id = market.create_user("creator@example.com", role="creator")
    buyer_id = market.create_user("buyer@example.com")
    seeded = market.create_product(
        creator_id,
        files=(
            ("wonderland.fseq", b"PSEQ-rendered-bytes", "RENDERED"),
            ("wonderland.xsq", b"<?xml version='1.0'?><xsequence/>", "SOURCE"),
        ),
    )
    grant = market.grant_entitlement(buyer_id, seeded["product_id"], seeded["version_id"])
    headers = bearer(login(client, "buyer@example.com"))
    return seeded, grant, headers, buyer_id


def _request_links(client, headers, entitlement_id, version_id):
    return client.post(
        "/api/library/download",
        headers=headers,
        json={"entitlement_id": entitlement_id, "file_version_id": version_id},
    )


def _split(url: str):
    parsed = urlparse(url)
    return parsed.path, parse_qs(parsed.query)["token"][0]


def test_download_links_issued_and_count_incremented(client, market):
    seeded, grant, headers, buyer_id = _setup_purchase(client, market)

    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    assert r.status_code == 200
    body = r.json()
    assert len(body["download_urls"]) == 2
    for link in body["download_urls"]:
        path, token = _split(link["download_url"])
        assert path.startswith("/api/media/")
        assert path[len("/api/media/"):] in seeded["storage_keys"]
        assert len(token) == 64

    entitlement = market.entitlement(grant["entitlement_id"])
    assert entitlement.download_count == 1
    assert entitlement.last_download_at is not None

    assert _request_links(client, headers, grant["entitlement_id"], seeded["version_id"]).status_code == 200
    assert market.entitlement(grant["entitlement_id"]).download_count == 2

    granted = market.audit_actions("DOWNLOAD_ACCESS_GRANTED")
    assert len(granted) == 2
    assert granted[0].user_id == buyer_id


def test_tokens_are_stored_as_digests_with_expiry(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    before = datetime.now(tz=timezone.utc)
    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    _, token = _split(r.json()["download_urls"][0]["download_url"])

    with SessionLocal() as db:
        assert db.query(DownloadToken).filter(DownloadToken.token_hash == token).first() is None
        record = db.query(DownloadToken).filter(DownloadToken.token_hash == hash_download_token(token)).one()
        expires_at = record.expires_at.replace(tzinfo=timezone.utc)
        ttl = timedelta(seconds=settings.download_token_ttl_seconds)
        assert before + ttl - timedelta(seconds=5) <= expires_at <= before + ttl + timedelta(seconds=5)
        assert record.used_at is None


def test_foreign_entitlement_is_denied_and_audited_once(client, market):
    seeded, grant, _, _ = _setup_purchase(client, market)
    market.create_user("other@example.com")
    other_headers = bearer(login(client, "other@example.com"))

    r = _request_links(client, other_headers, grant["entitlement_id"], seeded["version_id"])
    assert r.status_code == 403
    assert r.json()["detail"] == "No valid entitlement found"

    denied = market.audit_actions("DOWNLOAD_ACCESS_DENIED")
    assert len(denied) == 1
    assert denied[0].entity_id == str(grant["entitlement_id"])
    assert market.audit_actions("DOWNLOAD_ACCESS_GRANTED") == []
    assert market.entitlement(grant["entitlement_id"]).download_count == 0


def test_inactive_entitlement_is_denied(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    market.update_entitlement(grant["entitlement_id"], is_active=False)

    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    assert r.status_code == 403
    assert len(market.audit_actions("DOWNLOAD_ACCESS_DENIED")) == 1


def test_version_without_files_is_not_found(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    empty_version = market.add_empty_version(seeded["product_id"])

    r = _request_links(client, headers, grant["entitlement_id"], empty_version)
    assert r.status_code == 404
    assert r.json()["detail"] == "No files found for this version"

    r_unknown = _request_links(client, headers, grant["entitlement_id"], 9999)
    assert r_unknown.status_code == 404
    assert market.entitlement(grant["entitlement_id"]).download_count == 0


def test_daily_limit_blocks_recent_heavy_use(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    market.update_entitlement(
        grant["entitlement_id"],
        download_count=settings.download_daily_limit,
        last_download_at=datetime.now(tz=timezone.utc) - timedelta(hours=2),
    )

    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    assert r.status_code == 429
    assert r.json()["code"] == "RATE_LIMITED"
    assert len(market.audit_actions("RATE_LIMIT_EXCEEDED")) == 1
    assert market.entitlement(grant["entitlement_id"]).download_count == settings.download_daily_limit

    # A full day later the same lifetime count is allowed again
    market.update_entitlement(
        grant["entitlement_id"],
        last_download_at=datetime.now(tz=timezone.utc) - timedelta(days=1, minutes=5),
    )
    assert _request_links(client, headers, grant["entitlement_id"], seeded["version_id"]).status_code == 200


def test_is_over_daily_limit_arithmetic():
    now = datetime(2024, 12, 1, 12, 0, tzinfo=timezone.utc)
    limit = settings.download_daily_limit

    never = SimpleNamespace(last_download_at=None, download_count=limit + 5)
    assert is_over_daily_limit(never, now) is False

    recent = SimpleNamespace(last_download_at=now - timedelta(hours=23, minutes=59), download_count=limit)
    assert is_over_daily_limit(recent, now) is True

    below = SimpleNamespace(last_download_at=now - timedelta(minutes=1), download_count=limit - 1)
    assert is_over_daily_limit(below, now) is False

    # Naive timestamps from SQLite are read as UTC
    naive = SimpleNamespace(last_download_at=datetime(2024, 11, 30, 12, 0), download_count=limit)
    assert is_over_daily_limit(naive, now) is False


def test_media_token_is_single_use(client, market):
    seeded, grant, headers, buyer_id = _setup_purchase(client, market)
    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    link = next(l for l in r.json()["download_urls"] if l["file_name"] == "wonderland.fseq")
    path, token = _split(link["download_url"])

    first = client.get(path, params={"token": token})
    assert first.status_code == 200
    assert first.content == b"PSEQ-rendered-bytes"
    assert first.headers["content-disposition"] == 'attachment; filename="wonderland.fseq"'
    assert first.headers["cache-control"] == "no-store"

    second = client.get(path, params={"token": token})
    assert second.status_code == 403

    downloaded = market.audit_actions("FILE_DOWNLOADED")
    assert len(downloaded) == 1
    assert downloaded[0].user_id == buyer_id


def test_storage_failure_leaves_token_redeemable(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    link = next(l for l in r.json()["download_urls"] if l["file_name"] == "wonderland.fseq")
    path, token = _split(link["download_url"])
    storage_key = path[len("/api/media/"):]

    storage = get_storage()
    storage.delete(storage_key)
    failed = client.get(path, params={"token": token})
    assert failed.status_code == 500
    assert failed.json()["code"] == "STORAGE_ERROR"
    assert market.audit_actions("FILE_DOWNLOADED") == []

    storage.upload(storage_key, b"PSEQ-rendered-bytes")
    retry = client.get(path, params={"token": token})
    assert retry.status_code == 200
    assert retry.content == b"PSEQ-rendered-bytes"
    assert client.get(path, params={"token": token}).status_code == 403


def test_media_rejects_missing_unknown_and_expired_tokens(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    path, token = _split(r.json()["download_urls"][0]["download_url"])

    assert client.get(path).status_code == 400
    assert client.get(path, params={"token": "0" * 64}).status_code == 403

    with SessionLocal() as db:
        db.query(DownloadToken).filter(DownloadToken.token_hash == hash_download_token(token)).update(
            {"expires_at": datetime.now(tz=timezone.utc) - timedelta(seconds=1)}
        )
        db.commit()
    r_expired = client.get(path, params={"token": token})
    assert r_expired.status_code == 403
    assert r_expired.json()["detail"] == "Download token expired"


def test_media_rejects_token_after_entitlement_revoked(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    path, token = _split(r.json()["download_urls"][0]["download_url"])

    market.update_entitlement(grant["entitlement_id"], is_active=False)
    assert client.get(path, params={"token": token}).status_code == 403


def test_media_token_is_bound_to_its_file(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    r = _request_links(client, headers, grant["entitlement_id"], seeded["version_id"])
    links = r.json()["download_urls"]
    path_a, token_a = _split(links[0]["download_url"])
    path_b, _ = _split(links[1]["download_url"])
    assert path_a != path_b

    assert client.get(path_b, params={"token": token_a}).status_code == 404
    # The mismatch did not consume the token
    assert client.get(path_a, params={"token": token_a}).status_code == 200


def test_library_lists_active_entitlements(client, market):
    seeded, grant, headers, _ = _setup_purchase(client, market)
    r = client.get("/api/library", headers=headers)
    assert r.status_code == 200
    items = r.json()
    assert len(items) == 1
    assert items[0]["entitlement_id"] == grant["entitlement_id"]
    assert items[0]["product"]["slug"] == seeded["slug"]
    assert len(items[0]["product"]["versions"][0]["files"]) == 2

    market.update_entitlement(grant["entitlement_id"], is_active=False)
    assert client.get("/api/library", headers=headers).json() == []
