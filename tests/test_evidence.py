import httpx
import pytest

from presence_cert.services.evidence_service import (
    Attachment, EvidenceStore, EvidenceStoreError, EvidenceUploader
)


def test_attachment_kind_is_validated():
    with pytest.raises(ValueError):
        Attachment(kind="video", content=b"x")


def test_attachment_content_type_and_extension():
    photo = Attachment(kind="image", content=b"x")
    document = Attachment(kind="file", content=b"x", filename="Ticket.PDF")

    assert photo.content_type == "image/jpeg"
    assert photo.extension in ("jpg", "jpeg", "jpe")
    assert document.extension == "pdf"
    assert document.content_type == "application/pdf"


def test_build_key_scopes_by_registration():
    attachment = Attachment(kind="file", content=b"x", filename="notes.txt")
    assert EvidenceUploader.build_key(42, attachment) == f"42/{attachment.id}.txt"


async def test_store_put_returns_public_url():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"Key": "ok"})

    store = EvidenceStore(
        base_url="https://storage.example.org/v1/", bucket="evidence", api_key="secret",
        transport=httpx.MockTransport(handler)
    )

    url = await store.put(b"bytes", "42/a.jpg", "image/jpeg")

    assert url == "https://storage.example.org/v1/object/public/evidence/42/a.jpg"
    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/v1/object/evidence/42/a.jpg"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert seen[0].content == b"bytes"


async def test_store_error_is_wrapped():
    store = EvidenceStore(
        base_url="https://storage.example.org", bucket="evidence",
        transport=httpx.MockTransport(lambda request: httpx.Response(403))
    )

    with pytest.raises(EvidenceStoreError):
        await store.put(b"bytes", "42/a.jpg")


async def test_upload_all_skips_failed_items():
    def handler(request):
        if request.url.path.endswith(".png"):
            return httpx.Response(500)
        return httpx.Response(200)

    uploader = EvidenceUploader(EvidenceStore(
        base_url="https://storage.example.org", bucket="evidence",
        transport=httpx.MockTransport(handler)
    ))
    attachments = [
        Attachment(kind="file", content=b"a", filename="a.txt"),
        Attachment(kind="file", content=b"b", filename="b.png"),
        Attachment(kind="image", content=b"c", filename="c.jpg"),
    ]

    uploaded = await uploader.upload_all(7, attachments)
    aligned = await uploader.upload_each(7, attachments)

    assert [u.storage_key.rsplit(".", 1)[1] for u in uploaded] == ["txt", "jpg"]
    assert aligned[1] is None and aligned[0] is not None


async def test_upload_all_without_attachments():
    assert await EvidenceUploader(EvidenceStore(base_url="http://x", bucket="b")).upload_all(1, []) == []
