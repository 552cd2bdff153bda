import httpx
import pytest
from tenacity import wait_none

from presence_cert.services.face_match_provider import (
    FaceMatchProvider, FaceMatchProviderError, normalize_score
)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(FaceMatchProvider._post_match.retry, "wait", wait_none())
    monkeypatch.setattr(FaceMatchProvider._download.retry, "wait", wait_none())


def provider_with(handler, score_scale=None):
    return FaceMatchProvider(
        api_url="https://faces.example.org/v2/face-match/", api_key="k",
        transport=httpx.MockTransport(handler), score_scale=score_scale
    )


@pytest.mark.parametrize("raw, expected", [
    (82, 82.0),
    (1, 1.0),
    (0.82, 0.82),
    (150, 100.0),
    (None, 0.0),
    ("n/a", 0.0),
])
def test_normalize_percentage_score(raw, expected):
    assert normalize_score(raw, scale=100) == pytest.approx(expected)


@pytest.mark.parametrize("raw, expected", [
    (0.82, 82.0),
    (1, 100.0),
    (-0.1, 0.0),
])
def test_normalize_similarity_score(raw, expected):
    assert normalize_score(raw, scale=1) == pytest.approx(expected)


async def test_compare_posts_both_images():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"score": 91.5})

    score = await provider_with(handler).compare(b"live", b"ref")

    assert score == 91.5
    assert seen[0].headers["x-api-key"] == "k"
    body = seen[0].content
    assert b'name="user_image"' in body and b'name="ref_image"' in body


async def test_similarity_is_accepted_on_unit_scale():
    provider = provider_with(lambda r: httpx.Response(200, json={"similarity": 0.7}), score_scale=1)
    assert await provider.compare(b"l", b"r") == pytest.approx(70.0)


async def test_low_percentage_is_not_promoted():
    score = await provider_with(lambda r: httpx.Response(200, json={"score": 1})).compare(b"l", b"r")
    assert score == pytest.approx(1.0)


async def test_server_errors_are_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"score": 80})

    assert await provider_with(handler).compare(b"l", b"r") == 80
    assert len(attempts) == 3


async def test_client_errors_fail_without_retry():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(401)

    with pytest.raises(FaceMatchProviderError):
        await provider_with(handler).compare(b"l", b"r")
    assert len(attempts) == 1


async def test_reference_download_failure():
    with pytest.raises(FaceMatchProviderError):
        await provider_with(lambda r: httpx.Response(404)).fetch_reference("https://cdn/selfie.jpg")
