from __future__ import annotations

import hashlib
import hmac
import json

import requests

from longzang.notify import SIGNATURE_HEADER, WebhookNotifier, sign_payload


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.text = ""


class _Session:
    def __init__(self, result: object) -> None:
        self.result = result
        self.posts: list[dict[str, object]] = []

    def post(self, url: str, **kwargs: object) -> _Response:
        self.posts.append({"url": url, **kwargs})
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_sign_payload_matches_hmac_sha256() -> None:
    body = b'{"event":"claim.created"}'

    expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    assert sign_payload("s3cret", body) == f"sha256={expected}"


def test_notify_posts_signed_event() -> None:
    session = _Session(_Response(204))
    notifier = WebhookNotifier(
        "https://hooks.example/claims",
        "s3cret",
        background=False,
        session=session,
    )

    notifier.notify_claim({"volumeId": "1001", "name": "张三"})

    post = session.posts[0]
    body = post["data"]
    assert json.loads(body.decode("utf-8")) == {
        "event": "claim.created",
        "claim": {"volumeId": "1001", "name": "张三"},
    }
    assert post["headers"][SIGNATURE_HEADER] == sign_payload("s3cret", body)


def test_notify_without_url_is_disabled() -> None:
    session = _Session(_Response(200))
    notifier = WebhookNotifier(None, background=False, session=session)

    notifier.notify_claim({"volumeId": "1001"})

    assert notifier.enabled is False
    assert session.posts == []


def test_notify_swallows_delivery_errors() -> None:
    for result in (requests.ConnectionError("refused"), _Response(500)):
        session = _Session(result)
        notifier = WebhookNotifier("https://hooks.example/claims", background=False, session=session)

        notifier.notify_claim({"volumeId": "1001"})

        assert len(session.posts) == 1
