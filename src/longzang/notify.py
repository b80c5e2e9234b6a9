from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
from typing import Mapping

import requests

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Longzang-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookNotifier:
    """Posts claim events to a webhook. Never raises."""

    def __init__(
        self,
        url: str | None,
        secret: str | None = None,
        *,
        timeout: float = 10.0,
        background: bool = True,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.background = background
        self._session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify_claim(self, claim: Mapping[str, object]) -> None:
        if not self.enabled:
            return
        event = {"event": "claim.created", "claim": dict(claim)}
        if self.background:
            thread = threading.Thread(
                target=self._deliver,
                args=(event,),
                name="longzang-notify",
                daemon=True,
            )
            thread.start()
        else:
            self._deliver(event)

    def _deliver(self, event: dict[str, object]) -> None:
        body = json.dumps(event, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.secret, body)
        try:
            resp = self._session.post(self.url, data=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Claim notification failed: %s", exc)
            return
        except Exception:  # pragma: no cover - never let a notification break a claim
            logger.exception("Claim notification failed unexpectedly")
            return
        if not 200 <= resp.status_code < 300:
            logger.warning(
                "Claim notification rejected with status %s: %s",
                resp.status_code,
                resp.text[:200],
            )
            return
        logger.debug("Claim notification delivered for %s", event["claim"].get("volumeId"))
