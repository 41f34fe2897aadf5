"""Tests for Standard Webhooks signature verification."""

import asyncio
import base64
import time

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from clinicslot.webhook_security import (
    constant_time_compare,
    extract_svix_signing_key,
    sign_standard_webhook,
    verify_dodo_webhook,
    verify_timestamp,
)

SECRET = "whsec_" + base64.b64encode(b"super-secret-signing-key").decode()


def build_request(body: bytes, headers: dict) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/webhooks/payments",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def signed_headers(body: bytes, webhook_id="msg_1", timestamp=None, secret=SECRET) -> dict:
    timestamp = timestamp or str(int(time.time()))
    signature = sign_standard_webhook(secret, webhook_id, timestamp, body)
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": f"v1,{signature}",
    }


class TestHelpers:
    def test_signing_key_strips_prefix(self) -> None:
        assert extract_svix_signing_key(SECRET) == b"super-secret-signing-key"

    def test_unencoded_secret_used_as_bytes(self) -> None:
        assert extract_svix_signing_key("not base64!") == b"not base64!"

    def test_constant_time_compare(self) -> None:
        assert constant_time_compare("abc", "abc")
        assert not constant_time_compare("abc", "abd")
        assert not constant_time_compare("", "")

    def test_timestamp_window(self) -> None:
        now = 1_700_000_000
        assert verify_timestamp(str(now - 60), now=now)
        assert not verify_timestamp(str(now - 301), now=now)
        assert not verify_timestamp("yesterday", now=now)
        assert not verify_timestamp(None, now=now)


class TestVerifyDodoWebhook:
    """Verification over the raw request body."""

    def test_valid_signature(self) -> None:
        body = b'{"type": "payment.succeeded"}'
        request = build_request(body, signed_headers(body))

        is_valid, raw = asyncio.run(verify_dodo_webhook(request, SECRET))

        assert is_valid
        assert raw == body

    def test_any_matching_signature_entry_is_accepted(self) -> None:
        body = b"{}"
        headers = signed_headers(body)
        headers["webhook-signature"] = "v1,bogus " + headers["webhook-signature"]

        is_valid, _ = asyncio.run(verify_dodo_webhook(build_request(body, headers), SECRET))

        assert is_valid

    def test_tampered_body_is_rejected(self) -> None:
        headers = signed_headers(b'{"amount": 100}')
        request = build_request(b'{"amount": 1}', headers)

        with pytest.raises(HTTPException) as exc_info:
            asyncio.run(verify_dodo_webhook(request, SECRET))
        assert exc_info.value.status_code == 401

    def test_stale_timestamp_is_rejected(self) -> None:
        body = b"{}"
        headers = signed_headers(body, timestamp=str(int(time.time()) - 3600))

        is_valid, _ = asyncio.run(
            verify_dodo_webhook(build_request(body, headers), SECRET, raise_on_failure=False)
        )

        assert not is_valid

    def test_missing_signature_is_rejected(self) -> None:
        request = build_request(b"{}", {"webhook-id": "msg_2"})

        is_valid, _ = asyncio.run(verify_dodo_webhook(request, SECRET, raise_on_failure=False))

        assert not is_valid
