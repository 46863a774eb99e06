"""
Webhook ingress endpoint tests.
"""

import json

import pytest

from threadgate.config import settings
from threadgate.engine.core import ThreadGateEngine
from threadgate.engine.errors import SignatureInvalid
from threadgate.webhooks import compute_signature, verify_signature

from fakes import issue_payload

SECRET = "hook-secret"


def test_signature_forms():
    body = b'{"action": "opened"}'
    digest = compute_signature(SECRET, body)

    verify_signature(SECRET, body, digest)
    verify_signature(SECRET, body, f"sha256={digest}")
    verify_signature(SECRET, body, digest.upper())

    with pytest.raises(SignatureInvalid):
        verify_signature(SECRET, body + b" ", digest)
    with pytest.raises(SignatureInvalid):
        verify_signature("other-secret", body, digest)
    with pytest.raises(SignatureInvalid, match="Missing"):
        verify_signature(SECRET, body, None)


def test_non_ascii_signature_rejected():
    with pytest.raises(SignatureInvalid):
        verify_signature(SECRET, b"{}", "caf\xe9")


@pytest.mark.asyncio
async def test_non_ascii_signature_header_is_401(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", SECRET)

    response = await client.post(
        "/webhooks",
        content=b"{}",
        headers={"X-Gitea-Event": "issues", "X-Gitea-Signature": "caf\xe9".encode("latin-1")},
    )

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid webhook signature"}


@pytest.mark.asyncio
async def test_signed_delivery_accepted(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", SECRET)
    body = json.dumps(issue_payload("opened", 5, repo="signed")).encode()

    response = await client.post(
        "/webhooks",
        content=body,
        headers={
            "X-Gitea-Event": "issues",
            "X-Gitea-Signature": compute_signature(SECRET, body),
            "Content-Type": "application/json",
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["processed"] == "issues"
    assert data["created"] is True
    assert data["tags"] == ["signed#5", "signed"]


@pytest.mark.asyncio
async def test_github_style_headers_accepted(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", SECRET)
    body = json.dumps(issue_payload("opened", 6, repo="hub")).encode()

    response = await client.post(
        "/webhooks",
        content=body,
        headers={
            "X-GitHub-Event": "issues",
            "X-Hub-Signature-256": f"sha256={compute_signature(SECRET, body)}",
        },
    )

    assert response.status_code == 200
    assert response.json()["processed"] == "issues"


@pytest.mark.asyncio
async def test_bad_signature_rejected_before_parsing(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", SECRET)

    response = await client.post(
        "/webhooks",
        content=b"not even json",
        headers={"X-Gitea-Event": "issues", "X-Gitea-Signature": "deadbeef"},
    )
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid webhook signature"}

    unsigned = await client.post("/webhooks", content=b"{}", headers={"X-Gitea-Event": "issues"})
    assert unsigned.status_code == 401
    assert unsigned.json() == {"error": "Missing webhook signature"}


@pytest.mark.asyncio
async def test_unsigned_accepted_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", None)

    response = await client.post(
        "/webhooks",
        json=issue_payload("opened", 7, repo="open"),
        headers={"X-Gitea-Event": "issues"},
    )

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_invalid_json_is_400(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", None)

    response = await client.post("/webhooks", content=b"{oops", headers={"X-Gitea-Event": "issues"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}


@pytest.mark.asyncio
async def test_payload_not_matching_kind_is_400(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", None)

    missing_repo = await client.post(
        "/webhooks", json={"action": "opened", "issue": {"number": 1}}, headers={"X-Gitea-Event": "issues"}
    )
    assert missing_repo.status_code == 400
    assert missing_repo.json()["error"].startswith("Unparseable payload: issues:")

    array = await client.post("/webhooks", json=[1, 2], headers={"X-Gitea-Event": "issues"})
    assert array.status_code == 400
    assert array.json() == {"error": "Unparseable payload: payload must be a JSON object"}


@pytest.mark.asyncio
async def test_unknown_kind_acknowledged(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", None)

    response = await client.post("/webhooks", json={"action": "published"}, headers={"X-Gitea-Event": "release"})
    assert response.status_code == 200
    assert response.json() == {"ok": True, "skipped": "ignored event kind"}

    no_header = await client.post("/webhooks", json={"zen": "hi"})
    assert no_header.json() == {"ok": True, "skipped": "ignored event kind"}


@pytest.mark.asyncio
async def test_routing_failure_is_500(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", None)

    async def explode(self, event):
        raise RuntimeError("boom")

    monkeypatch.setattr(ThreadGateEngine, "route_webhook", explode)

    response = await client.post(
        "/webhooks",
        json=issue_payload("opened", 8, repo="fail"),
        headers={"X-Gitea-Event": "issues"},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "boom"}
