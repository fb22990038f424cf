from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from idea_validator import main  # noqa: E402
from idea_validator.ai_providers import ProviderTimeoutError  # noqa: E402
from idea_validator.idea_analysis import IdeaAnalysisService  # noqa: E402
from idea_validator.user_store import STARTING_CREDITS, UserStore  # noqa: E402


class _RecordingMailer:
    def __init__(self):
        self.sent: list[str] = []

    async def send_waitlist_confirmation(self, email: str) -> bool:
        self.sent.append(email)
        return True


class _TimingOutService:
    async def run_analysis(self, **kwargs):
        raise ProviderTimeoutError("Request to Google timed out. The model took too long to respond.")

    async def chat(self, message, context, provider_config=None):
        raise ProviderTimeoutError("Request to Google timed out. The model took too long to respond.")


@pytest.fixture()
def client(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(main, "user_store", UserStore(root=tmp_path))
    monkeypatch.setattr(
        main,
        "analysis_service",
        IdeaAnalysisService(default_config=None, allow_mock_fallback=True),
    )
    monkeypatch.setattr(main, "mailer", _RecordingMailer())
    monkeypatch.setattr(main, "BILLING_SECRET", "billing-secret")
    return TestClient(main.app)


def test_health_and_providers(client: TestClient):
    assert client.get("/health").json() == {"status": "ok"}

    providers = client.get("/api/providers").json()
    assert [item["id"] for item in providers["providers"]] == ["google", "openai", "anthropic", "openrouter"]
    assert providers["mock_fallback_enabled"] is True


def test_anonymous_analysis_returns_report(client: TestClient):
    response = client.post("/api/analyze", json={"idea": "Dog walking app"})

    assert response.status_code == 200
    report = response.json()
    assert report["originalIdea"] == "Dog walking app"
    assert report["summaryVerdict"] == "Needs Refinement"
    assert report["viabilityScore"] == 50


def test_signed_in_analysis_spends_credit_and_saves_report(client: TestClient):
    client.post("/api/users/login", json={"email": "ada@example.com", "name": "Ada"})

    report = client.post("/api/analyze", json={"idea": "Dog walking app", "email": "ada@example.com"}).json()

    user = main.user_store.get("ada@example.com")
    assert user.credits == STARTING_CREDITS - 1
    saved = client.get("/api/reports/ada@example.com").json()
    assert [item["id"] for item in saved] == [report["id"]]


def test_analysis_rejects_unknown_user_and_empty_wallet(client: TestClient):
    missing = client.post("/api/analyze", json={"idea": "Dog walking app", "email": "ghost@example.com"})
    assert missing.status_code == 404

    client.post("/api/users/login", json={"email": "ada@example.com"})
    for _ in range(STARTING_CREDITS):
        client.post("/api/users/ada@example.com/deduct-credit")
    broke = client.post("/api/analyze", json={"idea": "Dog walking app", "email": "ada@example.com"})
    assert broke.status_code == 403


def test_analysis_input_and_provider_errors_map_to_status_codes(client: TestClient, monkeypatch):
    empty = client.post("/api/analyze", json={"idea": "  "})
    assert empty.status_code == 400
    assert empty.json()["detail"] == "Please provide a startup idea or an attachment to analyze."

    bad_provider = client.post(
        "/api/analyze",
        json={"idea": "Dog walking app", "customModel": {"provider": "openai", "model": "gpt-4o", "apiKey": ""}},
    )
    assert bad_provider.status_code == 400

    monkeypatch.setattr(main, "analysis_service", _TimingOutService())
    timed_out = client.post("/api/analyze", json={"idea": "Dog walking app"})
    assert timed_out.status_code == 504
    assert "timed out" in timed_out.json()["detail"]


def test_chat_returns_text_and_maps_errors(client: TestClient, monkeypatch):
    response = client.post(
        "/api/chat",
        json={"message": "What next?", "context": {"originalIdea": "Dog walking app", "report": {}}},
    )
    assert response.status_code == 200
    assert response.json() == {"text": "Sorry, I am offline and cannot chat right now."}

    monkeypatch.setattr(main, "analysis_service", _TimingOutService())
    assert client.post("/api/chat", json={"message": "What next?"}).status_code == 504


def test_profile_update_and_delete(client: TestClient):
    created = client.post("/api/users/login", json={"email": "ada@example.com", "name": "Ada"}).json()
    assert created["credits"] == STARTING_CREDITS

    updated = client.put("/api/users/ada@example.com", json={"name": "Grace", "preferences": {"theme": "dark"}})
    assert updated.json()["name"] == "Grace"
    assert updated.json()["preferences"]["theme"] == "dark"

    assert client.put("/api/users/ada@example.com", json={}).status_code == 400
    assert client.delete("/api/users/ada@example.com").json() == {"success": True}
    assert client.delete("/api/users/ada@example.com").status_code == 404


def test_saved_report_endpoint_is_append_only(client: TestClient):
    client.post("/api/users/login", json={"email": "ada@example.com"})
    body = {"email": "ada@example.com", "report": {"id": "rpt-1", "oneLineTakeaway": "first"}}

    first = client.post("/api/reports", json=body).json()
    body["report"]["oneLineTakeaway"] = "second"
    second = client.post("/api/reports", json=body).json()

    assert first == second
    assert len(client.get("/api/reports/ada@example.com").json()) == 1


def test_waitlist_sends_confirmation_in_background(client: TestClient):
    response = client.post("/api/waitlist", json={"email": "Lead@Example.com"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert main.mailer.sent == ["lead@example.com"]
    assert client.post("/api/waitlist", json={"email": "nope"}).status_code == 400


def test_billing_events_require_secret_and_grant_entitlements(client: TestClient):
    client.post("/api/users/login", json={"email": "ada@example.com"})
    event = {"customerEmail": "ada@example.com", "planType": "lifetime", "paymentStatus": "paid"}

    assert client.post("/api/billing/events", json=event).status_code == 401
    wrong = client.post("/api/billing/events", json=event, headers={"X-Billing-Secret": "billing-secreT"})
    assert wrong.status_code == 401
    assert main.user_store.get("ada@example.com").is_pro is False
    response = client.post("/api/billing/events", json=event, headers={"X-Billing-Secret": "billing-secret"})

    assert response.status_code == 200
    assert response.json()["isPro"] is True
    assert main.user_store.get("ada@example.com").is_pro is True


def test_idea_validator_endpoints_are_wired_in_main():
    source = (REPO_ROOT / "idea_validator" / "main.py").read_text(encoding="utf-8")

    assert '@app.post("/api/analyze")' in source
    assert '@app.post("/api/chat")' in source
    assert '@app.get("/api/providers")' in source
    assert '@app.post("/api/users/{email}/deduct-credit")' in source
    assert '@app.get("/api/reports/{email}")' in source
    assert '@app.post("/api/waitlist")' in source
    assert '@app.post("/api/billing/events")' in source
