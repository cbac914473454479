import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import requests

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as helpdesk_app  # noqa: E402
import gemini  # noqa: E402
from gemini import GeminiServiceError  # noqa: E402

ADMIN = {
    "id": "admin-1",
    "name": "Ana Admin",
    "email": "ana@capitalinteligente.cl",
    "role": "Administrador",
    "area": None,
    "avatar": "",
}
EXECUTIVE = {
    "id": "exec-1",
    "name": "Elena Ejecutiva",
    "email": "elena@capitalinteligente.cl",
    "role": "Ejecutivo",
    "area": "Comercial",
    "avatar": "",
}


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self._payload


def candidate(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


@pytest.fixture
def gemini_post(monkeypatch):
    monkeypatch.setattr(gemini, "GEMINI_API_KEY", "test-key")
    calls = []

    def install(response):
        def fake_post(url, params=None, headers=None, json=None, timeout=None):
            calls.append({"url": url, "params": params, "json": json, "timeout": timeout})
            return response

        monkeypatch.setattr(gemini.requests, "post", fake_post)
        return calls

    return install


def test_analysis_adds_priority_value(gemini_post):
    calls = gemini_post(
        FakeResponse(candidate(json.dumps({"summary": "Falla al cotizar", "suggestedCategory": "Error", "priority": "Alta"})))
    )

    analysis = gemini.analyze_ticket_description("El cotizador no responde")

    assert analysis["suggestedCategory"] == "Error"
    assert analysis["suggestedPriorityValue"] == 75
    assert calls[0]["url"].endswith(f"/models/{gemini.GEMINI_MODEL}:generateContent")
    assert calls[0]["params"] == {"key": "test-key"}
    assert calls[0]["json"]["generationConfig"]["responseMimeType"] == "application/json"


def test_unknown_priority_label_has_no_value(gemini_post):
    gemini_post(FakeResponse(candidate(json.dumps({"summary": "s", "suggestedCategory": "Ayuda", "priority": "Urgente"}))))

    assert gemini.analyze_ticket_description("x")["suggestedPriorityValue"] is None


def test_non_json_analysis_is_an_error(gemini_post):
    gemini_post(FakeResponse(candidate("no es json")))

    with pytest.raises(GeminiServiceError):
        gemini.analyze_ticket_description("x")


def test_http_failure_is_an_error(gemini_post):
    gemini_post(FakeResponse({}, status_code=500))

    with pytest.raises(GeminiServiceError, match="Gemini request failed"):
        gemini.generate_smart_response("desc", "pregunta")


def test_missing_key_is_an_error(monkeypatch):
    monkeypatch.setattr(gemini, "GEMINI_API_KEY", None)

    with pytest.raises(GeminiServiceError):
        gemini.generate_smart_response("desc", "pregunta")


def test_smart_response_uses_system_instruction(gemini_post):
    calls = gemini_post(FakeResponse(candidate("  Hola, ya revisamos el caso.  ")))

    reply = gemini.generate_smart_response("El portal no carga", "¿Cuándo estará listo?")

    assert reply == "Hola, ya revisamos el caso."
    assert "systemInstruction" in calls[0]["json"]
    assert "El portal no carga" in calls[0]["json"]["contents"][0]["parts"][0]["text"]


def seed_ticket(tmp_path):
    helpdesk_app.configure_database(f"sqlite:///{tmp_path / 'tickets.db'}")
    helpdesk_app.init_db()
    now = datetime.now(timezone.utc)
    db = helpdesk_app.get_session()
    db.add(
        helpdesk_app.Ticket(
            id="T-4000",
            user_id=EXECUTIVE["id"],
            user_name=EXECUTIVE["name"],
            title="Portal caído",
            type="Error",
            area="Comercial",
            status="Enviado",
            description="El portal no carga",
            priority=70,
            created_at=now,
            updated_at=now,
        )
    )
    db.commit()
    helpdesk_app.SessionLocal.remove()


def client_for(user):
    client = helpdesk_app.app.test_client()
    with client.session_transaction() as session:
        session["user"] = dict(user)
    return client


def test_analyze_route_returns_analysis(tmp_path, monkeypatch):
    seed_ticket(tmp_path)
    monkeypatch.setattr(
        helpdesk_app,
        "analyze_ticket_description",
        lambda description: {"summary": description, "suggestedCategory": "Error", "priority": "Media", "suggestedPriorityValue": 50},
    )

    response = client_for(EXECUTIVE).post("/ai/analyze", json={"description": "falla"})

    assert response.status_code == 200
    assert response.get_json()["analysis"]["summary"] == "falla"


def test_analyze_route_maps_failures_to_502(tmp_path, monkeypatch):
    seed_ticket(tmp_path)

    def failing(description):
        raise GeminiServiceError("quota exceeded")

    monkeypatch.setattr(helpdesk_app, "analyze_ticket_description", failing)
    client = client_for(EXECUTIVE)

    assert client.post("/ai/analyze", json={"description": "falla"}).status_code == 502
    assert client.post("/ai/analyze", json={"description": "  "}).status_code == 400


def test_smart_reply_is_admin_only(tmp_path, monkeypatch):
    seed_ticket(tmp_path)
    seen = {}

    def fake_reply(description, query):
        seen["args"] = (description, query)
        return "Respuesta sugerida"

    monkeypatch.setattr(helpdesk_app, "generate_smart_response", fake_reply)

    denied = client_for(EXECUTIVE).post("/tickets/T-4000/smart-reply", json={"query": "?"})
    allowed = client_for(ADMIN).post("/tickets/T-4000/smart-reply", json={})

    assert denied.status_code == 403
    assert allowed.get_json() == {"reply": "Respuesta sugerida"}
    assert seen["args"] == ("El portal no carga", "Portal caído")
