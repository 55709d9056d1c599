"""HTTP and WebSocket tests against the assembled app with fake backends."""

import pytest
from fastapi.testclient import TestClient

from core.config import Settings
from db.database import Database
from fakes import FakeEmbedder, FakeLLM, FakeRedis, seed_profiles
from main import create_app
from services.container import ServiceContainer


@pytest.fixture
def llm():
    return FakeLLM(filter_content='{"risk": "high"}', summary="Alice and Carol need attention.")


@pytest.fixture
def client(tmp_path, llm):
    settings = Settings(
        database_url="sqlite://",
        vector_store_dir=str(tmp_path / "vectors"),
        log_level="WARNING",
    )

    def factory(settings, events):
        container = ServiceContainer.build(
            settings,
            database=Database("sqlite://"),
            redis_client=FakeRedis(),
            embedder=FakeEmbedder(),
            llm=llm,
            events=events,
        )
        seed_profiles(container.database)
        return container

    with TestClient(create_app(settings, container_factory=factory)) as test_client:
        yield test_client


def _login(client, email="ciso@example.com", password="s3cret-pass"):
    assert client.post("/auth/signup", json={"email": email, "password": password}).status_code == 200
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    token = response.json()["token"]
    # tests authenticate explicitly with the bearer header
    client.cookies.clear()
    return token


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_health_and_root(client):
    assert client.get("/").json() == {"message": "Backend is running"}
    body = client.get("/health").json()
    assert body["status"] == "healthy"


def test_metrics_endpoint(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text


def test_signup_login_me_logout(client):
    token = _login(client, email="  CISO@Example.com ")

    me = client.get("/auth/me", headers=_auth(token))
    assert me.status_code == 200
    assert me.json()["email"] == "ciso@example.com"

    assert client.post("/auth/logout", headers=_auth(token)).status_code == 200
    assert client.get("/auth/me", headers=_auth(token)).status_code == 401


def test_duplicate_signup_and_bad_password(client):
    _login(client)
    again = client.post("/auth/signup", json={"email": "ciso@example.com", "password": "other"})
    assert again.status_code == 400
    wrong = client.post("/auth/login", json={"email": "ciso@example.com", "password": "wrong"})
    assert wrong.status_code == 401


def test_login_sets_session_cookie(client):
    client.post("/auth/signup", json={"email": "cookie@example.com", "password": "pw"})
    client.post("/auth/login", json={"email": "cookie@example.com", "password": "pw"})
    assert client.get("/auth/me").status_code == 200


def test_ask_requires_authentication(client):
    assert client.post("/ask", json={"question": "Who is high risk?"}).status_code == 401
    assert client.post("/ask", json={"question": "hi"}, headers=_auth("forged")).status_code == 401


def test_ask_returns_summary_filter_and_employees(client, llm):
    token = _login(client)

    response = client.post("/ask", json={"question": "Which employees have high risk?"}, headers=_auth(token))

    assert response.status_code == 200
    body = response.json()
    assert body["question"] == "Which employees have high risk?"
    assert body["summary"] == "Alice and Carol need attention."
    assert body["filter"] == {"risk": "high"}
    assert [e["name"] for e in body["employees"]] == ["Alice Johnson", "Carol White"]


def test_ask_rejects_blank_question(client):
    token = _login(client)
    assert client.post("/ask", json={"question": "   "}, headers=_auth(token)).status_code == 400
    assert client.post("/ask", json={"question": ""}, headers=_auth(token)).status_code == 422


def test_upload_extracts_text_without_storing(client):
    token = _login(client)

    response = client.post(
        "/upload",
        files={"file": ("findings.txt", b"Shared admin accounts found in payroll.", "text/plain")},
        headers=_auth(token),
    )
    assert response.status_code == 200
    assert response.json()["extractedText"] == "Shared admin accounts found in payroll."

    image = client.post(
        "/upload",
        files={"file": ("scan.png", b"\x89PNG\r\n", "image/png")},
        headers=_auth(token),
    )
    assert image.status_code == 422


def test_websocket_stream(client):
    token = _login(client)

    with client.websocket_connect("/ws") as ws:
        ws.send_json({"question": "Which employees have high risk?", "token": token})
        frames = [ws.receive_json()]
        while frames[-1]["type"] not in ("end", "error"):
            frames.append(ws.receive_json())

    assert [f["type"] for f in frames] == ["start", "chunk", "chunk", "end"]
    assert frames[0]["mode"] == "summary"
    assert "".join(f["data"] for f in frames[1:-1]) == "Hello there"

    conversation_id = frames[0]["conversationId"]
    stored = client.get(f"/conversations/{conversation_id}", headers=_auth(token)).json()
    assert [(m["role"], m["content"]) for m in stored["messages"]] == [
        ("user", "Which employees have high risk?"),
        ("assistant", "Hello there"),
    ]


def test_websocket_rejects_bad_token_and_malformed_requests(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "message": "Malformed request"}

        ws.send_json({"question": "hi", "token": "forged"})
        frame = ws.receive_json()
        assert frame["type"] == "error"


def test_conversation_crud_and_isolation(client):
    owner = _login(client)
    intruder = _login(client, email="intruder@example.com")

    created = client.post("/conversations", json={"firstMessage": "How exposed is finance?"}, headers=_auth(owner))
    assert created.status_code == 201
    conversation_id = created.json()["id"]
    assert created.json()["title"] == "How exposed is finance?"

    appended = client.post(
        f"/conversations/{conversation_id}",
        json={"role": "assistant", "content": "Two analysts are high risk."},
        headers=_auth(owner),
    )
    assert appended.status_code == 200
    assert appended.json()["message"]["role"] == "assistant"

    listed = client.get("/conversations", headers=_auth(owner)).json()
    assert [c["id"] for c in listed] == [conversation_id]
    assert len(listed[0]["messages"]) == 2

    assert client.get(f"/conversations/{conversation_id}", headers=_auth(intruder)).status_code == 404
    assert client.get("/conversations", headers=_auth(intruder)).json() == []
    blocked = client.post(
        f"/conversations/{conversation_id}",
        json={"role": "user", "content": "let me in"},
        headers=_auth(intruder),
    )
    assert blocked.status_code == 404
    assert blocked.json() == {"error": "Conversation not found!"}


def test_append_rejects_unknown_role(client):
    token = _login(client)
    conversation_id = client.post("/conversations", json={}, headers=_auth(token)).json()["id"]
    response = client.post(
        f"/conversations/{conversation_id}", json={"role": "system", "content": "x"}, headers=_auth(token)
    )
    assert response.status_code == 422


def test_profiles_list_filter_and_get(client):
    token = _login(client)

    everyone = client.get("/profiles", headers=_auth(token)).json()
    assert len(everyone) == 4

    high_risk = client.get("/profiles", params={"risk": "high"}, headers=_auth(token)).json()
    assert [p["employeeId"] for p in high_risk] == ["E001", "E003"]

    assert client.get("/profiles/E002", headers=_auth(token)).json()["name"] == "Bob Smith"
    assert client.get("/profiles/E999", headers=_auth(token)).status_code == 404
    assert client.get("/profiles").status_code == 401


def test_ask_with_empty_uploaded_text_answers_normally(client):
    token = _login(client)
    response = client.post(
        "/ask",
        json={"question": "Which employees have high risk?", "uploadedText": ""},
        headers=_auth(token),
    )
    assert response.json()["summary"] == "Alice and Carol need attention."
