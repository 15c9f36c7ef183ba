# tests/test_bridge_server.py

import pytest
from fastapi.testclient import TestClient

from bridge.bridge_server import create_app
from common.encryption import decrypt_at_worker, encrypt_for_worker, public_key_hex
from fakes import NODE


@pytest.fixture
def client(store, worker_key):
    app = create_app(store, node_address=NODE, public_key=public_key_hex(worker_key))
    return TestClient(app)


def test_register_plaintext_prompt(client, store):
    resp = client.post("/register-prompt", json={"requestId": 3, "prompt": "What is the answer?"})

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    entry = store.get_prompt(3)
    assert entry.prompt == "What is the answer?"
    assert entry.encrypted is False


def test_register_request_id_zero(client, store):
    resp = client.post("/register-prompt", json={"requestId": 0, "prompt": "first ever", "promptHash": "0xab"})
    assert resp.status_code == 200
    assert store.get_prompt(0).prompt_hash == "0xab"


def test_register_encrypted_prompt(client, store, worker_key):
    envelope = encrypt_for_worker(b"private question", public_key_hex(worker_key))

    resp = client.post("/register-prompt", json={"requestId": 4, "prompt": envelope.to_dict()})

    assert resp.status_code == 200
    entry = store.get_prompt(4)
    assert entry.encrypted is True
    assert decrypt_at_worker(entry.prompt, worker_key) == "private question"


@pytest.mark.parametrize(
    "body",
    [
        {"prompt": "no id"},
        {"requestId": 1},
        {"requestId": 1, "prompt": ""},
        {"requestId": -1, "prompt": "negative"},
        {"requestId": 1, "prompt": {"iv": "00"}},
        {"requestId": 1, "prompt": 42},
    ],
)
def test_register_rejects_bad_input(client, store, body):
    resp = client.post("/register-prompt", json=body)

    assert resp.status_code == 400
    assert "error" in resp.json()
    assert store.get_prompt(1) is None


def test_register_rejects_invalid_json(client):
    resp = client.post(
        "/register-prompt",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing requestId or prompt"}


def test_health_reports_node_and_key(client, worker_key):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "node": NODE, "publicKey": public_key_hex(worker_key)}


def test_health_without_encryption(store):
    client = TestClient(create_app(store, node_address=NODE, public_key=None))
    assert client.get("/health").json()["publicKey"] is None


def test_cors_preflight(client):
    resp = client.options(
        "/register-prompt",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
