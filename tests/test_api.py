"""
Testes da API HTTP (stores em memoria e SEFAZ falsa)
"""
import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import CNPJ
from nfe_server.api.nfe import get_services
from nfe_server.core.exceptions import TransportError
from nfe_server.main import app
from nfe_server.repositories import MemoryStores
from nfe_server.services.factory import NFeServices
from nfe_server.utils.access_key import generate_access_key

ORDER = {
    "order_id": "PED-1",
    "series": 1,
    "number": 1,
    "recipient": {"cpf": "12345678909", "name": "CLIENTE TESTE"},
    "items": [
        {"code": "P1", "description": "PRODUTO TESTE", "quantity": "2", "unit_price": "10.50"},
    ],
}


@pytest.fixture
def api_services(company, script, bundle, config, sleeper, notifier):
    stores = MemoryStores()
    asyncio.run(stores.companies.add(company))
    return NFeServices(
        stores,
        transport_factory=script.factory,
        credentials_loader=lambda company: bundle,
        config=config,
        sleep=sleeper,
        notifier=notifier,
    )


@pytest.fixture
def client(api_services):
    # Sem context manager: o lifespan (init_db) nao roda
    app.dependency_overrides[get_services] = lambda: api_services
    yield TestClient(app)
    app.dependency_overrides.clear()


def _emit(client, company_id="empresa-1"):
    return client.post("/api/nfe/emissions", json={"company_id": company_id, "order": ORDER})


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["status"] == "running"


def test_emission_authorized(client):
    response = _emit(client)

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "AUTHORIZED"
    assert data["status"] == "AUTHORIZED"
    assert data["protocol_number"] == "142240000000001"
    assert response.headers["Cache-Control"] == "no-store"

    document = client.get(f"/api/nfe/documents/{data['document_id']}").json()
    assert document["access_key"] == data["access_key"]
    assert document["status"] == "AUTHORIZED"

    xml = client.get(f"/api/nfe/documents/{data['document_id']}/xml")
    assert xml.headers["content-type"].startswith("application/xml")
    assert xml.text.startswith("<nfeProc")

    audit = client.get(f"/api/nfe/audit/{data['document_id']}").json()
    assert len(audit["events"]) == 5
    assert audit["verification"]["valid"] is True


def test_emission_rejected(client, script):
    script.set_authorize("NORMAL", "rejected")

    response = _emit(client)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "AuthorityRejection"
    assert body["status_code"] == 539


def test_unknown_company(client):
    response = _emit(client, "nao-existe")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_invalid_payload(client):
    response = client.post("/api/nfe/emissions", json={"company_id": "empresa-1", "order": {"number": 1}})
    assert response.status_code == 422


def test_receipt_pending_is_accepted(client, script):
    script.set_authorize("NORMAL", "received")
    script.poll = ["processing"]

    response = _emit(client)

    assert response.status_code == 202
    assert response.json()["details"]["receipt_number"] == "421000000000001"


def test_tls_failure_is_unavailable(client, script):
    script.set_authorize("NORMAL", TransportError("Falha na negociacao TLS", retryable=False))

    response = _emit(client)

    assert response.status_code == 503
    assert response.json()["retryable"] is False


def test_contingency_queue_flow(client, script):
    script.set_authorize("NORMAL", TransportError("Timeout", retryable=True))
    script.set_authorize("SVC-AN", TransportError("Timeout", retryable=True))

    response = _emit(client)

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "CONTINGENCY_QUEUED"
    queue = client.get("/api/nfe/queue", params={"status": "PENDING"}).json()
    assert [entry["id"] for entry in queue] == [data["queue_entry_id"]]

    script.set_authorize("NORMAL", "authorized")
    report = client.post("/api/nfe/queue/process").json()

    assert report["sent"] == 1
    document = client.get(f"/api/nfe/documents/{data['document_id']}").json()
    assert document["status"] == "AUTHORIZED"


def test_cancel(client):
    document_id = _emit(client).json()["document_id"]

    response = client.post(
        f"/api/nfe/documents/{document_id}/cancel",
        json={"justification": "Pedido cancelado pelo cliente"},
    )

    assert response.status_code == 200
    assert response.json()["protocol_number"] == "142240000000099"
    assert client.get(f"/api/nfe/documents/{document_id}").json()["status"] == "CANCELLED"


def test_cancel_rejected_document(client, script):
    script.set_authorize("NORMAL", "rejected")
    document_id = _emit(client).json()["details"]["document_id"]

    response = client.post(
        f"/api/nfe/documents/{document_id}/cancel",
        json={"justification": "Pedido cancelado pelo cliente"},
    )

    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


def test_invalidation(client):
    response = client.post("/api/nfe/invalidations", json={
        "company_id": "empresa-1",
        "series": 1,
        "number_from": 10,
        "number_to": 20,
        "justification": "Falha na sequencia de numeracao",
    })

    assert response.status_code == 200
    assert response.json()["protocol_number"] == "142240000000777"
    assert client.get(f"/api/nfe/audit/INUT-{CNPJ}-1-10-20").status_code == 200


def test_service_status(client):
    response = client.get("/api/nfe/service-status", params={"company_id": "empresa-1"})

    assert response.status_code == 200
    assert response.json()["online"] is True


def test_access_key_check(client):
    key = generate_access_key("SC", CNPJ, "55", 1, 1, "1", "12345678")

    valid = client.get(f"/api/nfe/access-keys/{key}").json()
    wrong_digit = "0" if key[-1] != "0" else "1"
    invalid = client.get(f"/api/nfe/access-keys/{key[:-1]}{wrong_digit}").json()

    assert valid["valid"] is True
    assert valid["parts"]["issuer_tax_id"] == CNPJ
    assert invalid["valid"] is False


def test_unknown_audit_chain(client):
    assert client.get("/api/nfe/audit/nao-existe").status_code == 404
