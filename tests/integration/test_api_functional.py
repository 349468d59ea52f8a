from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedCompletion
from knowledge_search.errors import SynthesisUnavailable
from knowledge_search.service import KnowledgeSearchService
from knowledge_search.sources.store import InMemoryRecordStore

ALICE_HEADERS = {"X-User-Id": "alice", "X-Workspace-Ids": "ws-product"}
BOB_HEADERS = {"X-User-Id": "bob", "X-Workspace-Ids": "ws-sales"}


@pytest.fixture
def client(
    service: KnowledgeSearchService, record_store: InMemoryRecordStore
) -> Iterator[TestClient]:
    from knowledge_search.api.main import app, get_record_store, get_service

    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_record_store] = lambda: record_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_api_search_ask_conversation_trace_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["completion_mode"] == "extractive"

    search_resp = client.get("/search", params={"q": "ai", "types": "note,workspace"}, headers=ALICE_HEADERS)
    assert search_resp.status_code == 200
    search_payload = search_resp.json()
    assert set(search_payload["groups"]) == {"note", "workspace"}
    assert search_payload["groups"]["note"][0]["id"] == "n-ai"
    assert search_payload["groups"]["note"][0]["matched_spans"]
    assert search_payload["partial"] is False

    ask_resp = client.post("/ask", json={"question": "what happened to revenue?"}, headers=ALICE_HEADERS)
    assert ask_resp.status_code == 200
    ask_payload = ask_resp.json()
    assert ask_payload["degraded"] is False
    assert ask_payload["citations"][0]["id"] == "n-revenue"

    conversation_id = ask_payload["conversation_id"]
    listed = client.get("/conversations", headers=ALICE_HEADERS).json()["items"]
    assert [item["id"] for item in listed] == [conversation_id]

    turns_resp = client.get(f"/conversations/{conversation_id}/turns", headers=ALICE_HEADERS)
    assert turns_resp.status_code == 200
    turns = turns_resp.json()["items"]
    assert [turn["role"] for turn in turns] == ["user", "assistant"]
    assert turns[1]["cited_sources"][0]["entity_type"] == "note"

    trace_resp = client.get(f"/traces/{ask_payload['trace_id']}", headers=ALICE_HEADERS)
    assert trace_resp.status_code == 200
    assert trace_resp.json()["citations"] == ["[note:n-revenue]"]

    metrics_resp = client.get("/metrics", headers=ALICE_HEADERS)
    assert metrics_resp.status_code == 200
    assert metrics_resp.json()["total_requests"] == 1


def test_api_empty_search_is_not_an_error(client: TestClient) -> None:
    resp = client.get("/search", params={"q": ""}, headers=ALICE_HEADERS)

    assert resp.status_code == 200
    assert all(hits == [] for hits in resp.json()["groups"].values())


def test_api_error_mapping(client: TestClient) -> None:
    missing_identity = client.get("/search", params={"q": "ai"})
    assert missing_identity.status_code == 401
    assert missing_identity.json()["error"] == "unauthorized"

    bad_type = client.get("/search", params={"q": "ai", "types": "spreadsheet"}, headers=ALICE_HEADERS)
    assert bad_type.status_code == 400
    assert bad_type.json()["error"] == "invalid_entity_type"

    blank = client.post("/ask", json={"question": "  <> "}, headers=ALICE_HEADERS)
    assert blank.status_code == 400
    assert blank.json()["error"] == "empty_query"

    unknown = client.get("/conversations/nope/turns", headers=ALICE_HEADERS)
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "conversation_not_found"

    assert client.get("/traces/unknown", headers=ALICE_HEADERS).status_code == 404
    assert client.get("/metrics").status_code == 401


def test_api_synthesis_outage_is_retryable(client: TestClient, service: KnowledgeSearchService) -> None:
    failing = ScriptedCompletion(SynthesisUnavailable("model down"))
    service.completion = failing
    service.synthesizer.completion = failing

    resp = client.post("/ask", json={"question": "what happened to revenue?"}, headers=ALICE_HEADERS)

    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "1"
    assert resp.json()["detail"] == {"retryable": True}
    assert client.get("/conversations", headers=ALICE_HEADERS).json()["items"] == []


def test_api_traces_and_metrics_are_per_owner(client: TestClient) -> None:
    ask_payload = client.post(
        "/ask", json={"question": "what happened to revenue?"}, headers=ALICE_HEADERS
    ).json()
    trace_id = ask_payload["trace_id"]

    assert client.get("/traces", headers=BOB_HEADERS).json()["items"] == []
    assert client.get(f"/traces/{trace_id}", headers=BOB_HEADERS).status_code == 404
    assert client.get("/metrics", headers=BOB_HEADERS).json()["total_requests"] == 0

    own = client.get("/traces", headers=ALICE_HEADERS).json()["items"]
    assert [item["trace_id"] for item in own] == [trace_id]
    assert own[0]["owner_user_id"] == "alice"


def test_api_added_records_become_searchable(client: TestClient) -> None:
    added = client.post(
        "/records/notes",
        json={"records": [{"id": "n-launch", "title": "Kestrel launch checklist"}]},
        headers=ALICE_HEADERS,
    )
    assert added.status_code == 200
    assert added.json() == {"collection": "notes", "records_added": 1}

    found = client.get("/search", params={"q": "kestrel", "types": "note"}, headers=ALICE_HEADERS)
    assert [hit["id"] for hit in found.json()["groups"]["note"]] == ["n-launch"]
    hidden = client.get("/search", params={"q": "kestrel", "types": "note"}, headers=BOB_HEADERS)
    assert hidden.json()["groups"]["note"] == []


def test_api_records_outside_scope_are_rejected(client: TestClient) -> None:
    foreign = client.post(
        "/records/notes",
        json={"records": [{"id": "n-x", "owner_id": "bob", "title": "Not mine"}]},
        headers=ALICE_HEADERS,
    )
    assert foreign.status_code == 403
    assert foreign.json()["error"] == "forbidden"

    other_workspace = client.post(
        "/records/documents",
        json={"records": [{"id": "d-x", "workspace_id": "ws-sales", "title": "Pipeline"}]},
        headers=ALICE_HEADERS,
    )
    assert other_workspace.status_code == 403

    unknown = client.post(
        "/records/spreadsheets", json={"records": [{"id": "s-1"}]}, headers=ALICE_HEADERS
    )
    assert unknown.status_code == 400
    assert unknown.json()["error"] == "invalid_collection"
