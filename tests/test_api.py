import json
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from conftest import load_fixture_text


@pytest.fixture
def app():
    """
    Import the FastAPI app.

    The service is expected to expose `app` at `agentfile.main`.
    """
    from agentfile.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    return TestClient(app)


def _assert_error_envelope(resp_json: Dict[str, Any], expected_code: str):
    assert "error" in resp_json, "Error responses must include 'error' envelope"
    assert "meta" in resp_json, "Error responses must include 'meta' envelope"
    assert resp_json["error"].get("code") == expected_code
    assert isinstance(resp_json["error"].get("message"), str)
    assert isinstance(resp_json["meta"].get("request_id"), str)


def _post(client, path: str, content, **params):
    if not isinstance(content, (str, bytes)):
        content = json.dumps(content)
    return client.post(path, content=content, params=params, headers={"Content-Type": "application/json"})


def test_health_endpoint_ok(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["service"] == "agentfile-toolbox"


def test_health_reports_config_error(client, monkeypatch):
    monkeypatch.setenv("AF_STRICT", "sometimes")
    resp = client.get("/health")
    assert resp.status_code == 500
    _assert_error_envelope(resp.json(), "INTERNAL_ERROR")


def test_root_lists_endpoints(client):
    body = client.get("/").json()
    assert "/agentfiles/parse" in body["endpoints"]


### validate ###################################################################


def test_validate_valid_document(client):
    resp = _post(client, "/agentfiles/validate", load_fixture_text("minimal.af"))
    assert resp.status_code == 200
    assert resp.json()["output"] == {"valid": True, "errors": None}
    assert isinstance(resp.json()["meta"]["request_id"], str)


def test_validate_reports_issues_with_200(client, minimal_doc):
    minimal_doc["in_context_message_indices"] = [3]
    resp = _post(client, "/agentfiles/validate", minimal_doc)
    assert resp.status_code == 200
    output = resp.json()["output"]
    assert output["valid"] is False
    assert output["errors"][0]["code"] == "message_index_out_of_range"


def test_validate_honours_strict_query_param(client):
    resp = _post(client, "/agentfiles/validate", load_fixture_text("minimal.af"), strict="true")
    assert resp.json()["output"]["valid"] is False

    resp = _post(client, "/agentfiles/validate", load_fixture_text("minimal.af"), strict="perhaps")
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


### parse ######################################################################


def test_parse_returns_normalized_document(client):
    resp = _post(client, "/agentfiles/parse", load_fixture_text("minimal.af"))
    assert resp.status_code == 200
    document = resp.json()["output"]["document"]
    assert document["name"] == "Minimal Agent"
    assert document["llm_config"]["provider"] == "openai"
    assert document["core_memory"]["persona"]["character_limit"] == 100


def test_parse_malformed_json_returns_400(client):
    resp = _post(client, "/agentfiles/parse", "{not json")
    assert resp.status_code == 400
    body = resp.json()
    _assert_error_envelope(body, "MALFORMED_REQUEST")
    assert body["error"]["details"][0]["code"] == "invalid_json"


def test_parse_invalid_document_returns_422_with_details(client, minimal_doc):
    minimal_doc["updated_at"] = "not-a-timestamp"
    resp = _post(client, "/agentfiles/parse", minimal_doc)
    assert resp.status_code == 422
    body = resp.json()
    _assert_error_envelope(body, "DOCUMENT_INVALID")
    assert body["error"]["details"][0]["path"] == "updated_at"


def test_parse_oversized_body_returns_413(client, monkeypatch):
    monkeypatch.setenv("AF_MAX_SIZE_BYTES", "64")
    resp = _post(client, "/agentfiles/parse", load_fixture_text("minimal.af"))
    assert resp.status_code == 413
    _assert_error_envelope(resp.json(), "PAYLOAD_TOO_LARGE")


### metadata ###################################################################


def test_metadata_endpoint(client):
    resp = _post(client, "/agentfiles/metadata", load_fixture_text("research_agent.af"))
    assert resp.status_code == 200
    assert resp.json()["output"]["metadata"]["tool_count"] == 4


def test_metadata_on_garbage_is_null(client):
    resp = _post(client, "/agentfiles/metadata", "garbage")
    assert resp.status_code == 200
    assert resp.json()["output"]["metadata"] is None


def test_deeply_nested_body_is_rejected_not_crashed(client):
    deep = "[" * 200000 + "]" * 200000
    resp = _post(client, "/agentfiles/metadata", deep)
    assert resp.status_code == 200
    assert resp.json()["output"]["metadata"] is None

    resp = _post(client, "/agentfiles/parse", deep)
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


### import / export ############################################################


def test_import_returns_agent_memory_and_warnings(client):
    resp = _post(client, "/agentfiles/import", load_fixture_text("research_agent.af"), tool_code_strategy="skip")
    assert resp.status_code == 200
    output = resp.json()["output"]
    assert set(output["agent"]["tools"]) == {"web_search", "fetch_page", "save_note"}
    assert output["metadata"]["lossy_conversions"][0] == "tool_rules"
    assert output["memory"]["working_memory"]["persona"]["value"] == "I am a research assistant."
    assert any(w["field"] == "tools.summarize" for w in output["warnings"])


def test_import_rejects_unknown_strategy(client):
    resp = _post(client, "/agentfiles/import", load_fixture_text("minimal.af"), tool_code_strategy="compile")
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


def test_import_then_export_over_http(client):
    imported = _post(client, "/agentfiles/import", load_fixture_text("research_agent.af")).json()["output"]
    resp = _post(
        client,
        "/agentfiles/export",
        {"agent": imported["agent"], "memory": imported["memory"], "options": {"pretty": False}},
    )
    assert resp.status_code == 200
    output = resp.json()["output"]
    assert "\n" not in output["content"]
    assert output["metadata"]["tool_count"] == 4
    assert output["metadata"]["message_count"] == 4
    web_search = next(t for t in output["document"]["tools"] if t["name"] == "web_search")
    assert web_search["metadata"]["_mastra_tool"]["server"] == "https://mcp.example.com"


def test_export_requires_agent(client):
    resp = _post(client, "/agentfiles/export", {"memory": {}})
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


def test_export_rejects_bad_options(client):
    agent = {"name": "a", "instructions": "x", "model": {"provider": "openai", "name": "gpt-4"}}
    resp = _post(client, "/agentfiles/export", {"agent": agent, "options": {"max_messages": "many"}})
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


def test_export_falls_back_on_invalid_version(client):
    agent = {"name": "a", "instructions": "x", "model": {"provider": "openai", "name": "gpt-4"}}
    resp = _post(client, "/agentfiles/export", {"agent": agent, "options": {"version": "one"}})
    assert resp.status_code == 200
    output = resp.json()["output"]
    assert output["document"]["version"] == "0.1.0"
    assert output["metadata"]["omitted_features"] == ["version"]


def test_export_dynamic_tool_set(client):
    agent = {
        "name": "a",
        "instructions": "x",
        "model": {"provider": "openai", "name": "gpt-4"},
        "tools": {"dynamic": True},
    }
    output = _post(client, "/agentfiles/export", {"agent": agent}).json()["output"]
    assert output["document"]["tools"] == []
    assert output["metadata"]["omitted_features"] == ["dynamic_tools"]


def test_export_dynamic_instructions(client):
    agent = {"name": "a", "instructions": {"dynamic": True}, "model": {"dynamic": True}}
    output = _post(client, "/agentfiles/export", {"agent": agent}).json()["output"]
    assert output["metadata"]["omitted_features"] == ["dynamic_instructions", "dynamic_model"]
    assert output["document"]["metadata_"]["host_dynamic_instructions"] is True
