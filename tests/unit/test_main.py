"""Tests for the Quart JSON API."""
import pytest

from tests.conftest import FakeEmbeddingClient, FakeGenerationClient
from wali.app_state import AppState
from wali.errors import ApiError
from wali.main import create_app
from wali.services import ServiceRegistry

DOCUMENT = "Paris is the capital of France.\n\nBerlin is the capital of Germany."


@pytest.fixture()
def client(state):
    return create_app(state).test_client()


@pytest.fixture()
def unconfigured_client(db, tmp_path):
    state = AppState(db, registry=ServiceRegistry(), snapshot_path=tmp_path / "vectors.json")
    return create_app(state).test_client()


@pytest.mark.asyncio
async def test_health(client, unconfigured_client):
    response = await client.get("/health/live")
    assert response.status_code == 200
    assert (await response.get_json())["status"] == "alive"

    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert (await response.get_json())["configured"] is True

    response = await unconfigured_client.get("/health/ready")
    assert response.status_code == 503
    assert (await response.get_json())["status"] == "unconfigured"


@pytest.mark.asyncio
async def test_api_key_endpoints(unconfigured_client):
    response = await unconfigured_client.get("/api/config/api-key")
    assert (await response.get_json())["configured"] is False

    response = await unconfigured_client.post("/api/config/api-key", json={"api_key": ""})
    assert response.status_code == 400
    assert (await response.get_json())["success"] is False

    response = await unconfigured_client.post("/api/config/api-key", json={"api_key": "   "})
    assert response.status_code == 400

    response = await unconfigured_client.post("/api/config/api-key", json={"api_key": "sk-new"})
    assert response.status_code == 200
    assert (await response.get_json())["success"] is True

    response = await unconfigured_client.get("/api/config/api-key")
    assert (await response.get_json())["configured"] is True


@pytest.mark.asyncio
async def test_document_lifecycle(client):
    response = await client.post(
        "/api/documents", json={"name": "capitals.txt", "content": DOCUMENT, "file_type": "txt"}
    )
    assert response.status_code == 200
    body = await response.get_json()
    assert body["chunk_count"] == 2
    document_id = body["document_id"]

    response = await client.get("/api/documents")
    documents = (await response.get_json())["documents"]
    assert [(d["id"], d["name"], d["chunk_count"]) for d in documents] == [
        (document_id, "capitals.txt", 2)
    ]

    response = await client.delete(f"/api/documents/{document_id}")
    assert response.status_code == 200

    response = await client.delete(f"/api/documents/{document_id}")
    assert response.status_code == 404
    assert (await response.get_json())["success"] is False


@pytest.mark.asyncio
async def test_upload_from_path(client, tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text(DOCUMENT, encoding="utf-8")

    response = await client.post("/api/documents/from-path", json={"file_path": str(path)})
    assert response.status_code == 200
    assert (await response.get_json())["chunk_count"] == 2

    response = await client.post(
        "/api/documents/from-path", json={"file_path": str(tmp_path / "absent.txt")}
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_ask_and_conversations(client):
    await client.post("/api/documents", json={"name": "capitals.txt", "content": DOCUMENT})

    response = await client.post("/api/ask", json={"question": "  What is the capital of France?  "})
    assert response.status_code == 200
    body = await response.get_json()
    assert body["answer"] == "The answer is 42."
    assert body["sources"] == ["capitals.txt", "capitals.txt"]
    conversation_id = body["conversation_id"]

    response = await client.get("/api/conversations")
    conversations = (await response.get_json())["conversations"]
    assert [c["id"] for c in conversations] == [conversation_id]
    assert conversations[0]["title"] == "What is the capital ..."

    response = await client.get(f"/api/conversations/{conversation_id}/messages")
    messages = (await response.get_json())["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["content"] == "What is the capital of France?"

    response = await client.delete(f"/api/conversations/{conversation_id}")
    assert response.status_code == 200
    response = await client.delete(f"/api/conversations/{conversation_id}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_ask_validation(client):
    response = await client.post("/api/ask", json={"question": ""})
    assert response.status_code == 400

    response = await client.post("/api/ask", json={"question": "x" * 2001})
    assert response.status_code == 400

    response = await client.post("/api/ask", data="not json")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_ask_unconfigured(unconfigured_client):
    response = await unconfigured_client.post("/api/ask", json={"question": "Anything?"})

    assert response.status_code == 400
    assert await response.get_json() == {
        "success": False,
        "message": "Please configure an API key first",
    }


@pytest.mark.asyncio
async def test_backend_failure_maps_to_bad_gateway(state):
    state.registry.use(
        FakeEmbeddingClient(),
        FakeGenerationClient(error=ApiError(503, "overloaded")),
    )
    client = create_app(state).test_client()

    response = await client.post("/api/ask", json={"question": "Anything?"})

    assert response.status_code == 502
    message = (await response.get_json())["message"]
    assert message.startswith("[generation]")
    assert "503" in message


@pytest.mark.asyncio
async def test_file_endpoints(unconfigured_client, tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("第一段。\n\nSecond paragraph.", encoding="utf-8")

    response = await unconfigured_client.post("/api/files/read", json={"file_path": str(path)})
    assert response.status_code == 200
    assert (await response.get_json())["content"] == "第一段。\n\nSecond paragraph."

    response = await unconfigured_client.post("/api/files/info", json={"file_path": str(path)})
    assert await response.get_json() == {
        "success": True,
        "name": "notes.txt",
        "size": path.stat().st_size,
    }

    response = await unconfigured_client.post(
        "/api/files/info", json={"file_path": str(tmp_path / "absent.txt")}
    )
    assert response.status_code == 404

    blob = tmp_path / "blob.txt"
    blob.write_bytes(b"\xff\xfe\x80")
    response = await unconfigured_client.post("/api/files/read", json={"file_path": str(blob)})
    assert response.status_code == 400
