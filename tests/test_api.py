import pytest

from tests.conftest import chat_payload
from tests.fakes import FakeChatClient


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"ok": True}


@pytest.mark.asyncio
async def test_document_lifecycle(client):
    res = await client.post("/api/documents", json={"id": "doc-a", "title": "Notes", "userId": "u1"})
    assert res.status_code == 200
    created = res.json()
    assert created["id"] == "doc-a"
    assert created["user_id"] == "u1"
    assert created["context"] is None

    assert (await client.post("/api/documents", json={"id": "doc-a"})).status_code == 409
    assert (await client.get("/api/documents/doc-a")).json()["title"] == "Notes"
    assert (await client.get("/api/documents/missing")).status_code == 404

    generated = (await client.post("/api/documents", json={"title": "Untitled"})).json()
    assert generated["id"]


@pytest.mark.asyncio
async def test_document_context_endpoints(client):
    await client.post("/api/documents", json={"id": "doc-c"})
    res = await client.post("/api/documents/doc-c/context", json={"context": "A cookbook for students."})
    assert res.status_code == 200
    res = await client.get("/api/documents/doc-c/context")
    assert res.json() == {"documentId": "doc-c", "context": "A cookbook for students."}
    assert (await client.get("/api/documents/nope/context")).status_code == 404
    assert (await client.post("/api/documents/nope/context", json={"context": "x"})).status_code == 404


@pytest.mark.asyncio
async def test_user_upsert_and_usage(client):
    res = await client.post(
        "/api/users",
        json={"id": "sub-1", "subscriptionStatus": "active", "periodEnd": "2999-01-01T00:00:00Z"},
    )
    assert res.status_code == 200
    assert res.json()["subscription_status"] == "active"

    usage = (await client.get("/api/users/sub-1/usage")).json()
    assert usage == {"tier": "premium", "used": 0, "limit": 150, "remaining": 150, "resetsAt": None}

    await client.post("/api/users", json={"id": "sub-1", "subscriptionStatus": "canceled"})
    usage = (await client.get("/api/users/sub-1/usage")).json()
    assert usage["tier"] == "free"
    assert usage["limit"] == 10

    assert (await client.get("/api/users/ghost/usage")).status_code == 404
    assert (await client.post("/api/users", json={"id": "  "})).status_code == 400


@pytest.mark.asyncio
async def test_context_update_endpoint(serve):
    fake = FakeChatClient(context_reply="  A travel blog about Lisbon.  ")
    async with serve(fake_llm=fake) as client:
        await client.post("/api/documents", json={"id": "doc-ctx", "context": "A travel blog."})
        history = [{"role": "user", "content": "Add a Lisbon section"}, {"role": "model", "parts": "Done."}]

        res = await client.post("/api/context-update", json={"history": history, "documentId": "doc-ctx"})
        assert res.status_code == 200
        assert res.json() == {"contextUpdated": True, "contextChange": "A travel blog about Lisbon."}
        stored = (await client.get("/api/documents/doc-ctx/context")).json()["context"]
        assert stored == "A travel blog about Lisbon."

        res = await client.post("/api/context-update", json={"history": history, "documentId": "doc-ctx"})
        assert res.json() == {"contextUpdated": True, "contextChange": None}

    assert "A travel blog." in fake.context_calls[0]["prompt"]
    assert '"role": "assistant"' in fake.context_calls[0]["prompt"]


@pytest.mark.asyncio
async def test_context_update_errors(serve):
    fake = FakeChatClient(context_error=RuntimeError("backend down"))
    async with serve(fake_llm=fake) as client:
        await client.post("/api/documents", json={"id": "doc-ctx"})
        history = [{"role": "user", "content": "hi"}]

        assert (await client.post("/api/context-update", json={"documentId": "doc-ctx"})).status_code == 400
        assert (await client.post("/api/context-update", json={"history": history})).status_code == 400
        assert (await client.post("/api/context-update", json={"history": [], "documentId": "doc-ctx"})).status_code == 400

        res = await client.post("/api/context-update", json={"history": history, "documentId": "nope"})
        assert res.status_code == 404

        res = await client.post("/api/context-update", json={"history": history, "documentId": "doc-ctx"})
        assert res.status_code == 500


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {k: v for k, v in chat_payload().items() if k != "instructions"},
        chat_payload(instructions="   "),
        chat_payload(actionMode="rewrite"),
        chat_payload(documentId=""),
        ["not", "an", "object"],
    ],
)
async def test_chat_rejects_invalid_requests(serve, body):
    fake = FakeChatClient()
    async with serve(fake_llm=fake) as client:
        res = await client.post("/api/chat", json=body)
        assert res.status_code == 422
        assert client.app.state.run_tasks == {}
    assert fake.stream_calls == []
    assert fake.object_calls == []
