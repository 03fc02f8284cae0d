import pytest

KEY = {"provider": "openai", "model": "gpt-4o", "credential_id": "cred-1"}
KEY_QUERY = "provider=openai&model=gpt-4o&credential_id=cred-1"

CATALOG = [
    {"id": "cron", "name": "Cron", "category": "trigger", "description": "Fires on a schedule"},
    {"id": "slack", "name": "Slack", "category": "action", "description": "Posts a message"},
]

KNOWLEDGE = [
    {"id": "node-cron", "kind": "nodeType", "content": "Cron node fires a timer trigger"},
    {"id": "example-digest", "kind": "example", "content": "Example: daily Slack digest"},
    {"id": "pattern-poll", "kind": "pattern", "content": "Polling pattern with a timer"},
]


@pytest.mark.anyio
async def test_assemble_flow(client):
    response = await client.put("/api/catalog", json={"entries": CATALOG})
    assert response.status_code == 200
    assert response.json()["scope"] == "catalog"

    response = await client.post("/api/knowledge/index", json={"items": KNOWLEDGE})
    assert response.status_code == 200
    assert response.json()["indexed"] == 3
    assert response.json()["total"] == 3

    turn = {
        "key": KEY,
        "user": {"role": "user", "content": "Build a cron workflow", "id": "u1"},
        "assistant": {
            "role": "assistant",
            "content": '{"nodes": [{"id": "n1", "type": "cron"}]}',
            "id": "a1",
            "flags": {"is_flow_artifact": True},
        },
    }
    response = await client.post("/api/history/turn", json=turn)
    assert response.status_code == 200
    assert [row["id"] for row in response.json()["messages"]] == ["u1", "a1"]

    response = await client.post(
        "/api/context/assemble",
        json={
            "key": KEY,
            "utterance": "Create a workflow with a cron trigger",
            "category": "create",
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["category"] == "create"
    assert "- Cron (cron): Fires on a schedule" in data["catalog_fragment"]
    assert data["workspace_fragment"] == "Workspace is empty."
    assert {hit["kind"] for hit in data["retrieval"]} <= {"example", "pattern"}
    assert [row["id"] for row in data["history"]] == ["u1", "a1"]
    assert data["messages"][0]["role"] == "system"
    assert data["messages"][-1] == {
        "role": "user",
        "content": "Create a workflow with a cron trigger",
    }
    assert data["budget_exceeded"] is None


@pytest.mark.anyio
async def test_workspace_update_and_classification(client):
    workspace = {
        "items": [
            {"id": "n1", "type": "cron", "name": "Hourly", "parameters": {"cron": "0 * * * *"}}
        ]
    }
    response = await client.put("/api/workspace", json=workspace)
    assert response.status_code == 200

    response = await client.post(
        "/api/context/classify", json={"key": KEY, "utterance": "Add a Slack notification"}
    )
    assert response.status_code == 200
    assert response.json()["category"] == "update"

    response = await client.post(
        "/api/context/assemble",
        json={"key": KEY, "utterance": "Change the cron to run daily"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["category"] == "update"
    assert '"cron": "0 * * * *"' in data["workspace_fragment"]
    assert data["retrieval"] == []

    for path in ("/api/events/catalog-changed", "/api/events/workspace-changed"):
        response = await client.post(path)
        assert response.status_code == 200
        assert response.json()["invalidated"] is True


@pytest.mark.anyio
async def test_history_endpoints(client):
    for index in range(1, 4):
        response = await client.post(
            "/api/history/append",
            json={
                "key": KEY,
                "message": {"role": "user", "content": f"Turn {index}", "id": f"m{index}"},
            },
        )
        assert response.status_code == 200
        assert response.json() == {"appended": True, "message_id": f"m{index}"}

    response = await client.post(
        "/api/history/append",
        json={"key": KEY, "message": {"role": "user", "content": "Turn 1", "id": "m1"}},
    )
    assert response.json()["appended"] is False

    response = await client.get(f"/api/history/view?{KEY_QUERY}&max_recent=2")
    assert response.status_code == 200
    messages = response.json()["messages"]
    assert messages[0]["id"] == "history-summary"
    assert [row["id"] for row in messages[1:]] == ["m2", "m3"]

    response = await client.get(f"/api/history?{KEY_QUERY}")
    assert len(response.json()["messages"]) == 3

    response = await client.delete(f"/api/history?{KEY_QUERY}")
    assert response.status_code == 200
    assert response.json()["messages"] == []

    response = await client.get(f"/api/history?{KEY_QUERY}")
    assert response.json()["messages"] == []


@pytest.mark.anyio
async def test_switch_sets_active_key(client):
    response = await client.post(
        "/api/context/assemble", json={"utterance": "What is a cron node?"}
    )
    assert response.status_code == 400

    response = await client.post("/api/history/switch", json={"key": KEY})
    assert response.status_code == 200
    assert response.json()["key"] == "openai|gpt-4o|cred-1"

    response = await client.post(
        "/api/context/assemble", json={"utterance": "What is a cron node?"}
    )
    assert response.status_code == 200
    assert response.json()["category"] == "question"


@pytest.mark.anyio
async def test_knowledge_search(client):
    await client.post("/api/knowledge/index", json={"items": KNOWLEDGE})

    response = await client.post(
        "/api/knowledge/search",
        json={"query": "timer trigger", "k": 2, "kinds": ["nodeType", "pattern"]},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["degraded"] is False
    assert len(data["hits"]) <= 2
    assert {hit["kind"] for hit in data["hits"]} <= {"nodeType", "pattern"}
    scores = [hit["score"] for hit in data["hits"]]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.anyio
async def test_invalid_requests(client):
    response = await client.post(
        "/api/context/assemble", json={"key": KEY, "utterance": "   "}
    )
    assert response.status_code == 400

    response = await client.post(
        "/api/history/append",
        json={"key": KEY, "message": {"role": "tool", "content": "x"}},
    )
    assert response.status_code == 400

    response = await client.post(
        "/api/history/append",
        json={"key": KEY, "message": {"role": "user", "content": "  "}},
    )
    assert response.status_code == 400

    response = await client.post(
        "/api/context/assemble", json={"key": KEY, "utterance": "hi", "budget": 0}
    )
    assert response.status_code == 422


@pytest.mark.anyio
async def test_long_text_is_kept_whole_or_rejected(client):
    long_utterance = "Create a workflow that " + "polls the feed and " * 400
    assert len(long_utterance) < 8000
    response = await client.post(
        "/api/context/assemble",
        json={"key": KEY, "utterance": long_utterance, "category": "create"},
    )
    assert response.status_code == 200
    assert response.json()["utterance"] == long_utterance
    assert response.json()["messages"][-1]["content"] == long_utterance

    response = await client.post(
        "/api/context/assemble", json={"key": KEY, "utterance": "x" * 9021}
    )
    assert response.status_code == 413

    response = await client.post(
        "/api/history/append",
        json={"key": KEY, "message": {"role": "user", "content": "y" * 20001}},
    )
    assert response.status_code == 413

    padded = "  keep the indentation\n"
    response = await client.post(
        "/api/history/append",
        json={"key": KEY, "message": {"role": "user", "content": padded, "id": "p1"}},
    )
    assert response.status_code == 200

    response = await client.get(f"/api/history?{KEY_QUERY}")
    assert [row["content"] for row in response.json()["messages"]] == [padded]


@pytest.mark.anyio
async def test_body_and_query_keys_address_the_same_record(client):
    padded_key = {"provider": " openai ", "model": "gpt-4o ", "credential_id": " cred-1"}
    response = await client.post(
        "/api/history/append",
        json={"key": padded_key, "message": {"role": "user", "content": "hi", "id": "k1"}},
    )
    assert response.status_code == 200

    response = await client.get(
        "/api/history",
        params={"provider": "openai ", "model": " gpt-4o", "credential_id": "cred-1 "},
    )
    assert response.status_code == 200
    assert response.json()["key"] == "openai|gpt-4o|cred-1"
    assert [row["id"] for row in response.json()["messages"]] == ["k1"]

    response = await client.get(
        "/api/history", params={"provider": " ", "model": "gpt-4o", "credential_id": "cred-1"}
    )
    assert response.status_code == 422

    response = await client.post(
        "/api/history/switch",
        json={"key": {"provider": "openai", "model": "  ", "credential_id": "cred-1"}},
    )
    assert response.status_code == 422
