"""Tests for server.py Flask endpoints, with the tool bridge mocked."""

import json
import os
import tempfile
from unittest.mock import MagicMock, patch

import pytest

from core.errors import ProcessFailure
from core.history import HistoryStore
from core.orchestrator import Orchestrator
from core.state import FileEntry, ModuleDescriptor


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _generate_payload(args):
    name = args["moduleName"]
    return {
        "success": True,
        "files": [{"path": f"modules/pieces/{name}/index.js", "content": "export default {};\n"}],
    }


def _chat_payload(args):
    return {
        "success": True,
        "files": [{"path": "modules/widgets/blog-widget/index.js", "content": "export default {};\n"}],
        "parsed": {"moduleType": "widget", "moduleName": "blog-widget", "confidence": 0.8},
        "projectId": args["projectId"],
    }


def _sse_events(resp):
    body = resp.get_data(as_text=True)
    return [json.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk.startswith("data: ")]


@pytest.fixture
def workspace():
    with tempfile.TemporaryDirectory() as tmpdir:
        project_path = os.path.join(tmpdir, "my-site")
        os.makedirs(os.path.join(project_path, "modules", "pieces"))
        with open(os.path.join(project_path, "modules", "pieces", "modules.js"), "w",
                  encoding="utf-8") as f:
            f.write("export default {\n};\n")
        yield tmpdir, project_path


@pytest.fixture
def client(workspace, monkeypatch):
    """Flask test client with a mocked bridge and a temporary history store."""
    import server
    tmpdir, project_path = workspace
    bridge = MagicMock()
    projects = [{"id": "my-site", "name": "My Site", "path": project_path}]

    def call(tool, args):
        if tool == "list_apostrophe_projects":
            return projects
        if tool == "generate_from_natural_language":
            return _chat_payload(args)
        return _generate_payload(args)

    bridge.call.side_effect = call
    monkeypatch.setattr(server, "bridge", bridge)
    monkeypatch.setattr(server, "orchestrator", Orchestrator(bridge, pacing=0))
    monkeypatch.setattr(server, "history", HistoryStore(os.path.join(tmpdir, "history")))
    server.app.config["TESTING"] = True
    with server.app.test_client() as c:
        yield c


# ---------------------------------------------------------------------------
# Projects and tools
# ---------------------------------------------------------------------------

def test_projects(client):
    resp = client.get("/api/projects")
    assert resp.status_code == 200
    assert resp.get_json()[0]["id"] == "my-site"


def test_projects_as_json_string(client):
    import server
    server.bridge.call.side_effect = None
    server.bridge.call.return_value = json.dumps([{"id": "x"}])
    assert client.get("/api/projects").get_json() == [{"id": "x"}]


def test_projects_tool_failure(client):
    import server
    server.bridge.call.side_effect = ProcessFailure(1, "node: not found")
    resp = client.get("/api/projects")
    assert resp.status_code == 500
    assert "exit code 1" in resp.get_json()["error"]


def test_tools(client):
    import server
    server.bridge.list_tools.return_value = [{"name": "generate_apostrophe_module"}]
    resp = client.get("/api/tools")
    assert resp.get_json() == [{"name": "generate_apostrophe_module"}]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def test_generate_stream(client):
    resp = client.post("/api/generate/stream", json={
        "type": "piece", "projectId": "my-site", "name": "review", "label": "Review",
    })
    assert resp.status_code == 200
    assert resp.mimetype == "text/event-stream"
    events = _sse_events(resp)
    assert events[0] == {"type": "progress", "stage": "init",
                         "message": "Preparing to generate piece: review", "percentage": 0}
    assert events[-1]["type"] == "complete"
    assert events[-1]["result"]["files"][0]["path"] == "modules/pieces/review/index.js"


def test_generate_stream_rejects_missing_fields(client):
    resp = client.post("/api/generate/stream", json={"type": "piece", "name": "review"})
    assert resp.status_code == 400
    assert "Missing required fields" in resp.get_json()["error"]


def test_generate_stream_error_event(client):
    import server
    server.bridge.call.side_effect = ProcessFailure(1, "boom")
    resp = client.post("/api/generate/stream", json={
        "type": "widget", "projectId": "my-site", "name": "hero", "label": "Hero",
    })
    events = _sse_events(resp)
    assert events[-1]["type"] == "error"
    assert events[-1]["message"].startswith("Failed to generate widget")


def test_generate_non_streaming(client):
    resp = client.post("/api/generate", json={
        "type": "piece", "projectId": "my-site", "name": "review", "label": "Review",
    })
    assert resp.status_code == 200
    assert resp.get_json()["moduleName"] == "review"


def test_generate_chat(client):
    import server
    resp = client.post("/api/generate/chat", json={
        "projectId": "my-site", "userRequest": "Create a blog widget with title and content",
    })
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["parsed"]["moduleName"] == "blog-widget"
    assert data["files"][0]["path"] == "modules/widgets/blog-widget/index.js"
    server.bridge.call.assert_called_with("generate_from_natural_language", {
        "projectId": "my-site", "userRequest": "Create a blog widget with title and content",
    })


@pytest.mark.parametrize("body", [
    {"projectId": "my-site"},
    {"userRequest": "a product piece"},
    {"projectId": "", "userRequest": "a product piece"},
])
def test_generate_chat_missing_fields(client, body):
    resp = client.post("/api/generate/chat", json=body)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Missing required fields (projectId, userRequest)"


def test_generate_chat_tool_error(client):
    import server
    server.bridge.call.side_effect = None
    server.bridge.call.return_value = {"error": "Could not understand request"}
    resp = client.post("/api/generate/chat", json={"projectId": "my-site", "userRequest": "hmm"})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Could not understand request"


def test_generate_chat_without_files(client):
    import server
    server.bridge.call.side_effect = None
    server.bridge.call.return_value = {"success": True}
    resp = client.post("/api/generate/chat", json={"projectId": "my-site", "userRequest": "hmm"})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Invalid result format: missing files array"


def test_generate_chat_process_failure(client):
    import server
    server.bridge.call.side_effect = ProcessFailure(1, "node: not found")
    resp = client.post("/api/generate/chat", json={"projectId": "my-site", "userRequest": "hmm"})
    assert resp.status_code == 500
    assert "exit code 1" in resp.get_json()["error"]


# ---------------------------------------------------------------------------
# Save and delete
# ---------------------------------------------------------------------------

def _save_body(**overrides):
    body = {
        "projectId": "my-site",
        "moduleName": "review",
        "moduleType": "piece",
        "moduleLabel": "Review",
        "files": [
            {"path": "modules/pieces/review/index.js", "content": "export default {};\n"},
            {"path": "modules/pieces/review/views/show.html", "content": "<div></div>\n"},
        ],
    }
    body.update(overrides)
    return body


def test_save_then_delete(client, workspace):
    _, project_path = workspace
    resp = client.post("/api/save", json=_save_body())
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["savedCount"] == 2
    assert data["historyId"].endswith("_review")
    assert data["registrationInfo"] is None
    assert os.path.isfile(os.path.join(project_path, "modules", "pieces", "review", "index.js"))

    resp = client.post("/api/delete-from-project", json={
        "projectId": "my-site", "moduleName": "review", "moduleType": "piece",
        "files": _save_body()["files"],
    })
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["deletedFiles"] == 2
    assert data["revertedRegistrations"] == 1
    assert data["message"].endswith("from My Site")
    assert not os.path.exists(os.path.join(project_path, "modules", "pieces", "review"))
    with open(os.path.join(project_path, "modules", "pieces", "modules.js"), encoding="utf-8") as f:
        assert f.read() == "export default {\n};\n"


def test_save_page_reports_registration_info(client, workspace):
    _, project_path = workspace
    registry = os.path.join(project_path, "modules", "@apostrophecms", "page", "index.js")
    os.makedirs(os.path.dirname(registry))
    with open(registry, "w", encoding="utf-8") as f:
        f.write("export default {\n  options: {\n    types: [],\n    park: []\n  }\n};\n")

    resp = client.post("/api/save", json=_save_body(
        moduleName="about", moduleType="page", moduleLabel="About",
        parkPage=True, parkUrl="/about",
        files=[{"path": "modules/pages/about/index.js", "content": "export default {};\n"}],
    ))
    assert resp.status_code == 200
    info = resp.get_json()["registrationInfo"]
    assert info["registrationType"] == "park"
    assert info["message"] == "Page registered as parked page at /about"
    assert info["modulesJsPath"] == "modules/@apostrophecms/page/index.js"
    assert "slug: '/about'" in info["registration"]
    assert "title: 'About'" in info["registration"]
    assert info["scssInfo"] is None


def test_save_missing_fields(client):
    resp = client.post("/api/save", json={"projectId": "my-site"})
    assert resp.status_code == 400


def test_save_unknown_project(client):
    resp = client.post("/api/save", json=_save_body(projectId="nope"))
    assert resp.status_code == 404


def test_delete_missing_params(client):
    resp = client.post("/api/delete-from-project", json={"projectId": "my-site"})
    assert resp.status_code == 400


def test_delete_unknown_project(client):
    resp = client.post("/api/delete-from-project", json={"projectId": "nope", "files": []})
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def _seed_history():
    import server
    return server.history.record(
        ModuleDescriptor("piece", "review"),
        [FileEntry("modules/pieces/review/index.js", "export default {};\n")],
        project_name="My Site",
    )


def test_history_list_and_item(client):
    record = _seed_history()
    resp = client.get("/api/history")
    assert [item["id"] for item in resp.get_json()] == [record.id]

    resp = client.get(f"/api/history/{record.id}")
    data = resp.get_json()
    assert data["moduleName"] == "review"
    assert data["files"] == [{"path": "modules/pieces/review/index.js",
                              "content": "export default {};\n"}]


def test_history_item_not_found(client):
    assert client.get("/api/history/missing").status_code == 404
    assert client.delete("/api/history/missing").status_code == 404


def test_history_delete(client):
    record = _seed_history()
    resp = client.delete(f"/api/history/{record.id}")
    assert resp.get_json()["success"] is True
    assert client.get("/api/history").get_json() == []


def test_history_clear(client):
    _seed_history()
    assert client.delete("/api/history").get_json()["message"] == "History cleared successfully"
    assert client.delete("/api/history").get_json()["message"] == "No history to clear"


def test_save_survives_history_failure(client):
    import server
    with patch.object(server.history, "record", side_effect=OSError("disk full")):
        resp = client.post("/api/save", json=_save_body())
    assert resp.status_code == 200
    assert resp.get_json()["historyId"] is None
