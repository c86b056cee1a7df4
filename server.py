#!/usr/bin/env python3
"""HTTP surface for the module generator: generate, save, delete, history."""

import json

import structlog
from flask import Flask, Response, jsonify, request, stream_with_context

from config.defaults import DEFAULTS
from core.bridge import ToolBridge
from core.errors import GenerationError, HistoryNotFound, ToolError
from core.history import HistoryStore
from core.orchestrator import Orchestrator
from core.project import ProjectMutator, find_project
from core.state import FileEntry, GenerationRequest, ModuleDescriptor

logger = structlog.get_logger(__name__)

app = Flask(__name__)
bridge = ToolBridge()
orchestrator = Orchestrator(bridge)
history = HistoryStore()


def _load_projects():
    """Ask the tool for the project list."""
    projects = bridge.call(DEFAULTS["projects_tool"], {})
    if isinstance(projects, str):
        projects = json.loads(projects)
    return projects or []


def _files_from(data):
    files = data.get("files")
    if not isinstance(files, list):
        return None
    return [FileEntry.from_dict(f) for f in files if isinstance(f, dict) and f.get("path")]


@app.route("/api/projects")
def api_projects():
    try:
        return jsonify(_load_projects())
    except ToolError as e:
        logger.error("Error loading projects", error=str(e))
        return jsonify({"error": str(e)}), 500


@app.route("/api/tools")
def api_tools():
    try:
        return jsonify(bridge.list_tools())
    except ToolError as e:
        return jsonify({"error": str(e)}), 500


@app.route("/api/generate", methods=["POST"])
def api_generate():
    """Generate and return the whole result in one response."""
    gen_request = GenerationRequest.from_dict(request.get_json(silent=True) or {})
    problems = gen_request.validate()
    if problems:
        return jsonify({"error": "; ".join(problems)}), 400

    for event in orchestrator.generate(gen_request):
        if event.type == "complete":
            return jsonify(event.result.to_dict())
        if event.type == "error":
            return jsonify({"error": event.message}), 500
    return jsonify({"error": "Generation ended without a result"}), 500


@app.route("/api/generate/stream", methods=["POST"])
def api_generate_stream():
    """Generate with progress updates as server-sent events."""
    gen_request = GenerationRequest.from_dict(request.get_json(silent=True) or {})
    problems = gen_request.validate()
    if problems:
        return jsonify({"error": "; ".join(problems)}), 400

    def events():
        for event in orchestrator.generate(gen_request):
            logger.debug("SSE send", type=event.type, stage=event.stage,
                         percentage=event.percentage)
            yield f"data: {json.dumps(event.to_dict())}\n\n"

    return Response(
        stream_with_context(events()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.route("/api/generate/chat", methods=["POST"])
def api_generate_chat():
    """Generate from a natural language request; the tool decides type and name."""
    data = request.get_json(silent=True) or {}
    if not data.get("projectId") or not data.get("userRequest"):
        return jsonify({"error": "Missing required fields (projectId, userRequest)"}), 400

    try:
        return jsonify(orchestrator.chat(data["projectId"], data["userRequest"]))
    except (ToolError, GenerationError) as e:
        logger.error("Error in chat mode", error=str(e))
        return jsonify({"error": str(e)}), 500


@app.route("/api/save", methods=["POST"])
def api_save():
    """Write generated files into a project, register them and snapshot to history."""
    data = request.get_json(silent=True) or {}
    files = _files_from(data)
    if not data.get("projectId") or files is None or not data.get("moduleName") \
            or not data.get("moduleType"):
        return jsonify({"error": "Missing required fields"}), 400

    try:
        project = find_project(data["projectId"], _load_projects())
    except ToolError as e:
        return jsonify({"error": str(e)}), 500
    if not project:
        return jsonify({"error": "Project not found"}), 404

    descriptor = ModuleDescriptor(
        type=data["moduleType"], name=data["moduleName"], label=data.get("moduleLabel") or "",
    )
    mutator = ProjectMutator(
        project["path"], history=history,
        project_name=data.get("projectName") or project.get("name"),
    )
    report = mutator.save(
        descriptor, files,
        park_page=bool(data.get("parkPage")),
        park_url=data.get("parkUrl"),
        full_design=bool(data.get("fullDesign")),
        description=data.get("description"),
    )
    return jsonify(report.to_dict())


@app.route("/api/delete-from-project", methods=["POST"])
def api_delete_from_project():
    """Revert registrations and remove generated files from a project."""
    data = request.get_json(silent=True) or {}
    files = _files_from(data)
    if not data.get("projectId") or files is None:
        return jsonify({"error": "Missing required parameters: projectId, files"}), 400

    try:
        project = find_project(data["projectId"], _load_projects())
    except ToolError as e:
        return jsonify({"error": str(e)}), 500
    if not project:
        return jsonify({"error": "Project not found"}), 404

    descriptor = None
    if data.get("moduleName") and data.get("moduleType"):
        descriptor = ModuleDescriptor(type=data["moduleType"], name=data["moduleName"])

    mutator = ProjectMutator(project["path"], project_name=project.get("name"))
    report = mutator.delete(files, descriptor)
    result = report.to_dict()
    result["message"] = f"{report.message} from {mutator.project_name}"
    return jsonify(result)


@app.route("/api/history")
def api_history():
    return jsonify([record.to_dict() for record in history.list()])


@app.route("/api/history/<history_id>")
def api_history_item(history_id):
    try:
        record, files = history.retrieve(history_id)
    except HistoryNotFound as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({**record.to_dict(), "files": [f.to_dict() for f in files]})


@app.route("/api/history/<history_id>", methods=["DELETE"])
def api_history_delete(history_id):
    try:
        history.delete(history_id)
    except HistoryNotFound:
        return jsonify({"error": "History item not found"}), 404
    return jsonify({"success": True, "message": "History item deleted"})


@app.route("/api/history", methods=["DELETE"])
def api_history_clear():
    removed = history.delete_all()
    if not removed:
        return jsonify({"success": True, "message": "No history to clear"})
    return jsonify({"success": True, "message": "History cleared successfully"})


if __name__ == "__main__":
    from utils.logging_setup import setup_logging

    setup_logging()
    port = DEFAULTS["port"]
    print(f"Module generator running at http://localhost:{port}")
    app.run(debug=False, port=port, threaded=False)
