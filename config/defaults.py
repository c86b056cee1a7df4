"""Default generator settings. Each value can be overridden via environment."""

import os
import shlex

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


DEFAULTS = {
    # External generator tool, spawned once per call
    "tool_command": shlex.split(os.environ.get("TOOL_COMMAND", "node mcp-server/index.js")),
    "tool_cwd": os.environ.get("TOOL_CWD", BASE_DIR),
    "tool_timeout": _env_float("TOOL_TIMEOUT", 300.0),
    "generate_tool": "generate_apostrophe_module",
    "chat_tool": "generate_from_natural_language",
    "projects_tool": "list_apostrophe_projects",
    # Storage
    "history_dir": os.environ.get("HISTORY_DIR", os.path.join(BASE_DIR, "history")),
    "projects_root": os.environ.get("PROJECTS_ROOT", os.path.dirname(BASE_DIR)),
    # Multiplier for the pauses between progress stages; 0 disables them
    "progress_pacing": _env_float("PROGRESS_PACING", 1.0),
    "port": int(os.environ.get("PORT", 3031)),
    "log_level": os.environ.get("LOG_LEVEL", "INFO"),
}
