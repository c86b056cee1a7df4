"""Tool bridge: one subprocess per call, one JSON-RPC request, one response.

The tool writes human-readable banner lines to stdout alongside the single
machine-readable response, so the scan skips anything that is not a JSON
object carrying ``result`` or ``error``.
"""

import itertools
import json
import subprocess

import structlog

from config.defaults import DEFAULTS
from core.errors import (
    NoToolsInResponse,
    PayloadError,
    ProcessFailure,
    ProtocolError,
    SpawnFailure,
    ToolReportedError,
    ToolTimeout,
)

logger = structlog.get_logger(__name__)

PREVIEW_CHARS = 500


def scan_response(stdout):
    """Return the first JSON-RPC message on stdout with a result or error, else None."""
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except ValueError:
            continue
        if not isinstance(message, dict):
            continue
        if message.get("result") is not None or message.get("error") is not None:
            return message
    return None


def decode_result(message):
    """Turn a matched response message into a Python value or raise."""
    error = message.get("error")
    if error is not None:
        if isinstance(error, dict) and error.get("message"):
            raise ToolReportedError(error["message"])
        raise ToolReportedError(json.dumps(error))

    result = message["result"]
    content = result.get("content") if isinstance(result, dict) else None
    if isinstance(content, list) and content and isinstance(content[0], dict) \
            and "text" in content[0]:
        text = content[0]["text"]
        try:
            return json.loads(text)
        except (TypeError, ValueError) as e:
            preview = str(text)[:PREVIEW_CHARS]
            logger.error("Malformed tool payload", error=str(e), preview=preview)
            raise PayloadError(f"Failed to parse JSON: {e}", content_preview=preview) from e
    return result


class ToolBridge:
    """Drives the external generator tool over stdin/stdout."""

    def __init__(self, command=None, cwd=None, timeout=None):
        self.command = list(command or DEFAULTS["tool_command"])
        self.cwd = cwd or DEFAULTS["tool_cwd"]
        self.timeout = timeout if timeout is not None else DEFAULTS["tool_timeout"]
        self._ids = itertools.count(1)

    def call(self, tool_name, arguments=None, timeout=None):
        """Call a tool and return its decoded payload."""
        request = self._request("tools/call", {"name": tool_name, "arguments": arguments or {}})
        stdout = self._run(request, timeout)
        message = scan_response(stdout)
        if message is None:
            raise ProtocolError("No valid response from tool process")
        result = decode_result(message)
        logger.info("Tool call resolved", tool=tool_name, id=request["id"])
        return result

    def list_tools(self, timeout=None):
        """Return the tool descriptors advertised by the tool process."""
        request = self._request("tools/list", {})
        stdout = self._run(request, timeout)
        message = scan_response(stdout)
        if message is None:
            raise NoToolsInResponse("No tools list in tool response")
        result = decode_result(message)
        if not isinstance(result, dict) or "tools" not in result:
            raise NoToolsInResponse("No tools list in tool response")
        return result["tools"]

    def _request(self, method, params):
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    def _run(self, request, timeout=None):
        """Spawn the tool, send one request line, and collect output until exit."""
        timeout = timeout if timeout is not None else self.timeout
        logger.debug("Spawning tool process", command=self.command, method=request["method"],
                     id=request["id"])
        try:
            proc = subprocess.Popen(
                self.command,
                cwd=self.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            logger.error("Failed to spawn tool process", command=self.command, error=str(e))
            raise SpawnFailure(f"Failed to spawn tool process: {e}") from e

        try:
            # communicate() closes stdin after writing, then drains both pipes
            stdout, stderr = proc.communicate(json.dumps(request) + "\n", timeout=timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            proc.communicate()
            logger.error("Tool process timed out", timeout=timeout, id=request["id"])
            raise ToolTimeout(f"Tool process timed out after {timeout}s") from e

        if proc.returncode != 0:
            logger.error("Tool process failed", exit_code=proc.returncode, id=request["id"])
            raise ProcessFailure(proc.returncode, stderr)
        return stdout
