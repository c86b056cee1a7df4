"""Error taxonomy for the bridge, the generation flow and project mutation."""


class ToolError(Exception):
    """Base class for failures talking to the external tool process."""

    kind = "tool_error"

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class SpawnFailure(ToolError):
    kind = "spawn_failed"


class ProcessFailure(ToolError):
    kind = "process_failed"

    def __init__(self, exit_code, stderr):
        super().__init__(
            f"Tool process failed (exit code {exit_code}): {stderr}",
            exit_code=exit_code, stderr=stderr,
        )
        self.exit_code = exit_code
        self.stderr = stderr


class ToolTimeout(ToolError):
    kind = "timeout"


class ProtocolError(ToolError):
    kind = "no_response"


class NoToolsInResponse(ToolError):
    kind = "no_tools_in_response"


class PayloadError(ToolError):
    kind = "malformed_payload"

    def __init__(self, message, content_preview):
        super().__init__(message, content_preview=content_preview)
        self.content_preview = content_preview


class ToolReportedError(ToolError):
    kind = "tool_error"


class GenerationError(Exception):
    """A generation request ended in an error event."""


class HistoryNotFound(LookupError):
    pass


class PatchFailure(Exception):
    """A manifest edit could not be applied. Logged, never fatal."""
