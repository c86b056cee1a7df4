"""Generation orchestrator: requests in, ordered progress events out."""

import time

import structlog

from config.defaults import DEFAULTS
from core.bridge import ToolBridge
from core.bundle import bundle_modules_for, compose_bundle, is_real_bundle
from core.errors import GenerationError, ToolError
from core.state import GenerationResult, ProgressEvent
from utils.folder_naming import default_park_url

logger = structlog.get_logger(__name__)


def _progress(stage, message, percentage):
    return ProgressEvent(type="progress", stage=stage, message=message, percentage=percentage)


def _error(message):
    return ProgressEvent(type="error", message=message)


def _complete(result):
    return ProgressEvent(type="complete", result=result)


def _checked_payload(payload):
    """A generator payload with a files array, or GenerationError."""
    if payload is None:
        raise GenerationError("No result returned from generator tool")
    if not isinstance(payload, dict):
        raise GenerationError("Invalid result format: expected an object")
    if payload.get("error"):
        raise GenerationError(str(payload["error"]))
    if not isinstance(payload.get("files"), list):
        raise GenerationError("Invalid result format: missing files array")
    return payload


def _claude_message(module_type, full_design):
    if module_type == "page" and full_design:
        return "Generating page with Full Design (this may take 2-3 minutes)"
    if module_type == "page":
        return "Generating page module (this may take 1-2 minutes)"
    if full_design:
        return "Calling Claude AI with Full Design (this may take 1-2 minutes)"
    return "Calling Claude AI (this may take 10-60 seconds)"


class Orchestrator:
    """Runs a generation request as a stream of progress events.

    Every stream ends in exactly one terminal event: ``complete`` carrying the
    GenerationResult, or ``error`` carrying a message. Bundle members are
    generated one after another in the order piece, page, widget; the first
    failure ends the stream and no partial bundle is returned.
    """

    def __init__(self, bridge=None, pacing=None, sleep=time.sleep):
        self.bridge = bridge or ToolBridge()
        self.pacing = DEFAULTS["progress_pacing"] if pacing is None else pacing
        self._sleep = sleep

    def generate(self, request):
        """Yield ProgressEvents for a GenerationRequest."""
        problems = request.validate()
        if problems:
            yield _error("; ".join(problems))
            return

        logger.info("Generating module", type=request.type, name=request.name,
                    project=request.project_id)
        try:
            if request.type == "bundle":
                yield from self._generate_bundle(request)
            else:
                yield from self._generate_single(request)
        except Exception as e:  # stream boundary: every failure becomes the terminal event
            logger.exception("Generation failed", name=request.name)
            yield _error(str(e))

    def generate_result(self, request, on_progress=None) -> GenerationResult:
        """Drain the event stream; return the result or raise GenerationError."""
        for event in self.generate(request):
            if event.type == "complete":
                return event.result
            if event.type == "error":
                raise GenerationError(event.message)
            if on_progress:
                on_progress(event)
        raise GenerationError("Generation ended without a result")

    def chat(self, project_id, user_request):
        """Generate from a free-text request; the tool picks type and name.

        Returns the tool payload unchanged once it passes the same checks as a
        regular generation. Raises GenerationError or ToolError.
        """
        logger.info("Generating from natural language", project=project_id,
                    request=user_request[:60])
        payload = _checked_payload(self.bridge.call(DEFAULTS["chat_tool"], {
            "projectId": project_id,
            "userRequest": user_request,
        }))
        parsed = payload.get("parsed") or {}
        logger.info("Natural language request generated", files=len(payload["files"]),
                    type=parsed.get("moduleType"), name=parsed.get("moduleName"),
                    confidence=parsed.get("confidence"))
        return payload

    def _pause(self, seconds):
        if self.pacing > 0:
            self._sleep(seconds * self.pacing)

    def _call_generate(self, request, module_type, module_name, **overrides):
        """One bridge call for one module; raises on any failure."""
        args = {
            "projectId": request.project_id,
            "moduleType": module_type,
            "moduleName": module_name,
            "label": request.label,
            "description": request.description,
            "includeBemStyles": request.include_bem_styles,
            "fullDesign": request.full_design,
        }
        args.update(overrides)
        payload = _checked_payload(self.bridge.call(DEFAULTS["generate_tool"], args))
        result = GenerationResult.from_tool(payload, module_type, module_name)
        logger.info("Module generated", type=module_type, name=module_name,
                    files=len(result.files))
        return result

    def _generate_single(self, request):
        yield _progress("init", f"Preparing to generate {request.type}: {request.name}", 0)
        yield _progress("validating", "Validating project and module name", 10)
        self._pause(0.3)
        yield _progress("prompt", "Building generation prompt with BEM patterns", 20)
        self._pause(0.4)
        yield _progress("claude", _claude_message(request.type, request.full_design), 30)

        overrides = {}
        if request.type == "page":
            overrides = {"parkPage": request.park_page, "parkUrl": request.park_url}
        try:
            result = self._call_generate(request, request.type, request.name, **overrides)
        except (ToolError, GenerationError) as e:
            yield _error(f"Failed to generate {request.type}: {e}")
            return

        yield _progress("parsing", "Parsing generated code", 70)
        self._pause(0.3)
        yield _progress("analyzing", "Analyzing HTML structure", 80)
        self._pause(0.3)
        yield _progress("scss", "Generating SCSS to match HTML classes", 90)
        self._pause(0.2)
        yield _progress("complete", f"Generated {len(result.files)} file(s) successfully!", 100)
        yield _complete(result)

    def _generate_piece_only(self, request):
        """A bundle of just a piece is an ordinary piece generation."""
        yield _progress("init", f"Generating single piece module: {request.name}", 0)
        yield _progress("validating", "Validating project and module name", 10)
        yield _progress("prompt", "Building generation prompt", 20)
        yield _progress("claude", "Calling Claude AI", 30)
        try:
            result = self._call_generate(request, "piece", request.name,
                                         includeBemStyles=False, fullDesign=False)
        except (ToolError, GenerationError) as e:
            yield _error(f"Failed to generate piece: {e}")
            return
        yield _progress("complete", f"Generated piece module with {len(result.files)} files!", 100)
        yield _complete(result)

    def _generate_bundle(self, request):
        config = request.bundle_config
        if config is None or config.module_count == 0:
            yield _error("Bundle must include at least one module type")
            return
        if config.include_piece and config.module_count == 1:
            yield from self._generate_piece_only(request)
            return

        name = request.name
        real = is_real_bundle(config)
        yield _progress("init", f"Preparing to generate {'bundle' if real else 'modules'}: {name}", 0)

        bundle_context = {"isPartOfBundle": True, "basePieceName": name}
        modules = bundle_modules_for(name, config, request.label)
        files = []
        percentage = 10
        for module in modules:
            overrides = {"label": module.label, "bundleContext": bundle_context}
            if module.type == "piece":
                message = "Generating piece module"
                overrides.update(includeBemStyles=False, fullDesign=False)
            elif module.type == "page":
                message = ("Generating page module (Full Design - may take 2-3 minutes)"
                           if request.full_design
                           else "Generating page module (may take 1-2 minutes)")
                # Bundle pages are always parked: nothing else links to them
                park_url = config.park_url or default_park_url(name)
                overrides.update(parkPage=True, parkUrl=park_url)
                logger.info("Bundle page will be parked", park_url=park_url)
            else:
                message = "Generating widget module"
            yield _progress("claude", message, percentage)

            try:
                result = self._call_generate(request, module.type, module.name, **overrides)
            except (ToolError, GenerationError) as e:
                yield _error(f"Failed to generate {module.type}: {e}")
                return
            files.extend(result.files)
            percentage += 25

        result = compose_bundle(name, modules, files, config)
        if result.is_real_bundle:
            message = f"Generated bundle with {len(modules)} internal modules!"
        else:
            message = f"Generated {len(modules)} modules with {len(files)} files!"
        yield _progress("complete", message, 100)
        yield _complete(result)
