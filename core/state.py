"""Data models shared by the bridge, the generation flow and the project mutator."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from utils.folder_naming import PAGE_REGISTRY_PATH, SCSS_INDEX_PATH

MODULE_TYPES = ("piece", "page", "widget", "bundle")
NAME_RE = re.compile(r"^[a-z][a-z0-9-]*$")


def normalize_path(path):
    """Project-relative, forward-slash path regardless of host separator."""
    return path.replace("\\", "/").lstrip("/")


@dataclass
class FileEntry:
    path: str           # project-relative, e.g. "modules/pieces/review/index.js"
    content: str

    def __post_init__(self):
        self.path = normalize_path(self.path)

    def to_dict(self):
        return {"path": self.path, "content": self.content}

    @classmethod
    def from_dict(cls, data):
        return cls(path=data["path"], content=data.get("content", ""))


@dataclass
class ModuleDescriptor:
    type: str           # piece|page|widget|bundle
    name: str
    label: str = ""

    def to_dict(self):
        return {"type": self.type, "name": self.name}


@dataclass
class BundleConfig:
    include_piece: bool = False
    include_page: bool = False
    include_widget: bool = False
    park_page: bool = False
    park_url: str | None = None

    @property
    def module_count(self):
        return sum([self.include_piece, self.include_page, self.include_widget])

    @classmethod
    def from_dict(cls, data):
        if not data:
            return None
        return cls(
            include_piece=bool(data.get("includePiece", False)),
            include_page=bool(data.get("includePage", False)),
            include_widget=bool(data.get("includeWidget", False)),
            park_page=bool(data.get("parkPage", False)),
            park_url=data.get("parkUrl") or None,
        )

    def to_dict(self):
        return {
            "includePiece": self.include_piece,
            "includePage": self.include_page,
            "includeWidget": self.include_widget,
            "parkPage": self.park_page,
            "parkUrl": self.park_url,
        }


@dataclass
class GenerationRequest:
    type: str
    project_id: str
    name: str
    label: str
    description: str = ""
    include_bem_styles: bool = True
    full_design: bool = False
    bundle_config: BundleConfig | None = None
    park_page: bool = False
    park_url: str | None = None

    @classmethod
    def from_dict(cls, data):
        bundle_config = BundleConfig.from_dict(data.get("bundleConfig"))
        # Single pages may carry park settings at the top level or in bundleConfig
        park_page = bool(data.get("parkPage", bundle_config.park_page if bundle_config else False))
        park_url = data.get("parkUrl") or (bundle_config.park_url if bundle_config else None)
        return cls(
            type=data.get("type", ""),
            project_id=data.get("projectId", ""),
            name=data.get("name", ""),
            label=data.get("label", ""),
            description=data.get("description") or "",
            include_bem_styles=bool(data.get("includeBemStyles", True)),
            full_design=bool(data.get("fullDesign", False)),
            bundle_config=bundle_config,
            park_page=park_page,
            park_url=park_url,
        )

    def validate(self):
        """Return a list of problems; empty when the request is usable."""
        problems = []
        if not (self.type and self.project_id and self.name and self.label):
            problems.append("Missing required fields")
        if self.type and self.type not in MODULE_TYPES:
            problems.append(f"Unknown module type: {self.type}")
        if self.name and not NAME_RE.match(self.name):
            problems.append(
                "Invalid name: use lowercase letters, numbers, and hyphens only (kebab-case)"
            )
        return problems


@dataclass
class GenerationResult:
    success: bool
    files: list[FileEntry]
    module_name: str
    module_type: str
    is_bundle: bool = False
    is_real_bundle: bool = False
    bundle_modules: list[ModuleDescriptor] = field(default_factory=list)
    bundle_config: BundleConfig | None = None
    message: str = ""

    def to_dict(self):
        data = {
            "success": self.success,
            "files": [f.to_dict() for f in self.files],
            "moduleName": self.module_name,
            "moduleType": self.module_type,
            "isBundle": self.is_bundle,
            "isRealBundle": self.is_real_bundle,
            "bundleModules": [m.to_dict() for m in self.bundle_modules],
            "message": self.message,
        }
        if self.bundle_config is not None:
            data["bundleConfig"] = self.bundle_config.to_dict()
        return data

    @classmethod
    def from_tool(cls, payload, module_type, module_name):
        """Build a result from a single generate-tool payload."""
        return cls(
            success=bool(payload.get("success", True)),
            files=[FileEntry.from_dict(f) for f in payload.get("files") or []],
            module_name=payload.get("moduleName", module_name),
            module_type=payload.get("moduleType", module_type),
            message=payload.get("message", ""),
        )


@dataclass
class ProgressEvent:
    type: str                   # progress|complete|error
    stage: str = ""
    message: str = ""
    percentage: int = 0
    result: GenerationResult | None = None

    @property
    def terminal(self):
        return self.type in ("complete", "error")

    def to_dict(self):
        if self.type == "progress":
            return {"type": "progress", "stage": self.stage,
                    "message": self.message, "percentage": self.percentage}
        if self.type == "complete":
            return {"type": "complete", "result": self.result.to_dict()}
        return {"type": "error", "message": self.message}


@dataclass
class HistoryRecord:
    id: str
    module_name: str
    module_type: str
    project_name: str
    file_count: int
    full_design: bool
    description: str | None
    timestamp: str              # ISO 8601, UTC

    def metadata(self):
        return {
            "moduleName": self.module_name,
            "moduleType": self.module_type,
            "projectName": self.project_name,
            "fileCount": self.file_count,
            "fullDesign": self.full_design,
            "description": self.description,
            "timestamp": self.timestamp,
        }

    def to_dict(self):
        return {"id": self.id, **self.metadata()}

    @classmethod
    def from_metadata(cls, record_id, data):
        return cls(
            id=record_id,
            module_name=data["moduleName"],
            module_type=data["moduleType"],
            project_name=data.get("projectName", ""),
            file_count=int(data.get("fileCount", 0)),
            full_design=bool(data.get("fullDesign", False)),
            description=data.get("description"),
            timestamp=data["timestamp"],
        )


@dataclass
class SaveReport:
    saved_files: list[str] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    failed_files: list[dict] = field(default_factory=list)
    failed_registrations: list[dict] = field(default_factory=list)
    registrations: list[str] = field(default_factory=list)
    page_registration_type: str | None = None     # "park" | "types"
    page_registration_details: dict | None = None
    created_scss: bool = False
    history_id: str | None = None

    @property
    def message(self):
        parts = [f"Saved {len(self.saved_files)} file(s)"]
        parts.extend(self.registrations)
        return ", ".join(parts)

    def registration_info(self):
        """Where and how the page was registered, for display; None without a page."""
        details = self.page_registration_details or {}
        if self.page_registration_type == "park":
            message = f"Page registered as parked page at {details['slug']}"
            fields = ("title", "slug", "type", "parkedId")
        elif self.page_registration_type == "types":
            message = "Page registered in types array"
            fields = ("name", "label")
        else:
            return None
        body = ",\n".join(f"  {key}: '{details[key]}'" for key in fields)
        return {
            "message": message,
            "modulesJsPath": PAGE_REGISTRY_PATH,
            "registration": f"{{\n{body}\n}}",
            "registrationType": self.page_registration_type,
            "scssInfo": (f"SCSS files created and imported in {SCSS_INDEX_PATH}"
                         if self.created_scss else None),
        }

    def to_dict(self):
        return {
            "success": True,
            "savedCount": len(self.saved_files),
            "saved": self.saved_files,
            "skipped": self.skipped_files,
            "failed": self.failed_files,
            "failedRegistrations": self.failed_registrations,
            "registrations": self.registrations,
            "registeredPage": self.page_registration_type is not None,
            "pageRegistrationType": self.page_registration_type,
            "pageRegistrationDetails": self.page_registration_details,
            "registrationInfo": self.registration_info(),
            "createdScss": self.created_scss,
            "historyId": self.history_id,
            "message": self.message,
        }


@dataclass
class DeleteReport:
    deleted_files: list[str] = field(default_factory=list)
    deleted_directories: list[str] = field(default_factory=list)
    reverted_registrations: list[str] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    failed_files: list[dict] = field(default_factory=list)
    failed_registrations: list[dict] = field(default_factory=list)

    @property
    def message(self):
        msg = (
            f"Deleted {len(self.deleted_files)} file(s), removed "
            f"{len(self.deleted_directories)} empty director(ies), and reverted "
            f"{len(self.reverted_registrations)} registration(s)"
        )
        if self.skipped_files:
            msg += (
                f". Note: {len(self.skipped_files)} shared function file(s) preserved "
                f"({', '.join(self.skipped_files)})"
            )
        return msg

    def to_dict(self):
        return {
            "success": True,
            "deletedFiles": len(self.deleted_files),
            "deletedDirectories": len(self.deleted_directories),
            "revertedRegistrations": len(self.reverted_registrations),
            "skippedFiles": len(self.skipped_files),
            "failedFiles": len(self.failed_files),
            "details": {
                "deleted": self.deleted_files,
                "directories": self.deleted_directories,
                "reverted": self.reverted_registrations,
                "skipped": self.skipped_files,
                "failed": self.failed_files,
                "failedRegistrations": self.failed_registrations,
            },
            "message": self.message,
        }
