"""Project mutation: write generated modules into a project and take them out again.

Save writes files, registers the module in the project's manifests and
snapshots the generation to history. Delete reverts those registrations,
removes the files and prunes directories left empty. Both directions derive
registrations through ``plan_registrations`` so they always agree.
"""

import os
import re

import structlog

from config.defaults import DEFAULTS
from core.bundle import member_label
from core.errors import PatchFailure
from core.manifest import ManifestPatcher, RegistrationPlan, plan_registrations, stylesheet_partials
from core.state import DeleteReport, SaveReport, normalize_path
from utils.folder_naming import (
    GLOBAL_SCRIPT_PATH,
    PAGE_REGISTRY_PATH,
    SCSS_INDEX_PATH,
    default_park_url,
    module_dir,
    registry_path,
    safe_join,
)

logger = structlog.get_logger(__name__)

_EXPORTED_FUNCTION_RE = re.compile(r"export\s+function\s+(\w+)")
_SHORT_NAME_RE = re.compile(r"""shortName:\s*['"](.+?)['"]""")


# ---------------------------------------------------------------------------
# Project discovery
# ---------------------------------------------------------------------------

def discover_projects(root=None):
    """List CMS projects under root: directories whose app.js declares a shortName."""
    root = root or DEFAULTS["projects_root"]
    projects = []
    if not os.path.isdir(root):
        return projects
    for entry in sorted(os.listdir(root)):
        if entry.startswith(".") or entry == "node_modules":
            continue
        project_path = os.path.join(root, entry)
        app_js = os.path.join(project_path, "app.js")
        if not os.path.isfile(app_js):
            continue
        try:
            with open(app_js, encoding="utf-8") as f:
                match = _SHORT_NAME_RE.search(f.read())
        except (OSError, UnicodeDecodeError):
            continue
        if match:
            projects.append({
                "id": entry,
                "name": " ".join(w.capitalize() for w in entry.split("-")),
                "path": project_path,
                "database": match.group(1),
            })
    return projects


def find_project(project_id, projects):
    for project in projects:
        if project.get("id") == project_id:
            return project
    return None


# ---------------------------------------------------------------------------
# Shared global script
# ---------------------------------------------------------------------------

def merge_global_script(existing, addition):
    """Append new named-export functions to the shared global script.

    Returns the merged text, or None when every function already exists.
    Raises ValueError for content using a default export.
    """
    addition = addition.strip()
    if "export default" in addition:
        raise ValueError("Global asset module must use named exports, not export default")
    known = set(_EXPORTED_FUNCTION_RE.findall(existing or ""))
    names = _EXPORTED_FUNCTION_RE.findall(addition)
    if not any(name not in known for name in names):
        return None
    if existing:
        return f"{existing.rstrip()}\n\n{addition}\n"
    return f"{addition}\n"


# ---------------------------------------------------------------------------
# Directory pruning
# ---------------------------------------------------------------------------

def prune_empty_dirs(project_path, deleted_paths):
    """Remove ancestors of deleted files that are now empty, deepest first.

    Returns the project-relative directories removed. Running it again on an
    already pruned tree removes nothing.
    """
    candidates = set()
    for path in deleted_paths:
        parts = normalize_path(path).split("/")
        for i in range(len(parts) - 1, 0, -1):
            candidates.add("/".join(parts[:i]))

    removed = []
    for directory in sorted(candidates, key=lambda d: (-d.count("/"), d)):
        full_path = os.path.join(project_path, *directory.split("/"))
        try:
            if os.path.isdir(full_path) and not os.path.islink(full_path) \
                    and not os.listdir(full_path):
                os.rmdir(full_path)
                removed.append(directory)
                logger.info("Removed empty directory", directory=directory)
        except OSError as e:
            logger.warning("Could not remove directory", directory=directory, error=str(e))
    return removed


# ---------------------------------------------------------------------------
# Mutator
# ---------------------------------------------------------------------------

class ProjectMutator:
    """Saves generated modules into one project and deletes them again."""

    def __init__(self, project_path, history=None, project_name=None):
        self.project_path = project_path
        self.project_name = project_name or os.path.basename(os.path.normpath(project_path))
        self.history = history
        self.patcher = ManifestPatcher(project_path)

    def _patch(self, report, manifest, action):
        """Run one manifest edit; a failure is recorded and logged, never raised."""
        try:
            return action()
        except (OSError, ValueError, PatchFailure) as e:
            logger.warning("Manifest patch failed", manifest=manifest, error=str(e))
            report.failed_registrations.append({"manifest": manifest, "error": str(e)})
            return None

    def save(self, descriptor, files, park_page=False, park_url=None, full_design=False,
             description=None) -> SaveReport:
        """Write files, register the module and snapshot it to history."""
        report = SaveReport()
        existing = os.path.join(self.project_path, *module_dir(descriptor.type, descriptor.name).split("/"))
        if os.path.exists(existing):
            logger.warning("Module already exists", module=descriptor.name, path=existing)

        for f in files:
            try:
                if f.path == GLOBAL_SCRIPT_PATH:
                    self._merge_global_script(f, report)
                else:
                    self._write(f.path, f.content)
                    report.saved_files.append(f.path)
            except (OSError, ValueError) as e:
                logger.error("Failed to save file", path=f.path, error=str(e))
                report.failed_files.append({"path": f.path, "error": str(e)})

        paths = [f.path for f in files]
        plan = plan_registrations(descriptor, paths)

        has_template = any("/views/" in p for p in paths)
        if has_template and plan.partials:
            changed = self._patch(report, SCSS_INDEX_PATH,
                                  lambda: self.patcher.register_imports(plan.partials))
            if changed:
                report.created_scss = True
                report.registrations.append("imported SCSS in index.scss")

        for subdir, key in plan.modules:
            changed = self._patch(report, registry_path(subdir),
                                  lambda: self.patcher.register_module(subdir, key))
            if changed:
                report.registrations.append(f"registered {key} in {subdir}/modules.js")

        if plan.page:
            self._register_page(descriptor, plan, park_page, park_url, report)

        if self.history is not None:
            try:
                record = self.history.record(
                    descriptor, files, project_name=self.project_name,
                    full_design=full_design, description=description,
                )
                report.history_id = record.id
            except (OSError, ValueError) as e:
                logger.warning("Failed to save history", module=descriptor.name, error=str(e))

        logger.info("Saved module", module=descriptor.name, type=descriptor.type,
                    saved=len(report.saved_files), failed=len(report.failed_files))
        return report

    def _register_page(self, descriptor, plan, park_page, park_url, report):
        if descriptor.type == "bundle":
            # Bundle pages are always parked; they have no other entry point
            slug = park_url or default_park_url(descriptor.name)
            label = member_label("page", descriptor.label) if descriptor.label else plan.page
        else:
            slug = park_url if park_page and park_url else None
            label = descriptor.label or plan.page
        result = self._patch(report, PAGE_REGISTRY_PATH,
                             lambda: self.patcher.register_page(plan.page, label, park_url=slug))
        if not result:
            return
        kind, details = result
        if kind:
            report.page_registration_type = kind
            report.page_registration_details = details
            if kind == "park":
                report.registrations.append(f"registered page (parked at {slug})")
            else:
                report.registrations.append("registered page")

    def _merge_global_script(self, f, report):
        target = safe_join(self.project_path, f.path)
        existing = ""
        if os.path.exists(target):
            with open(target, encoding="utf-8", newline="") as fp:
                existing = fp.read()
        merged = merge_global_script(existing, f.content)
        if merged is None:
            logger.info("Global script functions already present", path=f.path)
            report.skipped_files.append(f.path)
            return
        self._write(f.path, merged)
        report.saved_files.append(f.path)

    def _write(self, relative_path, content):
        target = safe_join(self.project_path, relative_path)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as fp:
            fp.write(content)

    def delete(self, files, descriptor=None) -> DeleteReport:
        """Revert registrations, delete files and prune emptied directories.

        Each step is independent: a failure is recorded in the report and the
        remaining steps still run.
        """
        report = DeleteReport()
        paths = [normalize_path(f.path) for f in files]
        if descriptor is not None:
            plan = plan_registrations(descriptor, paths)
        else:
            plan = RegistrationPlan(partials=stylesheet_partials(paths))

        removed_manifests = []

        # 1. Module registries
        for subdir, key in plan.modules:
            changed = self._patch(report, registry_path(subdir),
                                  lambda: self.patcher.revert_module(subdir, key))
            if changed:
                report.reverted_registrations.append(f"Removed {key} from {subdir}/modules.js")
            if self._patch(report, registry_path(subdir),
                           lambda: self.patcher.drop_created_registry(subdir)):
                removed_manifests.append(registry_path(subdir))

        # 2. Stylesheet imports
        if plan.partials:
            changed = self._patch(report, SCSS_INDEX_PATH,
                                  lambda: self.patcher.revert_imports(plan.partials))
            if changed:
                report.reverted_registrations.append("Removed SCSS imports from index.scss")

        # 3. Page registry, both the types and the park list
        if plan.page:
            changed = self._patch(report, PAGE_REGISTRY_PATH,
                                  lambda: self.patcher.revert_page(plan.page))
            if changed:
                report.reverted_registrations.append(f"Removed page registration for {plan.page}")

        # 4. Files
        for path in paths:
            if path == GLOBAL_SCRIPT_PATH:
                logger.warning("Skipped shared function file", path=path)
                report.skipped_files.append(path)
                continue
            try:
                target = safe_join(self.project_path, path)
                if os.path.isfile(target) or os.path.islink(target):
                    os.remove(target)
                    report.deleted_files.append(path)
                else:
                    logger.info("File not found (already deleted?)", path=path)
            except (OSError, ValueError) as e:
                logger.error("Failed to delete file", path=path, error=str(e))
                report.failed_files.append({"path": path, "error": str(e)})

        # 5. Directories emptied by the deletions
        report.deleted_directories = prune_empty_dirs(self.project_path,
                                                      report.deleted_files + removed_manifests)

        logger.info("Deleted module from project", project=self.project_name,
                    deleted=len(report.deleted_files),
                    directories=len(report.deleted_directories),
                    reverted=len(report.reverted_registrations))
        return report
