"""Module folder naming: derived names, project paths, containment checks.

Save and delete both derive registry keys and paths from here, so the two
directions always agree on what was registered.
"""

import os
import re

TYPE_DIRS = {
    "piece": "pieces",
    "page": "pages",
    "widget": "widgets",
}

PAGE_REGISTRY_PATH = "modules/@apostrophecms/page/index.js"
SCSS_INDEX_PATH = "modules/asset/ui/src/index.scss"
SCSS_DIR = "modules/asset/ui/src/scss/"
ASSET_DIR = "modules/asset/"
# Shared helper functions used by many modules; never deleted automatically
GLOBAL_SCRIPT_PATH = "modules/asset/ui/src/index.js"

_PARTIAL_RE = re.compile(r"/scss/(components|pages)/_([^/]+)\.scss$")


def widget_name(name):
    """Widgets always carry a -widget suffix, exactly once."""
    return name if name.endswith("-widget") else f"{name}-widget"


def folder_name(module_type, name):
    if module_type == "widget":
        return widget_name(name)
    if module_type == "bundle":
        return f"{name}-module"
    return name


def module_dir(module_type, name):
    """Project-relative directory of a module, e.g. modules/widgets/hero-widget."""
    subdir = "pieces" if module_type == "bundle" else TYPE_DIRS[module_type]
    return f"modules/{subdir}/{folder_name(module_type, name)}"


def registry_entry(module_type, name):
    """Return (subdirectory, key) of the modules.js entry for a module."""
    subdir = "pieces" if module_type == "bundle" else TYPE_DIRS[module_type]
    return subdir, folder_name(module_type, name)


def registry_path(subdir):
    return f"modules/{subdir}/modules.js"


def bundle_member_names(name):
    """Derived names of the modules a bundle can contain, in generation order."""
    return [("piece", name), ("page", f"{name}-page"), ("widget", f"{name}-widget")]


def default_park_url(name):
    return f"/{name}s"


def scss_partial_path(module_type, name):
    subdir = "pages" if module_type == "page" else "components"
    return f"{SCSS_DIR}{subdir}/_{name}.scss"


def scss_partial(path):
    """Return (subdir, partial name) for a stylesheet partial path, else None."""
    if not (path.startswith(SCSS_DIR) and path.endswith(".scss")):
        return None
    match = _PARTIAL_RE.search(path)
    if not match:
        return None
    return match.group(1), match.group(2)


def safe_join(root, relative_path):
    """Join a project-relative path under root, refusing paths that escape it."""
    full_path = os.path.join(root, *relative_path.split("/"))
    resolved = os.path.realpath(full_path)
    if not resolved.startswith(os.path.realpath(root) + os.sep):
        raise ValueError(f"Path escapes project directory: {relative_path}")
    return full_path
