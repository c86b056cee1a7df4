"""Manifest patching: register and revert module entries in project manifests.

A manifest is edited as a literal block (``export default { ... }``,
``types: [ ... ]``, ``park: [ ... ]``) located by delimiter matching that skips
strings and comments. Entries are inserted and removed as whole top-level
elements, and removal consumes exactly the separator and whitespace that
insertion added, so register followed by revert restores the original text.
"""

import functools
import os
import re
from dataclasses import dataclass, field

import structlog

from core.errors import PatchFailure
from utils.folder_naming import (
    PAGE_REGISTRY_PATH,
    SCSS_INDEX_PATH,
    bundle_member_names,
    module_dir,
    registry_entry,
    registry_path,
    safe_join,
    scss_partial,
)

logger = structlog.get_logger(__name__)

REGISTRY_BLOCK = r"(?:export\s+default|module\.exports\s*=)\s*\{"
TYPES_BLOCK = r"\btypes\s*:\s*\["
PARK_BLOCK = r"\bpark\s*:\s*\["

IMPORT_TEMPLATE = '@import "./scss/{subdir}/_{name}";'
SECTION_COMMENTS = {"components": "//Components", "pages": "//Pages"}

# Written when a project has no registry for a module type yet; delete only
# removes a registry whose content is exactly this again.
CREATED_REGISTRY = "// Module registry created by the Apostrophe module generator\nexport default {\n};\n"

_CLOSERS = {"{": "}", "[": "]", "(": ")"}
_QUOTES = "'\"`"
_KEY_RE = re.compile(r"""(['"]?)([\w@/.-]+)\1\s*:""")
_FIELD_RE = re.compile(r"""\b(name|type)\s*:\s*(['"])(.*?)\2""")
_SECTION_RE = re.compile(r"^//[A-Z]", re.MULTILINE)


# ---------------------------------------------------------------------------
# Literal scanning
# ---------------------------------------------------------------------------

def _skip_string(text, i):
    """Index just past the string literal opening at text[i]."""
    quote = text[i]
    i += 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == quote:
            return i + 1
        i += 1
    raise PatchFailure("Unterminated string literal")


def _skip_comment(text, i):
    """Index just past a comment opening at text[i]; i itself if there is none."""
    if text.startswith("//", i):
        end = text.find("\n", i)
        return len(text) if end == -1 else end
    if text.startswith("/*", i):
        end = text.find("*/", i + 2)
        if end == -1:
            raise PatchFailure("Unterminated block comment")
        return end + 2
    return i


def _skip_blank(text, i, end):
    """Advance past whitespace and comments, stopping at end."""
    while i < end:
        if text[i].isspace():
            i += 1
            continue
        j = _skip_comment(text, i)
        if j == i:
            break
        i = j
    return min(i, end)


def find_closing(text, open_index):
    """Index of the delimiter that closes text[open_index]."""
    stack = [_CLOSERS[text[open_index]]]
    i = open_index + 1
    while i < len(text):
        ch = text[i]
        if ch in _QUOTES:
            i = _skip_string(text, i)
            continue
        if ch == "/":
            j = _skip_comment(text, i)
            if j != i:
                i = j
                continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ")]}":
            if ch != stack.pop():
                raise PatchFailure(f"Mismatched '{ch}' at offset {i}")
            if not stack:
                return i
        i += 1
    raise PatchFailure("Unbalanced delimiters")


def _ignored_ranges(text):
    """(start, end) of every string literal and comment in text."""
    ranges = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in _QUOTES:
            end = _skip_string(text, i)
        elif ch == "/" and _skip_comment(text, i) != i:
            end = _skip_comment(text, i)
        else:
            i += 1
            continue
        ranges.append((i, end))
        i = end
    return ranges


def _line_indent(text, index):
    start = text.rfind("\n", 0, index) + 1
    line = text[start:index]
    return line[:len(line) - len(line.lstrip())]


@dataclass
class LiteralBlock:
    """An object or array literal inside a manifest's text."""

    text: str
    open: int       # index of the opening delimiter
    close: int      # index of the matching closing delimiter

    @classmethod
    def find(cls, text, pattern):
        """Locate the first match of pattern that sits in code, not in a string or comment."""
        ignored = _ignored_ranges(text)
        for match in re.finditer(pattern, text):
            open_index = match.end() - 1
            if any(s <= match.start() < e or s <= open_index < e for s, e in ignored):
                continue
            return cls(text, open_index, find_closing(text, open_index))
        return None

    def elements(self):
        """Spans of top-level elements.

        A span runs from the element's first non-blank character, leading
        comments included, to the end of its code. Comments on the same line
        after the element's separator belong to the element and stay outside
        its span.
        """
        spans = []
        first = code_end = None
        same_line = False
        i = self.open + 1
        while i < self.close:
            ch = self.text[i]
            if ch.isspace():
                if ch == "\n":
                    same_line = False
                i += 1
                continue
            if ch == "/":
                j = _skip_comment(self.text, i)
                if j != i:
                    if first is None and not same_line:
                        first = i
                    i = j
                    continue
            if ch == ",":
                if code_end is not None:
                    spans.append((first, code_end))
                first = code_end = None
                same_line = True
                i += 1
                continue
            if first is None:
                first = i
            if ch in _QUOTES:
                i = _skip_string(self.text, i)
            elif ch in _CLOSERS:
                i = find_closing(self.text, i) + 1
            else:
                i += 1
            code_end = i
        if code_end is not None:
            spans.append((first, code_end))
        return spans

    def _same_line_comments_end(self, index):
        """End of the comments that follow index on its own line."""
        end = i = index
        while i < self.close:
            while i < self.close and self.text[i] in " \t":
                i += 1
            j = _skip_comment(self.text, i)
            if j == i:
                break
            end = i = j
        return end

    def element_text(self, span):
        """Element source with any leading comments dropped."""
        start, end = span
        return self.text[_skip_blank(self.text, start, end):end]

    def indent(self):
        elements = self.elements()
        if elements:
            start = elements[0][0]
            line_start = self.text.rfind("\n", 0, start) + 1
            prefix = self.text[line_start:start]
            if not prefix.strip():
                return prefix
        return _line_indent(self.text, self.close) + "  "

    def insert(self, entry):
        """Return the text with entry appended as the last element."""
        indent = self.indent()
        elements = self.elements()
        if not elements:
            at = self.open + 1
            return self.text[:at] + "\n" + indent + entry + self.text[at:]
        last_end = elements[-1][1]
        after = _skip_blank(self.text, last_end, self.close)
        if after < self.close and self.text[after] == ",":
            at = after + 1
            return self.text[:at] + "\n" + indent + entry + "," + self.text[at:]
        # The separator goes right after the code; a same-line comment keeps its place
        tail = self._same_line_comments_end(last_end)
        return (self.text[:last_end] + "," + self.text[last_end:tail]
                + "\n" + indent + entry + self.text[tail:])

    def remove(self, span):
        """Return the text without the element at span and its separator."""
        start, end = span
        ws = start
        while ws > self.open + 1 and self.text[ws - 1].isspace():
            ws -= 1
        after = _skip_blank(self.text, end, self.close)
        if after < self.close and self.text[after] == ",":
            return self.text[:ws] + self.text[after + 1:]
        # Last element: drop the separator that would otherwise dangle
        previous = [e for _, e in self.elements() if e <= start]
        if previous:
            comma = _skip_blank(self.text, previous[-1], start)
            if self.text[comma] == ",":
                return self.text[:comma] + self.text[comma + 1:ws] + self.text[end:]
        return self.text[:ws] + self.text[end:]


def _js_string(value):
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def _object_entry(fields, indent):
    inner = indent + "  "
    body = ",\n".join(f"{inner}{key}: {_js_string(value)}" for key, value in fields)
    return "{\n" + body + "\n" + indent + "}"


# ---------------------------------------------------------------------------
# Module registries (modules/{pieces,pages,widgets}/modules.js)
# ---------------------------------------------------------------------------

def _registry_block(text):
    block = LiteralBlock.find(text, REGISTRY_BLOCK)
    if block is None:
        raise PatchFailure("No exported object literal in module registry")
    return block


def _find_key(block, key):
    for span in block.elements():
        match = _KEY_RE.match(block.element_text(span))
        if match and match.group(2) == key:
            return span
    return None


def register_module(text, key):
    block = _registry_block(text)
    if _find_key(block, key) is not None:
        return text
    return block.insert(f"{_js_string(key)}: {{}}")


def revert_module(text, key):
    while True:
        block = _registry_block(text)
        span = _find_key(block, key)
        if span is None:
            return text
        text = block.remove(span)


# ---------------------------------------------------------------------------
# Page-type registry (modules/@apostrophecms/page/index.js)
# ---------------------------------------------------------------------------

def _entry_names(block, span):
    return {m.group(3) for m in _FIELD_RE.finditer(block.element_text(span))}


def _find_page(block, name):
    for span in block.elements():
        if name in _entry_names(block, span):
            return span
    return None


def page_registered(text, name):
    for pattern in (TYPES_BLOCK, PARK_BLOCK):
        block = LiteralBlock.find(text, pattern)
        if block is not None and _find_page(block, name) is not None:
            return True
    return False


def register_page_type(text, name, label):
    """Add {name, label} to the types list."""
    if page_registered(text, name):
        return text
    block = LiteralBlock.find(text, TYPES_BLOCK)
    if block is None:
        raise PatchFailure("No types list in page registry")
    return block.insert(_object_entry([("name", name), ("label", label)], block.indent()))


def register_parked_page(text, name, title, slug):
    """Add {title, slug, type, parkedId} to the park list."""
    if page_registered(text, name):
        return text
    block = LiteralBlock.find(text, PARK_BLOCK)
    if block is None:
        raise PatchFailure("No park list in page registry")
    fields = [("title", title), ("slug", slug), ("type", name), ("parkedId", name)]
    return block.insert(_object_entry(fields, block.indent()))


def revert_page(text, name):
    """Remove entries for name from both the types and the park list."""
    for pattern in (TYPES_BLOCK, PARK_BLOCK):
        while True:
            block = LiteralBlock.find(text, pattern)
            span = _find_page(block, name) if block is not None else None
            if span is None:
                break
            text = block.remove(span)
    return text


# ---------------------------------------------------------------------------
# Stylesheet aggregator (modules/asset/ui/src/index.scss)
# ---------------------------------------------------------------------------

def import_statement(subdir, name):
    return IMPORT_TEMPLATE.format(subdir=subdir, name=name)


def register_import(text, subdir, name):
    """Add an @import line, inside its //Components or //Pages section if present."""
    statement = import_statement(subdir, name)
    if statement in text:
        return text

    section = re.search(r"^" + re.escape(SECTION_COMMENTS[subdir]) + r".*$", text, re.MULTILINE)
    if section is None:
        if not text or text.endswith("\n"):
            return text + statement + "\n"
        return text + "\n" + statement

    next_section = _SECTION_RE.search(text, section.end())
    region_end = next_section.start() if next_section else len(text)
    content_end = section.start() + len(text[section.start():region_end].rstrip())
    newline = text.find("\n", content_end, region_end)
    if newline == -1:
        return text[:region_end] + "\n" + statement + text[region_end:]
    at = newline + 1
    return text[:at] + statement + "\n" + text[at:]


def revert_import(text, subdir, name):
    """Remove the @import line for a partial, with the line break it was added with."""
    statement = import_statement(subdir, name)
    while True:
        index = text.find(statement)
        if index == -1:
            return text
        end = index + len(statement)
        if text.startswith("\n", end):
            text = text[:index] + text[end + 1:]
        elif index > 0 and text[index - 1] == "\n":
            text = text[:index - 1] + text[end:]
        else:
            text = text[:index] + text[end:]


# ---------------------------------------------------------------------------
# Registration planning
# ---------------------------------------------------------------------------

@dataclass
class RegistrationPlan:
    """What a module registers, derived from its descriptor and file paths."""

    modules: list = field(default_factory=list)     # [(subdir, key)]
    page: str | None = None                         # page module name
    partials: list = field(default_factory=list)    # [(subdir, partial)]


def plan_registrations(descriptor, paths):
    """Derive the registrations for a module; shared by save and delete."""
    paths = list(paths)
    plan = RegistrationPlan()
    name = descriptor.name

    def has_dir(directory):
        prefix = directory + "/"
        return any(p.startswith(prefix) for p in paths)

    if descriptor.type == "bundle":
        parent = module_dir("bundle", name)
        if has_dir(parent):
            plan.modules.append(registry_entry("bundle", name))
            page_name = f"{name}-page"
            if has_dir(f"{parent}/{page_name}"):
                plan.page = page_name
        else:
            # Separate modules: each member registers on its own
            for module_type, member in bundle_member_names(name):
                if has_dir(module_dir(module_type, member)):
                    plan.modules.append(registry_entry(module_type, member))
                    if module_type == "page":
                        plan.page = member
    else:
        plan.modules.append(registry_entry(descriptor.type, name))
        if descriptor.type == "page":
            plan.page = name

    plan.partials = stylesheet_partials(paths)
    return plan


def stylesheet_partials(paths):
    """Distinct (subdir, partial) pairs for the stylesheet partials among paths."""
    partials = []
    for path in paths:
        partial = scss_partial(path)
        if partial and partial not in partials:
            partials.append(partial)
    return partials


# ---------------------------------------------------------------------------
# File-level patching
# ---------------------------------------------------------------------------

def patch_file(path, transform):
    """Read-modify-write a manifest; return True when its content changed."""
    with open(path, encoding="utf-8", newline="") as f:
        original = f.read()
    updated = transform(original)
    if updated == original:
        return False
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(updated)
    return True


class ManifestPatcher:
    """Applies and reverts registrations in one project's manifest files."""

    def __init__(self, project_path):
        self.project_path = project_path

    def _path(self, relative_path):
        return safe_join(self.project_path, relative_path)

    def register_module(self, subdir, key):
        path = self._path(registry_path(subdir))
        if not os.path.exists(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8", newline="") as f:
                f.write(CREATED_REGISTRY)
            logger.info("Created module registry", path=registry_path(subdir))
        return patch_file(path, functools.partial(register_module, key=key))

    def revert_module(self, subdir, key):
        path = self._path(registry_path(subdir))
        if not os.path.exists(path):
            return False
        return patch_file(path, functools.partial(revert_module, key=key))

    def drop_created_registry(self, subdir):
        """Remove a registry that save created and that is empty again. Returns True if removed."""
        path = self._path(registry_path(subdir))
        if not os.path.exists(path):
            return False
        with open(path, encoding="utf-8", newline="") as f:
            if f.read() != CREATED_REGISTRY:
                return False
        os.remove(path)
        logger.info("Removed module registry", path=registry_path(subdir))
        return True

    def register_page(self, name, label, park_url=None):
        """Register a page; parked when park_url is given. Returns (kind, details)."""
        path = self._path(PAGE_REGISTRY_PATH)
        if not os.path.exists(path):
            logger.warning("Page registry not found", path=PAGE_REGISTRY_PATH)
            return None, None
        if park_url:
            changed = patch_file(path, functools.partial(
                register_parked_page, name=name, title=label, slug=park_url))
            details = {"title": label, "slug": park_url, "type": name, "parkedId": name}
            kind = "park"
        else:
            changed = patch_file(path, functools.partial(register_page_type, name=name, label=label))
            details = {"name": name, "label": label}
            kind = "types"
        if not changed:
            return None, None
        return kind, details

    def revert_page(self, name):
        path = self._path(PAGE_REGISTRY_PATH)
        if not os.path.exists(path):
            return False
        return patch_file(path, functools.partial(revert_page, name=name))

    def register_imports(self, partials):
        path = self._path(SCSS_INDEX_PATH)
        if not partials or not os.path.exists(path):
            return False

        def add_all(text):
            for subdir, name in partials:
                text = register_import(text, subdir, name)
            return text

        return patch_file(path, add_all)

    def revert_imports(self, partials):
        path = self._path(SCSS_INDEX_PATH)
        if not partials or not os.path.exists(path):
            return False

        def remove_all(text):
            for subdir, name in partials:
                text = revert_import(text, subdir, name)
            return text

        return patch_file(path, remove_all)
