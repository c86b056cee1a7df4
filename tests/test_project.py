"""Tests for core.project: save, delete, and their round trip on a real directory."""

import os
import tempfile

import pytest

from core.bundle import bundle_modules_for, compose_bundle
from core.history import HistoryStore
from core.project import (
    ProjectMutator,
    discover_projects,
    find_project,
    merge_global_script,
    prune_empty_dirs,
)
from core.state import BundleConfig, FileEntry, ModuleDescriptor

MANIFESTS = {
    "modules/pieces/modules.js": "export default {\n  'article': {}\n};\n",
    "modules/pages/modules.js": "export default {\n  'default-page': {}\n};\n",
    "modules/widgets/modules.js": "export default {\n};\n",
    "modules/@apostrophecms/page/index.js": (
        "export default {\n"
        "  options: {\n"
        "    types: [\n"
        "      {\n"
        "        name: 'default-page',\n"
        "        label: 'Default'\n"
        "      }\n"
        "    ],\n"
        "    park: []\n"
        "  }\n"
        "};\n"
    ),
    "modules/asset/ui/src/index.scss": (
        "//Components\n"
        "@import \"./scss/components/_header\";\n"
        "\n"
        "//Pages\n"
        "@import \"./scss/pages/_home\";\n"
    ),
    "modules/asset/ui/src/scss/components/_header.scss": ".header {}\n",
    "modules/asset/ui/src/scss/pages/_home.scss": ".home {}\n",
}


def _write(root, relative_path, content):
    path = os.path.join(root, *relative_path.split("/"))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def _read(root, relative_path):
    with open(os.path.join(root, *relative_path.split("/")), encoding="utf-8", newline="") as f:
        return f.read()


def _snapshot(root):
    files = {}
    for dirpath, _, filenames in os.walk(root):
        for filename in filenames:
            full_path = os.path.join(dirpath, filename)
            relative = os.path.relpath(full_path, root).replace(os.sep, "/")
            files[relative] = _read(root, relative)
    return files


def _dirs(root):
    return sorted(os.path.relpath(d, root) for d, _, _ in os.walk(root))


@pytest.fixture
def project():
    with tempfile.TemporaryDirectory() as tmpdir:
        for path, content in MANIFESTS.items():
            _write(tmpdir, path, content)
        yield tmpdir


def _page_files(name="about"):
    return [
        FileEntry(f"modules/pages/{name}/index.js", "export default { extend: '@apostrophecms/page-type' };\n"),
        FileEntry(f"modules/pages/{name}/views/page.html", "<main class=\"about\"></main>\n"),
        FileEntry(f"modules/asset/ui/src/scss/pages/_{name}.scss", ".about {}\n"),
    ]


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def test_discover_projects():
    with tempfile.TemporaryDirectory() as tmpdir:
        _write(tmpdir, "my-site/app.js", "apostrophe({\n  shortName: 'mysite',\n});\n")
        _write(tmpdir, "not-a-project/app.js", "console.log('hi');\n")
        _write(tmpdir, "node_modules/app.js", "shortName: 'x'\n")
        projects = discover_projects(tmpdir)
        assert projects == [{
            "id": "my-site", "name": "My Site",
            "path": os.path.join(tmpdir, "my-site"), "database": "mysite",
        }]
        assert find_project("my-site", projects)["database"] == "mysite"
        assert find_project("other", projects) is None


# ---------------------------------------------------------------------------
# Save
# ---------------------------------------------------------------------------

def test_save_piece(project):
    files = [
        FileEntry("modules/pieces/review/index.js", "export default {};\n"),
        FileEntry("modules/pieces/review/views/show.html", "<div class=\"review\"></div>\n"),
        FileEntry("modules/asset/ui/src/scss/components/_review.scss", ".review {}\n"),
    ]
    with tempfile.TemporaryDirectory() as history_dir:
        mutator = ProjectMutator(project, history=HistoryStore(history_dir), project_name="My Site")
        report = mutator.save(ModuleDescriptor("piece", "review", "Review"), files,
                              description="Customer reviews")

        assert report.saved_files == [f.path for f in files]
        assert report.created_scss
        assert "'review': {}" in _read(project, "modules/pieces/modules.js")
        assert '@import "./scss/components/_review";' in _read(project, "modules/asset/ui/src/index.scss")
        assert report.page_registration_type is None
        assert report.history_id.endswith("_review")
        assert HistoryStore(history_dir).list()[0].description == "Customer reviews"


def test_save_without_template_skips_scss_import(project):
    files = [
        FileEntry("modules/pieces/review/index.js", "export default {};\n"),
        FileEntry("modules/asset/ui/src/scss/components/_review.scss", ".review {}\n"),
    ]
    report = ProjectMutator(project).save(ModuleDescriptor("piece", "review"), files)
    assert not report.created_scss
    assert _read(project, "modules/asset/ui/src/index.scss") == MANIFESTS["modules/asset/ui/src/index.scss"]


def test_save_page_types_and_parked(project):
    report = ProjectMutator(project).save(ModuleDescriptor("page", "about", "About"), _page_files())
    assert report.page_registration_type == "types"
    assert report.page_registration_details == {"name": "about", "label": "About"}

    report = ProjectMutator(project).save(ModuleDescriptor("page", "contact", "Contact"),
                                          _page_files("contact"), park_page=True,
                                          park_url="/contact")
    assert report.page_registration_type == "park"
    assert "slug: '/contact'" in _read(project, "modules/@apostrophecms/page/index.js")


def test_save_park_url_without_flag_uses_types(project):
    report = ProjectMutator(project).save(ModuleDescriptor("page", "about", "About"),
                                          _page_files(), park_url="/about")
    assert report.page_registration_type == "types"


def test_save_rejects_escaping_path(project):
    report = ProjectMutator(project).save(
        ModuleDescriptor("piece", "review"),
        [FileEntry("modules/pieces/review/index.js", "x"), FileEntry("../evil.js", "x")],
    )
    assert report.saved_files == ["modules/pieces/review/index.js"]
    assert report.failed_files[0]["path"] == "../evil.js"
    assert not os.path.exists(os.path.join(os.path.dirname(project), "evil.js"))


def test_save_records_broken_manifest(project):
    _write(project, "modules/pieces/modules.js", "const modules = 1;\n")
    report = ProjectMutator(project).save(ModuleDescriptor("piece", "review"),
                                          [FileEntry("modules/pieces/review/index.js", "x")])
    assert report.saved_files == ["modules/pieces/review/index.js"]
    assert report.failed_registrations[0]["manifest"] == "modules/pieces/modules.js"


def test_global_script_merged_not_overwritten(project):
    _write(project, "modules/asset/ui/src/index.js", "export function setupMenu() {}\n")
    files = [FileEntry("modules/asset/ui/src/index.js", "export function setupSlider() {}\n")]
    ProjectMutator(project).save(ModuleDescriptor("widget", "slider-widget"), files)
    content = _read(project, "modules/asset/ui/src/index.js")
    assert "setupMenu" in content and "setupSlider" in content

    report = ProjectMutator(project).save(ModuleDescriptor("widget", "slider-widget"), files)
    assert report.skipped_files == ["modules/asset/ui/src/index.js"]


def test_merge_global_script_rules():
    assert merge_global_script("", "export function a() {}") == "export function a() {}\n"
    assert merge_global_script("export function a() {}\n", "export function a() {}") is None
    with pytest.raises(ValueError, match="named exports"):
        merge_global_script("", "export default {}")


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

def test_page_save_delete_round_trip(project):
    before = _snapshot(project)
    before_dirs = _dirs(project)
    files = _page_files()
    descriptor = ModuleDescriptor("page", "about", "About")

    ProjectMutator(project).save(descriptor, files, park_page=True, park_url="/about")
    assert _snapshot(project) != before

    report = ProjectMutator(project).delete(files, descriptor)
    assert _snapshot(project) == before
    assert _dirs(project) == before_dirs
    assert sorted(report.deleted_files) == sorted(f.path for f in files)
    assert "modules/pages/about" in report.deleted_directories
    assert report.failed_registrations == []


def test_real_bundle_save_delete_round_trip(project):
    before = _snapshot(project)
    before_dirs = _dirs(project)
    config = BundleConfig(include_piece=True, include_page=True, include_widget=True)
    modules = bundle_modules_for("event", config, "Event")
    member_files = [
        FileEntry("modules/pieces/event/index.js", "piece\n"),
        FileEntry("modules/pages/event-page/index.js", "page\n"),
        FileEntry("modules/pages/event-page/views/index.html", "<main></main>\n"),
        FileEntry("modules/widgets/event-widget/index.js", "widget\n"),
        FileEntry("modules/widgets/event-widget/views/widget.html", "<div></div>\n"),
        FileEntry("modules/asset/ui/src/scss/components/_event.scss", ".event {}\n"),
        FileEntry("modules/asset/ui/src/scss/pages/_event-page.scss", ".event-page {}\n"),
    ]
    result = compose_bundle("event", modules, member_files, config)
    descriptor = ModuleDescriptor("bundle", "event", "Event")

    report = ProjectMutator(project).save(descriptor, result.files)
    assert report.page_registration_type == "park"
    assert report.page_registration_details["slug"] == "/events"
    assert report.page_registration_details["title"] == "Event Page"
    assert "'event-module': {}" in _read(project, "modules/pieces/modules.js")

    ProjectMutator(project).delete(result.files, descriptor)
    assert _snapshot(project) == before
    assert _dirs(project) == before_dirs


def test_separate_modules_save_delete_round_trip(project):
    before = _snapshot(project)
    files = [
        FileEntry("modules/pages/event-page/index.js", "page\n"),
        FileEntry("modules/widgets/event-widget/index.js", "widget\n"),
    ]
    descriptor = ModuleDescriptor("bundle", "event", "Event")
    report = ProjectMutator(project).save(descriptor, files)
    assert "'event-page': {}" in _read(project, "modules/pages/modules.js")
    assert report.page_registration_details["title"] == "Event Page"
    assert "title: 'Event Page'" in _read(project, "modules/@apostrophecms/page/index.js")
    assert "'event-widget': {}" in _read(project, "modules/widgets/modules.js")
    assert "event-module" not in _read(project, "modules/pieces/modules.js")

    ProjectMutator(project).delete(files, descriptor)
    assert _snapshot(project) == before


def test_round_trip_without_widget_registry(project):
    os.remove(os.path.join(project, "modules", "widgets", "modules.js"))
    os.rmdir(os.path.join(project, "modules", "widgets"))
    before = _snapshot(project)
    before_dirs = _dirs(project)
    files = [FileEntry("modules/widgets/hero-widget/index.js", "widget\n")]
    descriptor = ModuleDescriptor("widget", "hero-widget", "Hero")

    ProjectMutator(project).save(descriptor, files)
    assert "'hero-widget': {}" in _read(project, "modules/widgets/modules.js")

    report = ProjectMutator(project).delete(files, descriptor)
    assert _snapshot(project) == before
    assert _dirs(project) == before_dirs
    assert "modules/widgets" in report.deleted_directories
    assert report.deleted_files == ["modules/widgets/hero-widget/index.js"]


def test_delete_keeps_registry_project_already_had(project):
    files = [FileEntry("modules/widgets/hero-widget/index.js", "widget\n")]
    descriptor = ModuleDescriptor("widget", "hero-widget", "Hero")
    ProjectMutator(project).save(descriptor, files)
    ProjectMutator(project).delete(files, descriptor)
    assert _read(project, "modules/widgets/modules.js") == "export default {\n};\n"


def test_delete_skips_global_script(project):
    _write(project, "modules/asset/ui/src/index.js", "export function setupSlider() {}\n")
    files = [
        FileEntry("modules/widgets/slider-widget/index.js", "x"),
        FileEntry("modules/asset/ui/src/index.js", "export function setupSlider() {}\n"),
    ]
    _write(project, files[0].path, files[0].content)
    report = ProjectMutator(project).delete(files, ModuleDescriptor("widget", "slider-widget"))
    assert report.skipped_files == ["modules/asset/ui/src/index.js"]
    assert os.path.exists(os.path.join(project, "modules", "asset", "ui", "src", "index.js"))
    assert "shared function file(s) preserved" in report.message


def test_delete_missing_files_is_not_failure(project):
    report = ProjectMutator(project).delete([FileEntry("modules/pieces/ghost/index.js", "")])
    assert report.deleted_files == []
    assert report.failed_files == []


def test_delete_without_descriptor_still_reverts_imports(project):
    files = _page_files()
    ProjectMutator(project).save(ModuleDescriptor("page", "about", "About"), files)
    ProjectMutator(project).delete(files)
    assert '_about' not in _read(project, "modules/asset/ui/src/index.scss")
    # Registry entries need a descriptor to be derived
    assert "'about': {}" in _read(project, "modules/pages/modules.js")


def test_prune_is_idempotent(project):
    _write(project, "modules/pieces/review/views/show.html", "x")
    os.remove(os.path.join(project, "modules", "pieces", "review", "views", "show.html"))
    removed = prune_empty_dirs(project, ["modules/pieces/review/views/show.html"])
    assert removed == ["modules/pieces/review/views", "modules/pieces/review"]
    assert prune_empty_dirs(project, ["modules/pieces/review/views/show.html"]) == []
    assert os.path.isdir(os.path.join(project, "modules", "pieces"))
