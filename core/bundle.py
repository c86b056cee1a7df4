"""Bundle composition: merge piece/page/widget output under one parent module."""

from core.state import FileEntry, GenerationResult, ModuleDescriptor
from utils.folder_naming import ASSET_DIR, bundle_member_names, folder_name, module_dir

_LABEL_SUFFIXES = {"piece": "", "page": " Page", "widget": " Widget"}


def member_label(module_type, label):
    """Label of one bundle member: "Event" becomes "Event Page" for the page."""
    return f"{label}{_LABEL_SUFFIXES[module_type]}"


def bundle_modules_for(name, bundle_config, label=""):
    """Ordered descriptors (piece, page, widget) selected by a bundle config."""
    wanted = {
        "piece": bundle_config.include_piece,
        "page": bundle_config.include_page,
        "widget": bundle_config.include_widget,
    }
    return [
        ModuleDescriptor(type=module_type, name=member, label=member_label(module_type, label))
        for module_type, member in bundle_member_names(name)
        if wanted[module_type]
    ]


def is_real_bundle(bundle_config):
    """A piece plus at least one page or widget needs a parent wrapper."""
    return bool(bundle_config.include_piece) and bundle_config.module_count > 1


def parent_index_source():
    return (
        "export default {\n"
        "  options: {\n"
        "    ignoreNoCodeWarning: true\n"
        "  }\n"
        "};\n"
    )


def internal_registry_source(modules):
    entries = ",\n".join(f"  '{m.name}': {{}}" for m in modules)
    return f"export default {{\n{entries}\n}};\n"


def nest_path(path, name, modules):
    """Relocate a module file into modules/pieces/{name}-module/; stylesheets stay global."""
    if path.startswith(ASSET_DIR):
        return path
    parent = module_dir("bundle", name)
    for module in modules:
        source = module_dir(module.type, module.name) + "/"
        if path.startswith(source):
            return f"{parent}/{folder_name(module.type, module.name)}/{path[len(source):]}"
    return path


def compose_bundle(name, modules, files, bundle_config):
    """Build the final GenerationResult for a multi-module request.

    ``modules`` and ``files`` are in generation order. Callers handle the
    piece-only case before getting here; it is returned unbundled if seen.
    """
    if bundle_config.include_piece and bundle_config.module_count == 1:
        return GenerationResult(
            success=True, files=list(files), module_name=name, module_type="piece",
            message=f"Generated {len(files)} file(s) for {name}",
        )

    if not is_real_bundle(bundle_config):
        return GenerationResult(
            success=True,
            files=list(files),
            module_name=name,
            module_type="bundle",
            is_bundle=True,
            is_real_bundle=False,
            bundle_modules=list(modules),
            bundle_config=bundle_config,
            message=f"Generated {len(modules)} separate modules",
        )

    parent = module_dir("bundle", name)
    nested = [FileEntry(path=nest_path(f.path, name, modules), content=f.content) for f in files]
    wrapper = [
        FileEntry(path=f"{parent}/index.js", content=parent_index_source()),
        FileEntry(path=f"{parent}/modules.js", content=internal_registry_source(modules)),
    ]
    return GenerationResult(
        success=True,
        files=wrapper + nested,
        module_name=name,
        module_type="bundle",
        is_bundle=True,
        is_real_bundle=True,
        bundle_modules=list(modules),
        bundle_config=bundle_config,
        message=f"Generated bundle with {len(modules)} internal modules",
    )
