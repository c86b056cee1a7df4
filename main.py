#!/usr/bin/env python3
"""Apostrophe module generator.

Usage:
    python main.py generate --project my-site --type piece --name review --label Review
    python main.py generate --project my-site --type bundle --name event --label Event \\
        --include piece page widget --save
    python main.py chat --project my-site "a product piece with price and description"
    python main.py save --project my-site --type piece --name review --files result.json
    python main.py delete --project-path ../my-site --type piece --name review --files result.json
    python main.py history list
    python main.py history show 2026-01-05_10-00-00_review
    python main.py tools
"""

import argparse
import json
import os
import sys

from core.bridge import ToolBridge
from core.errors import GenerationError, HistoryNotFound, ToolError
from core.history import HistoryStore
from core.orchestrator import Orchestrator
from core.project import ProjectMutator, discover_projects, find_project
from core.state import BundleConfig, FileEntry, GenerationRequest, ModuleDescriptor, MODULE_TYPES
from utils.logging_setup import setup_logging


def _resolve_project(args):
    """Return (path, name) from --project-path or a discovered project id."""
    if getattr(args, "project_path", None):
        path = os.path.abspath(args.project_path)
        return path, os.path.basename(path)
    project = find_project(args.project, discover_projects(args.projects_root))
    if not project:
        raise SystemExit(f"Project not found: {args.project}")
    return project["path"], project["name"]


def _load_files(path):
    """Read files from a JSON list, or an object with a "files" list."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("files", [])
    return [FileEntry.from_dict(item) for item in data]


def _print_progress(event):
    print(f"  [{event.percentage:3d}%] {event.stage:10s} {event.message}")


def _print_report(report):
    for key, value in report.to_dict().items():
        if key == "details":
            continue
        print(f"  {key}: {value}")


def cmd_generate(args):
    bundle_config = None
    if args.type == "bundle":
        include = set(args.include or ["piece", "page", "widget"])
        bundle_config = BundleConfig(
            include_piece="piece" in include,
            include_page="page" in include,
            include_widget="widget" in include,
            park_page="page" in include,
            park_url=args.park_url,
        )
    request = GenerationRequest(
        type=args.type,
        project_id=args.project,
        name=args.name,
        label=args.label,
        description=args.description or "",
        include_bem_styles=not args.no_bem,
        full_design=args.full_design,
        bundle_config=bundle_config,
        park_page=bool(args.park_url),
        park_url=args.park_url,
    )

    orchestrator = Orchestrator(ToolBridge(timeout=args.timeout))
    try:
        result = orchestrator.generate_result(request, on_progress=_print_progress)
    except GenerationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"\nGenerated {len(result.files)} file(s):")
    for f in result.files:
        print(f"  {f.path}")

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2)
        print(f"\nResult written to {args.output}")

    if args.save:
        project_path, project_name = _resolve_project(args)
        mutator = ProjectMutator(project_path, history=HistoryStore(), project_name=project_name)
        descriptor = ModuleDescriptor(type=args.type, name=args.name, label=args.label)
        report = mutator.save(descriptor, result.files, park_page=bool(args.park_url),
                              park_url=args.park_url, full_design=args.full_design,
                              description=args.description)
        print(f"\n{report.message}")


def cmd_chat(args):
    orchestrator = Orchestrator(ToolBridge(timeout=args.timeout))
    try:
        payload = orchestrator.chat(args.project, args.request)
    except (GenerationError, ToolError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    parsed = payload.get("parsed") or {}
    print(f"Parsed as {parsed.get('moduleType', 'unknown')} \"{parsed.get('moduleName', 'unknown')}\""
          f" (confidence: {parsed.get('confidence', 'unknown')})")
    print(f"Generated {len(payload['files'])} file(s):")
    for f in payload["files"]:
        print(f"  {f.get('path')}")
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        print(f"\nResult written to {args.output}")


def cmd_save(args):
    project_path, project_name = _resolve_project(args)
    files = _load_files(args.files)
    mutator = ProjectMutator(project_path, history=HistoryStore(), project_name=project_name)
    descriptor = ModuleDescriptor(type=args.type, name=args.name, label=args.label or "")
    report = mutator.save(descriptor, files, park_page=bool(args.park_url),
                          park_url=args.park_url, full_design=args.full_design,
                          description=args.description)
    print(report.message)
    if args.verbose:
        _print_report(report)


def cmd_delete(args):
    project_path, project_name = _resolve_project(args)
    if args.history_id:
        _, files = HistoryStore().retrieve(args.history_id)
    else:
        files = _load_files(args.files)
    descriptor = None
    if args.type and args.name:
        descriptor = ModuleDescriptor(type=args.type, name=args.name)
    report = ProjectMutator(project_path, project_name=project_name).delete(files, descriptor)
    print(f"{report.message} from {project_name}")
    if args.verbose:
        for path in report.deleted_files:
            print(f"  deleted   {path}")
        for directory in report.deleted_directories:
            print(f"  removed   {directory}/")
        for item in report.reverted_registrations:
            print(f"  reverted  {item}")
        for failure in report.failed_files + report.failed_registrations:
            print(f"  FAILED    {failure}")


def cmd_history(args):
    store = HistoryStore()
    if args.action == "list":
        records = store.list()
        if not records:
            print("No history.")
        for record in records:
            print(f"  {record.id:45s} {record.module_type:7s} {record.file_count:3d} file(s)"
                  f"  {record.project_name}")
    elif args.action == "show":
        record, files = store.retrieve(args.id)
        print(json.dumps(record.to_dict(), indent=2))
        for f in files:
            print(f"  {f.path}")
    elif args.action == "delete":
        store.delete(args.id)
        print(f"Deleted {args.id}")
    elif args.action == "clear":
        print(f"Removed {store.delete_all()} history item(s)")


def cmd_tools(args):
    for tool in ToolBridge(timeout=args.timeout).list_tools():
        print(f"  {tool.get('name', '?'):32s} {tool.get('description', '')}")


def _add_project_args(parser, required=True):
    group = parser.add_mutually_exclusive_group(required=required)
    group.add_argument("--project", help="Project id (directory name under the projects root)")
    group.add_argument("--project-path", help="Path to the project directory")
    parser.add_argument("--projects-root", help="Where to look for projects by id")


def main():
    parser = argparse.ArgumentParser(
        prog="apostrophe-gen",
        description="Generate Apostrophe CMS modules and install them into projects",
    )
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command")

    gen_parser = subparsers.add_parser("generate", help="Generate a module")
    gen_parser.add_argument("--project", required=True, help="Project id")
    gen_parser.add_argument("--project-path", help="Project directory, for --save")
    gen_parser.add_argument("--projects-root", help="Where to look for projects by id")
    gen_parser.add_argument("--type", required=True, choices=sorted(MODULE_TYPES))
    gen_parser.add_argument("--name", required=True, help="kebab-case module name")
    gen_parser.add_argument("--label", required=True, help="Human-readable label")
    gen_parser.add_argument("--description", help="What the module is for")
    gen_parser.add_argument("--include", nargs="+", choices=["piece", "page", "widget"],
                            help="Bundle members (default: all three)")
    gen_parser.add_argument("--park-url", help="Park the page at this URL")
    gen_parser.add_argument("--full-design", action="store_true")
    gen_parser.add_argument("--no-bem", action="store_true", help="Skip BEM stylesheet")
    gen_parser.add_argument("--timeout", type=float, help="Seconds per tool call")
    gen_parser.add_argument("--output", help="Write the result as JSON to this file")
    gen_parser.add_argument("--save", action="store_true",
                            help="Save the result into the project")

    chat_parser = subparsers.add_parser("chat", help="Generate from a plain-language request")
    chat_parser.add_argument("--project", required=True, help="Project id")
    chat_parser.add_argument("request", help="What to build, e.g. \"a product piece with price\"")
    chat_parser.add_argument("--timeout", type=float, help="Seconds per tool call")
    chat_parser.add_argument("--output", help="Write the result as JSON to this file")

    save_parser = subparsers.add_parser("save", help="Save generated files into a project")
    _add_project_args(save_parser)
    save_parser.add_argument("--type", required=True, choices=sorted(MODULE_TYPES))
    save_parser.add_argument("--name", required=True)
    save_parser.add_argument("--label")
    save_parser.add_argument("--description")
    save_parser.add_argument("--files", required=True, help="JSON file with the generated files")
    save_parser.add_argument("--park-url")
    save_parser.add_argument("--full-design", action="store_true")
    save_parser.add_argument("--verbose", action="store_true")

    del_parser = subparsers.add_parser("delete", help="Remove a saved module from a project")
    _add_project_args(del_parser)
    del_parser.add_argument("--type", choices=sorted(MODULE_TYPES))
    del_parser.add_argument("--name")
    files_group = del_parser.add_mutually_exclusive_group(required=True)
    files_group.add_argument("--files", help="JSON file listing the files to remove")
    files_group.add_argument("--history-id", help="Take the file list from a history item")
    del_parser.add_argument("--verbose", action="store_true")

    hist_parser = subparsers.add_parser("history", help="Browse saved generations")
    hist_sub = hist_parser.add_subparsers(dest="action", required=True)
    hist_sub.add_parser("list")
    hist_sub.add_parser("show").add_argument("id")
    hist_sub.add_parser("delete").add_argument("id")
    hist_sub.add_parser("clear")

    tools_parser = subparsers.add_parser("tools", help="List the generator tool's capabilities")
    tools_parser.add_argument("--timeout", type=float)

    args = parser.parse_args()
    setup_logging(args.log_level)

    commands = {
        "generate": cmd_generate,
        "chat": cmd_chat,
        "save": cmd_save,
        "delete": cmd_delete,
        "history": cmd_history,
        "tools": cmd_tools,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    try:
        command(args)
    except (ToolError, HistoryNotFound) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
