"""Command line interface for CRM export imports."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

from .exceptions import ImportPipelineError, ParseError
from .extractors.file_parser import FileParser
from .loaders.api_loader import APILoader
from .loaders.base import BaseLoader
from .loaders.memory_loader import InMemoryLoader
from .models.session import ImportSettings, SessionStatus
from .orchestrator import ImportOrchestrator
from .services.error_resolution import ErrorWorkstation
from .services.mapping_engine import MappingEngine
from .services.schema_registry import SchemaRegistry
from .services.template_store import TemplateStore

logger = logging.getLogger(__name__)


def main(argv=None):
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="CRM Import Tool - Import CRM export files into the target CRM"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Inspect a file
    inspect_parser = subparsers.add_parser("inspect", help="Parse a file and show headers, suggestions and preview")
    inspect_parser.add_argument("file", help="Path to a CSV, XLS or XLSX export")
    inspect_parser.add_argument("--entity-type", help="Entity type (detected from the file name by default)")
    inspect_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Run an import
    run_parser = subparsers.add_parser("run", help="Run an import")
    run_parser.add_argument("--config", required=True, help="Path to import config file")
    run_parser.add_argument("--dry-run", action="store_true", help="Simulate without writing to the target")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # List templates
    templates_parser = subparsers.add_parser("templates", help="List mapping templates")
    templates_parser.add_argument("--templates-dir", help="Directory containing template files")
    templates_parser.add_argument("--entity-type", help="Only templates for this entity type")

    # Show target schema
    schema_parser = subparsers.add_parser("schema", help="Show target fields of an entity type")
    schema_parser.add_argument("entity_type", nargs="?", help="Entity type (all when omitted)")
    schema_parser.add_argument("--schemas-dir", help="Directory containing schema files")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "inspect":
        return run_inspect(args)
    elif args.command == "run":
        return run_import(args)
    elif args.command == "templates":
        return run_templates(args)
    elif args.command == "schema":
        return run_schema(args)
    else:
        parser.print_help()
        return 1


def run_inspect(args) -> int:
    """Parse one file and print what the importer sees."""
    registry = SchemaRegistry()
    parser = FileParser(ImportSettings.from_env(), MappingEngine(registry))

    try:
        uploaded = parser.parse_path(args.file, args.entity_type)
    except ParseError as e:
        print(f"Parse error: {e.message}")
        if e.raw_response:
            print(f"Raw response: {e.raw_response[:500]}")
        return 1

    print("\n" + "=" * 60)
    print(f"  {uploaded.file_name} ({uploaded.entity_type})")
    print("=" * 60)
    print(f"Size: {uploaded.file_size_bytes} bytes")
    print(f"Records: {uploaded.total_records}")
    print(f"\nHeaders ({len(uploaded.headers)}):")
    for i, header in enumerate(uploaded.headers):
        print(f"  {i}. {header}")

    print("\nSuggested mappings:")
    if not uploaded.suggested_mappings:
        print("  (none)")
    for target, index in uploaded.suggested_mappings.items():
        req = "*" if registry.is_required(uploaded.entity_type, target) else " "
        print(f"  {req} {uploaded.headers[index]} -> {target}")

    missing = [
        f for f in registry.required_fields(uploaded.entity_type)
        if f not in uploaded.suggested_mappings
    ]
    if missing:
        print(f"\nRequired fields without a suggestion: {', '.join(missing)}")

    print(f"\nPreview ({len(uploaded.preview_rows)} rows):")
    for row in uploaded.preview_rows:
        print(f"  {json.dumps(row, ensure_ascii=False)}")
    return 0


def _create_loader(target: Dict[str, Any], dry_run: bool) -> BaseLoader:
    """Create the commit sink for the configured target."""
    target_type = (target.get("type") or "memory").lower()
    if target_type == "api":
        return APILoader(
            base_url=target.get("base_url", ""),
            api_key=target.get("api_key"),
            dry_run=dry_run,
            use_batch_endpoint=target.get("use_batch_endpoint", True),
            rate_limit=target.get("rate_limit", 10.0),
            endpoints=target.get("endpoints"),
        )
    if target_type == "memory":
        return InMemoryLoader(dry_run=dry_run)
    raise ValueError(f"Unsupported target type: {target_type}")


def _file_entry(item: Any) -> Dict[str, Any]:
    if isinstance(item, str):
        return {"path": item}
    return dict(item)


def run_import(args) -> int:
    """Run an import from a config file."""
    with open(args.config) as f:
        config_data = json.load(f)

    settings = ImportSettings.from_env(base=config_data.get("settings"))
    registry = SchemaRegistry(config_data.get("schemas_dir"))
    loader = _create_loader(config_data.get("target", {}), args.dry_run or config_data.get("dry_run", False))
    if not loader.dry_run and not loader.validate_connection():
        print(f"Cannot reach target service '{loader.target_service}'")
        return 1

    orchestrator = ImportOrchestrator(
        registry=registry,
        loader=loader,
        template_store=TemplateStore(config_data.get("templates_dir")),
        settings=settings,
    )
    workstation = ErrorWorkstation(orchestrator)

    session = orchestrator.create_session(config_data.get("firm_id", "default"))
    output_dir = Path(config_data.get("output_dir", "./output"))

    try:
        for item in config_data.get("files", []):
            entry = _file_entry(item)
            path = Path(entry["path"])
            uploaded = orchestrator.upload_file(session, path.read_bytes(), path.name, entry.get("entity_type"))
            entity_type = uploaded.entity_type

            if entry.get("template"):
                orchestrator.apply_template(session, entity_type, entry["template"])
            for target_field, source_field in entry.get("mappings", {}).items():
                orchestrator.set_mapping(session, entity_type, target_field, source_field)

            check = orchestrator.check_mappings(session, entity_type)
            for warning in check.warnings:
                logger.warning(f"{entity_type}: {warning}")

        orchestrator.execute(session)

        if config_data.get("skip_skippable_errors"):
            workstation.bulk_action(session, "skip_all", reason="skipped by run config")

        if not session.errors:
            orchestrator.complete(session)

    except (ImportPipelineError, OSError) as e:
        logger.error(f"Import failed: {e}")
        if session.can_transition(SessionStatus.FAILED):
            orchestrator.fail(session, str(e))

    report_path = orchestrator.save_report(session, str(output_dir / "logs"))
    progress = orchestrator.get_progress(session)
    summary = workstation.error_summary(session)

    print("\n" + "=" * 60)
    print("IMPORT FINISHED")
    print("=" * 60)
    print(f"Status: {session.status.value}")
    print(f"Records: {progress['total_records']}")
    print(f"Committed: {progress['successful_records']}")
    print(f"Skipped: {progress['skipped_records']}")
    print(f"Errors: {summary['total']} ({summary['blocking']} blocking, {summary['skippable']} skippable)")
    for entity, counts in summary["entities"].items():
        by_type = ", ".join(f"{k}={v}" for k, v in sorted(counts["by_type"].items()))
        print(f"  {entity}: {by_type}")
    if session.failure_reason:
        print(f"Failure: {session.failure_reason}")
    print(f"Report: {report_path}")

    return 0 if session.status == SessionStatus.COMPLETED else 1


def run_templates(args) -> int:
    """List templates."""
    store = TemplateStore(args.templates_dir)
    templates = store.list(args.entity_type)

    print(f"\n=== {len(templates)} Templates ===")
    for template in templates:
        print(f"\n{template.name} ({template.to_dict()['entity_type']})")
        if template.description:
            print(f"   {template.description}")
        for target, mapping in template.mappings.items():
            transform = f" [{mapping.transformation.value}]" if mapping.transformation else ""
            print(f"   {mapping.source_field} -> {target}{transform}")
    return 0


def run_schema(args) -> int:
    """Print the target fields of one or all entity types."""
    registry = SchemaRegistry(args.schemas_dir)
    entity_types = [args.entity_type] if args.entity_type else registry.list_entity_types()

    for entity_type in entity_types:
        try:
            fields = registry.get_fields(entity_type)
        except ImportPipelineError as e:
            print(str(e))
            return 1
        print(f"\n=== {entity_type} ===")
        deps = registry.dependencies(entity_type)
        if deps:
            print(f"Depends on: {', '.join(deps)}")
        for field in fields:
            req = "*" if field.required else " "
            ref = f" -> {field.references}" if field.references else ""
            print(f"  {req} {field.name}: {field.type.value} ({field.label}){ref}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
