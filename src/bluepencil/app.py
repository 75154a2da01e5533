"""Composition root and command-line entry point for BluePencil."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, fields, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.assembler import AssistantSession, RequestAssembler
from .ai.errors import BluePencilAIError
from .ai.prompts import AssistantMode, QUICK_ACTIONS
from .ai.provider import CompletionProvider, OpenAICompletionProvider, StreamCallbacks
from .context.builder import ContextBuilder
from .context.edit_log import EditEventLog
from .context.tracker import SNAPSHOT_RECORD_KIND, StalenessTracker
from .context.types import ContextSnapshot
from .events import EventBus
from .store.entity_store import EntityStore
from .store.persistence import InMemoryRecordStore, JsonDirectoryRecordStore, RecordStore, hydrate_store, to_payload
from .services.settings import ContextSettings, Settings, SettingsStore, StalenessSettings, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_DEFAULT_DATA_DIR = Path.home() / ".bluepencil" / "projects"


@dataclass(slots=True)
class Workspace:
    """Every long-lived collaborator, wired together once per process."""

    settings: Settings
    bus: EventBus
    records: RecordStore
    store: EntityStore
    edit_log: EditEventLog
    builder: ContextBuilder
    tracker: StalenessTracker
    provider: CompletionProvider
    assembler: RequestAssembler

    def open_project(self, project_id: str, document_id: str | None = None) -> None:
        """Focus the tracker on a project, adopting its persisted snapshot when present."""

        persisted = self.records.get(SNAPSHOT_RECORD_KIND, project_id)
        if isinstance(persisted, ContextSnapshot) and persisted.document_id == document_id:
            self.tracker.restore(persisted)
        self.tracker.set_focus(project_id, document_id)

    def session(self, mode: AssistantMode = "editor") -> AssistantSession:
        return AssistantSession(self.assembler, tracker=self.tracker, mode=mode)

    async def aclose(self) -> None:
        self.tracker.detach()
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()


def build_workspace(
    settings: Settings,
    *,
    records: RecordStore | None = None,
    provider: CompletionProvider | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Workspace:
    """Construct and connect the store, tracker, and assistant pipeline."""

    if records is None:
        records = JsonDirectoryRecordStore(settings.data_dir) if settings.data_dir else InMemoryRecordStore()
    bus: EventBus = EventBus()
    store = EntityStore(bus=bus, records=records)
    hydrate_store(store, records)
    edit_log = EditEventLog(
        max_entries=settings.context.recent_edit_limit,
        snippet_chars=settings.context.edit_snippet_chars,
    )
    builder = ContextBuilder(store, config=settings.builder_config(), clock=clock)
    tracker = StalenessTracker(
        builder,
        edit_log=edit_log,
        thresholds=settings.staleness_thresholds(),
        clock=clock,
        rebuild_queue_threshold=settings.context.rebuild_queue_threshold,
        rebuild_edit_threshold=settings.context.rebuild_edit_threshold,
        records=records,
    )
    tracker.attach(bus)
    provider = provider or OpenAICompletionProvider(settings.client_settings(), timeout=settings.request_timeout)
    assembler = RequestAssembler(store, provider)
    return Workspace(
        settings=settings,
        bus=bus,
        records=records,
        store=store,
        edit_log=edit_log,
        builder=builder,
        tracker=tracker,
        provider=provider,
        assembler=assembler,
    )


def configure_logging(settings: Settings, *, debug: bool = False, force: bool = False) -> None:
    level: int | str = logging.DEBUG if debug or settings.debug_logging else settings.log_level
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", level)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError, TypeError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


# ----------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------
def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bluepencil",
        description="Inspect project context or ask the writing assistant from the command line.",
    )
    parser.add_argument("--settings-path", metavar="PATH", help="Override the default ~/.bluepencil/settings.json path.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override settings for this run (repeatable; use context.<field> or staleness.<field> for sections).",
    )
    parser.add_argument("--data-dir", metavar="DIR", help="Project records directory (default ~/.bluepencil/projects).")
    parser.add_argument("--project", metavar="ID_OR_NAME", help="Project to open; defaults to the oldest project.")
    parser.add_argument("--document", metavar="ID_OR_TITLE", help="Document to focus.")
    parser.add_argument("--import-text", metavar="FILE", help="Create a document from a plain-text file before running.")
    parser.add_argument("--dump-settings", action="store_true", help="Print effective settings (secrets redacted) and exit.")
    parser.add_argument("--list", action="store_true", help="List projects and documents and exit.")
    parser.add_argument("--dump-context", action="store_true", help="Rebuild and print the context snapshot as JSON.")
    parser.add_argument("--ask", metavar="MESSAGE", help="Send one message to the assistant.")
    parser.add_argument(
        "--quick-action",
        choices=[action.type for action in QUICK_ACTIONS],
        help="Send a predefined quick action instead of --ask.",
    )
    parser.add_argument("--selection", metavar="TEXT", help="Selected text to include with the request.")
    parser.add_argument("--mode", choices=("editor", "coach"), default="editor")
    parser.add_argument("--stream", action="store_true", help="Stream the reply token by token.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    sections: Dict[str, type] = {"context": ContextSettings, "staleness": StalenessSettings}
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        section, _, name = key.partition(".")
        owner: type = sections.get(section, Settings) if name else Settings
        field_name = name or key
        if (name and section not in sections) or field_name not in {item.name for item in fields(owner)}:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = get_type_hints(owner).get(field_name)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    if raw_value.lower() in {"none", "null"} and target is not str:
        return None
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target in (list, dict) or is_dataclass(target):
        try:
            return json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Override value must be valid JSON: {raw_value!r}") from exc
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(settings: Settings, store: SettingsStore, stream: TextIO) -> None:
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    meta = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "environment_variables": sorted(name for name in os.environ if name.startswith("BLUEPENCIL_")),
    }
    json.dump({"settings": payload, "meta": meta}, stream, indent=2)
    stream.write("\n")


def _pick(items: Sequence[Any], key: str | None, label: Callable[[Any], str]) -> Any | None:
    if not items:
        return None
    if key is None:
        return items[0]
    for item in items:
        if item.id == key or label(item) == key:
            return item
    return None


def _list_projects(workspace: Workspace, stream: TextIO) -> None:
    for project in workspace.store.list_projects():
        stream.write(f"{project.id}  {project.name}\n")
        for document in workspace.store.documents_for(project.id):
            stream.write(f"    {document.id}  {document.title} ({document.word_count} words)\n")


async def _run(args: argparse.Namespace, workspace: Workspace, stream: TextIO) -> int:
    store = workspace.store
    if args.import_text:
        path = Path(args.import_text).expanduser()
        projects = store.list_projects()
        project = _pick(projects, args.project, lambda item: item.name) if projects else None
        if project is None:
            project = store.create_project(args.project or path.stem)
        document = store.create_document(project.id, path.stem, path.read_text(encoding="utf-8"))
        stream.write(f"Imported {path.name} as {document.id} ({document.word_count} words)\n")
        args.project = project.id
        args.document = args.document or document.id

    if args.list:
        _list_projects(workspace, stream)
        return 0

    project = _pick(store.list_projects(), args.project, lambda item: item.name)
    if project is None:
        stream.write("No matching project. Use --import-text to create one.\n")
        return 2
    document = None
    if args.document:
        document = _pick(store.documents_for(project.id), args.document, lambda item: item.title)
        if document is None:
            stream.write(f"No document {args.document!r} in project {project.name!r}.\n")
            return 2
    workspace.open_project(project.id, document.id if document else None)

    if args.dump_context:
        await workspace.tracker.force_refresh()
        snapshot = workspace.tracker.snapshot
        if workspace.tracker.last_error:
            stream.write(f"Context rebuild failed: {workspace.tracker.last_error}\n")
            return 1
        json.dump(to_payload(snapshot), stream, indent=2, ensure_ascii=False)
        stream.write("\n")

    message = args.ask
    session = workspace.session(args.mode)
    if args.quick_action:
        try:
            response = await session.run_quick_action(args.quick_action, args.selection)
        except BluePencilAIError as exc:
            stream.write(f"Error: {exc}\n")
            return 1
        stream.write(response.content + "\n")
        return 0
    if message:
        try:
            if args.stream:
                callbacks = StreamCallbacks(on_token=lambda token: (stream.write(token), stream.flush()))
                response = await session.stream(message, callbacks, selected_text=args.selection)
                stream.write("\n")
            else:
                response = await session.send(message, selected_text=args.selection)
                stream.write(response.content + "\n")
        except BluePencilAIError as exc:
            stream.write(f"Error: {exc}\n")
            return 1
        for citation in response.citations:
            stream.write(f"  [{citation.type}] {citation.name}\n")
        if response.suggested_edit is not None:
            edit = response.suggested_edit
            stream.write(f"\nSuggested edit:\n  - {edit.original}\n  + {edit.suggested}\n  ({edit.explanation})\n")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    try:
        overrides = _coerce_cli_overrides(args.overrides)
    except ValueError as exc:
        print(f"bluepencil: {exc}", file=sys.stderr)
        return 2
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    settings_store = SettingsStore(Path(args.settings_path).expanduser() if args.settings_path else None)
    settings = load_settings(store=settings_store, overrides=overrides)
    if settings.data_dir is None:
        settings.data_dir = str(_DEFAULT_DATA_DIR)
    configure_logging(settings, debug=args.debug)

    if args.dump_settings:
        _dump_settings(settings, settings_store, sys.stdout)
        return 0

    workspace = build_workspace(settings)

    async def _main() -> int:
        try:
            return await _run(args, workspace, sys.stdout)
        finally:
            await workspace.aclose()

    return asyncio.run(_main())


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
