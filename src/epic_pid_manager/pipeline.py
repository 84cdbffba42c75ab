"""High-level orchestration of a handle registration run."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

from epic_pid_manager.config import Settings
from epic_pid_manager.models import DigitalDocument, DocumentNode, MetadataTypeNotAllowedError
from epic_pid_manager.services.citation import CitationExtractor
from epic_pid_manager.services.document import DocumentError, DocumentStore
from epic_pid_manager.services.handles import HandleClient, InvalidHandleError, RegistryExhaustedError
from epic_pid_manager.services.mapping import MappingError
from epic_pid_manager.services.registry import HandleRegistryError
from epic_pid_manager.services.walker import Assignment, HandleTreeWalker

logger = logging.getLogger(__name__)

_NODE_ERRORS = (
    HandleRegistryError,
    InvalidHandleError,
    MetadataTypeNotAllowedError,
    MappingError,
)
_RUN_ERRORS = (DocumentError,) + _NODE_ERRORS

# path -> (lock, number of runs holding or waiting for it)
_locks: dict[Path, tuple[threading.Lock, int]] = {}
_locks_guard = threading.Lock()


class PipelineError(RuntimeError):
    """Raised when the handle registration pipeline cannot run at all."""


@dataclass
class JournalMessage:
    level: str
    text: str


@dataclass
class PipelineResult:
    """Outcome of one document run, with the messages meant for the user."""

    document: Path
    success: bool = True
    messages: list[JournalMessage] = field(default_factory=list)

    def info(self, text: str) -> None:
        self.messages.append(JournalMessage(level="info", text=text))

    def error(self, text: str) -> None:
        self.messages.append(JournalMessage(level="error", text=text))


@contextmanager
def _document_lock(path: Path) -> Iterator[None]:
    key = path.resolve()
    with _locks_guard:
        lock, users = _locks.get(key, (None, 0))
        if lock is None:
            lock = threading.Lock()
        _locks[key] = (lock, users + 1)
    try:
        with lock:
            yield
    finally:
        with _locks_guard:
            _, users = _locks[key]
            if users == 1:
                del _locks[key]
            else:
                _locks[key] = (lock, users - 1)


def run_pipeline(
    document_path: str | Path,
    settings: Settings,
    store: Optional[DocumentStore] = None,
) -> PipelineResult:
    """Mint, update or remove the handles of one document and save it."""
    path = Path(document_path)
    result = PipelineResult(document=path)
    store = store or DocumentStore()

    with _document_lock(path):
        try:
            _process_document(path, settings, store, result)
        except _RUN_ERRORS as exc:
            logger.error("Error writing handles for %s: %s", path, exc)
            result.error(f"Error writing Handles: {exc}")
            result.success = False

    logger.info("ePIC PID step executed for %s", path)
    return result


def run_batch(
    document_paths: Iterable[str | Path],
    settings: Settings,
    store: Optional[DocumentStore] = None,
) -> list[PipelineResult]:
    paths = list(document_paths)
    if not paths:
        raise PipelineError("No documents given.")
    return [run_pipeline(path, settings, store=store) for path in paths]


def _process_document(
    path: Path,
    settings: Settings,
    store: DocumentStore,
    result: PipelineResult,
) -> None:
    document = store.read(path)
    try:
        logical = document.publishable_logical()
    except ValueError as exc:
        raise DocumentError(str(exc)) from exc

    object_id = document.catalog_id()
    if not object_id:
        raise DocumentError(f"Document {path} has no CatalogIDDigital to build handles from.")

    with HandleClient(settings) as client:
        walker = HandleTreeWalker(client, settings.handle_metadata)
        if settings.remove_handles and settings.remove_handles == object_id:
            _remove_handles(walker, document, result)
        else:
            _assign_handles(client, walker, settings, logical, document.physical, object_id, result)

    if result.success:
        store.write(path, document)


def _assign_handles(
    client: HandleClient,
    walker: HandleTreeWalker,
    settings: Settings,
    logical: DocumentNode,
    physical: DocumentNode,
    object_id: str,
    result: PipelineResult,
) -> None:
    if settings.handle_for_logical_document:
        try:
            # citation metadata only goes on the logical node
            if settings.doi_generate and client.citation_extractor is None:
                client.citation_extractor = CitationExtractor.from_mapping_file(settings.doi_mapping)
            assignments = walker.assign(
                logical, object_id, include_children=False, make_doi=settings.doi_generate
            )
        except _NODE_ERRORS as exc:
            logger.error("Error registering handle for logical element: %s", exc)
            result.error(_failure_text(exc, "Handle for logical element"))
        else:
            _report(assignments, result)

    if settings.handle_for_physical_document:
        try:
            assignments = walker.assign(
                physical, object_id, include_children=settings.handle_for_physical_pages
            )
        except _NODE_ERRORS as exc:
            logger.error("Error registering handles for physical elements: %s", exc)
            result.error(_failure_text(exc, "Handles"))
            result.success = False
        else:
            _report(assignments, result)


def _failure_text(exc: Exception, target: str) -> str:
    if isinstance(exc, RegistryExhaustedError):
        return (
            f"No free suffix left registering {target}, "
            f"check the handle prefix and registry configuration: {exc}"
        )
    return f"Error registering {target}: {exc}"


def _remove_handles(walker: HandleTreeWalker, document: DigitalDocument, result: PipelineResult) -> None:
    removal = walker.remove([document.logical, document.physical])
    for handle in removal.deleted:
        result.info(f"Handle deleted: {handle}")
    for handle in removal.missing:
        result.info(f"Handle not found, nothing to delete: {handle}")
    for handle, reason in removal.failed:
        result.error(f"Error deleting Handle {handle}: {reason}")
    if not removal.success:
        result.error("Handles were kept in the metadata because not every deletion succeeded.")
        result.success = False


def _report(assignments: list[Assignment], result: PipelineResult) -> None:
    for assignment in assignments:
        verb = "created" if assignment.created else "updated"
        result.info(f"Handle {verb} for {assignment.node.type}: {assignment.record.handle}")
