"""Applies handle operations across the structure trees of a document."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from epic_pid_manager.models import DocumentNode, IdentifierRecord, Metadata
from epic_pid_manager.services.handles import HandleClient, InvalidHandleError
from epic_pid_manager.services.registry import HandleRegistryError

logger = logging.getLogger(__name__)


@dataclass
class Assignment:
    node: DocumentNode
    record: IdentifierRecord
    created: bool


@dataclass
class RemovalResult:
    handles: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    stripped: bool = False

    @property
    def success(self) -> bool:
        return not self.failed


def iter_nodes(root: DocumentNode, include_children: bool = True) -> Iterator[DocumentNode]:
    """Yield nodes in depth-first pre-order, visiting each node at most once."""
    stack = [root]
    visited: set[int] = set()
    while stack:
        node = stack.pop()
        if id(node) in visited:
            continue
        visited.add(id(node))
        yield node
        if include_children:
            stack.extend(reversed(list(node.iter_children())))


class HandleTreeWalker:
    """Mints, updates or removes the handle metadata of document nodes."""

    def __init__(self, client: HandleClient, metadata_type: str) -> None:
        self._client = client
        self._metadata_type = metadata_type

    def get_handle(self, node: DocumentNode) -> Optional[str]:
        entries = node.metadata_by_type(self._metadata_type)
        if entries and entries[0].value:
            return entries[0].value
        return None

    def set_handle(self, node: DocumentNode, handle: str) -> None:
        """Store ``handle`` on the node, replacing any handle already there."""
        if not handle:
            raise InvalidHandleError("Handle is null or empty")
        stale = node.metadata_by_type(self._metadata_type)
        node.add_metadata(Metadata(type=self._metadata_type, value=handle))
        for entry in stale:
            node.remove_metadata(entry)

    def assign(
        self,
        root: DocumentNode,
        object_id: str,
        include_children: bool = False,
        make_doi: bool = False,
    ) -> list[Assignment]:
        assignments = []
        for node in iter_nodes(root, include_children):
            handle = self.get_handle(node)
            if handle is None:
                record = self._client.mint_for_node(node, object_id, make_doi)
                created = True
            else:
                record = self._client.update_for_node(handle, node, make_doi)
                created = False
            self.set_handle(node, record.handle)
            assignments.append(Assignment(node=node, record=record, created=created))
        return assignments

    def collect_handles(self, root: DocumentNode) -> list[str]:
        handles = []
        for node in iter_nodes(root):
            handle = self.get_handle(node)
            if handle:
                handles.append(handle)
        return handles

    def strip_handles(self, root: DocumentNode) -> None:
        for node in iter_nodes(root):
            for entry in node.metadata_by_type(self._metadata_type):
                node.remove_metadata(entry)

    def remove(self, roots: Iterable[DocumentNode]) -> RemovalResult:
        """Delete every handle below ``roots``.

        Metadata is stripped only if every deletion succeeded, so a partial
        failure leaves the document untouched and the removal can be retried.
        """
        roots = list(roots)
        result = RemovalResult()
        for root in roots:
            result.handles.extend(self.collect_handles(root))

        for handle in result.handles:
            try:
                if self._client.delete(handle):
                    result.deleted.append(handle)
                else:
                    result.missing.append(handle)
            except HandleRegistryError as exc:
                logger.error("Could not delete handle %s: %s", handle, exc)
                result.failed.append((handle, str(exc)))

        if result.success:
            for root in roots:
                self.strip_handles(root)
            result.stripped = True
        return result
