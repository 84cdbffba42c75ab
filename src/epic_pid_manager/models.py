"""Core data models used across the ePIC PID manager."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field

URL_INDEX = 1
ADMIN_RECORD_INDEX = 100

CITATION_SLOTS: dict[str, int] = {
    "TITLE": 2,
    "AUTHORS": 3,
    "PUBLISHER": 4,
    "PUBDATE": 5,
    "INST": 6,
}

CATALOG_ID_TYPE = "CatalogIDDigital"


class MetadataTypeNotAllowedError(RuntimeError):
    """Raised when a document node does not accept a metadata type."""


class Metadata(BaseModel):
    """A single attribute-metadata entry on a document node."""

    type: str
    value: str = ""


class Person(BaseModel):
    """A person-metadata entry, tagged with the role it plays for the node."""

    role: str
    display_name: Optional[str] = None
    last_name: Optional[str] = None
    institution: Optional[str] = None

    def resolved_name(self) -> Optional[str]:
        for candidate in (self.display_name, self.last_name, self.institution):
            if candidate:
                return candidate
        return None


class DocumentNode(BaseModel):
    """A logical or physical structure element of a digital document."""

    type: str
    anchor: bool = False
    metadata: list[Metadata] = Field(default_factory=list)
    persons: list[Person] = Field(default_factory=list)
    children: Optional[list[DocumentNode]] = None
    allowed_metadata_types: Optional[list[str]] = None

    def metadata_by_type(self, name: str) -> list[Metadata]:
        return [md for md in self.metadata if md.type == name]

    def add_metadata(self, md: Metadata) -> None:
        if self.allowed_metadata_types is not None and md.type not in self.allowed_metadata_types:
            raise MetadataTypeNotAllowedError(
                f"Metadata type '{md.type}' is not allowed for element '{self.type}'"
            )
        self.metadata.append(md)

    def remove_metadata(self, md: Metadata) -> None:
        self.metadata = [entry for entry in self.metadata if entry is not md]

    def iter_children(self) -> Iterator[DocumentNode]:
        return iter(self.children or [])


DocumentNode.model_rebuild()


class DigitalDocument(BaseModel):
    """The pair of structure trees that make up one digitised object."""

    logical: DocumentNode
    physical: DocumentNode

    def publishable_logical(self) -> DocumentNode:
        """Return the logical node a handle should target.

        Anchor (collection) records are never published themselves, so their
        first child is used instead.
        """
        logical = self.logical
        if logical.anchor:
            children = logical.children or []
            if not children:
                raise ValueError(f"Anchor element '{logical.type}' has no children")
            return children[0]
        return logical

    def catalog_id(self) -> Optional[str]:
        for md in self.publishable_logical().metadata:
            if md.type == CATALOG_ID_TYPE:
                return md.value
        return None


class HandleValue(BaseModel):
    """One (index, type, data) triple stored under a handle."""

    index: int
    type: str
    data: Any
    timestamp: Optional[datetime] = None


class CitationRecord(BaseModel):
    """Basic citation metadata carried by a DOI-style handle record."""

    title: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
    publisher: list[str] = Field(default_factory=list)
    publication_date: list[str] = Field(default_factory=list)
    institution: list[str] = Field(default_factory=list)

    def slots(self) -> list[tuple[str, list[str]]]:
        return [
            ("TITLE", self.title),
            ("AUTHORS", self.authors),
            ("PUBLISHER", self.publisher),
            ("PUBDATE", self.publication_date),
            ("INST", self.institution),
        ]

    def is_empty(self) -> bool:
        return not any(values for _, values in self.slots())


class IdentifierRecord(BaseModel):
    """A registered handle and the URL it resolves to."""

    handle: str
    url: str
    citation: Optional[CitationRecord] = None
    timestamp: Optional[datetime] = None

    @property
    def prefix(self) -> str:
        return self.handle.split("/", 1)[0]

    @property
    def suffix(self) -> str:
        parts = self.handle.split("/", 1)
        return parts[1] if len(parts) == 2 else ""


class MappingRule(BaseModel):
    """Declarative lookup for one logical citation field."""

    model_config = ConfigDict(frozen=True)

    field: str
    default: Optional[str] = None
    metadata: Optional[str] = None
    alternatives: tuple[str, ...] = ()

    def lookup_names(self) -> list[str]:
        names = [self.metadata] if self.metadata else []
        names.extend(name for name in self.alternatives if name)
        return names

    def default_values(self) -> list[str]:
        return [self.default] if self.default else []
