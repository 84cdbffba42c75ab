"""Citation metadata extraction for DOI-style handle records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

from lxml import etree

from epic_pid_manager.models import CitationRecord, DocumentNode
from epic_pid_manager.services.mapping import FieldMapper, MappingError, load_mapping_table

logger = logging.getLogger(__name__)

DATACITE_NS = "http://datacite.org/schema/kernel-4"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
DATACITE_SCHEMA_LOCATION = (
    "http://datacite.org/schema/kernel-4 http://schema.datacite.org/meta/kernel-4.2/metadata.xsd"
)


@dataclass
class CitationExtractor:
    """Builds the five-slot citation record for a document node."""

    mapper: FieldMapper

    @classmethod
    def from_mapping_file(cls, path: Optional[str | Path]) -> CitationExtractor:
        if not path:
            raise MappingError("DOI generation requires a mapping file.")
        return cls(mapper=FieldMapper(load_mapping_table(path)))

    def extract(self, node: DocumentNode) -> CitationRecord:
        record = CitationRecord(
            title=self.mapper.resolve("title", node),
            authors=self.mapper.resolve("author", node),
            publisher=self.mapper.resolve("publisher", node),
            publication_date=self.mapper.resolve("pubdate", node),
            institution=self.mapper.resolve("inst", node),
        )
        logger.debug("Extracted citation for %s: %s", node.type, record)
        return record


@dataclass
class DataCiteResourceBuilder:
    """Builds a DataCite kernel-4 ``resource`` tree from a source XML tree."""

    mapper: FieldMapper
    resource_type_general: str = "Text"

    def build(self, doi: str, source: etree._Element) -> etree._Element:
        resource = etree.Element(self._tag("resource"), nsmap={None: DATACITE_NS, "xsi": XSI_NS})
        resource.set(f"{{{XSI_NS}}}schemaLocation", DATACITE_SCHEMA_LOCATION)

        identifier = etree.SubElement(resource, self._tag("identifier"), identifierType="DOI")
        identifier.text = doi

        creators = etree.SubElement(resource, self._tag("creators"))
        for name in self.mapper.resolve_in_tree("creatorName", source):
            creator = etree.SubElement(creators, self._tag("creator"))
            etree.SubElement(creator, self._tag("creatorName")).text = name

        titles = etree.SubElement(resource, self._tag("titles"))
        for title in self.mapper.resolve_in_tree("title", source):
            etree.SubElement(titles, self._tag("title")).text = title

        publisher = etree.SubElement(resource, self._tag("publisher"))
        publisher.text = self._first(self.mapper.resolve_in_tree("publisher", source), "")

        year = etree.SubElement(resource, self._tag("publicationYear"))
        year.text = self._first(
            self.mapper.resolve_in_tree("publicationYear", source), str(date.today().year)
        )

        resource_type = etree.SubElement(
            resource,
            self._tag("resourceType"),
            resourceTypeGeneral=self.resource_type_general,
        )
        resource_type.text = self._first(
            self.mapper.resolve_in_tree("resourceType", source), self.resource_type_general
        )
        return resource

    def write(self, doi: str, source_path: Path, output_path: Path) -> None:
        try:
            source = etree.parse(str(source_path)).getroot()
        except (OSError, etree.XMLSyntaxError) as exc:
            raise MappingError(f"Could not read source document {source_path}: {exc}") from exc
        resource = self.build(doi, source)
        output_path.write_bytes(
            etree.tostring(resource, pretty_print=True, xml_declaration=True, encoding="UTF-8")
        )
        logger.info("Wrote DataCite resource for %s to %s", doi, output_path)

    @staticmethod
    def _tag(name: str) -> str:
        return f"{{{DATACITE_NS}}}{name}"

    @staticmethod
    def _first(values: list[str], fallback: str) -> str:
        return values[0] if values else fallback
