"""Declarative field mapping from document metadata to citation fields."""

from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from lxml import etree

from epic_pid_manager.models import DocumentNode, MappingRule

logger = logging.getLogger(__name__)

DEFAULT_PERSON_FIELDS = frozenset({"author", "publisher"})


class MappingError(RuntimeError):
    """Raised when a mapping table cannot be read."""


class MappingTable(Mapping[str, MappingRule]):
    """Read-only lookup of mapping rules keyed by logical field name."""

    def __init__(self, rules: Iterable[MappingRule] = ()) -> None:
        self._rules = MappingProxyType({rule.field: rule for rule in rules})

    def __getitem__(self, field: str) -> MappingRule:
        return self._rules[field]

    def __iter__(self) -> Iterator[str]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)


def load_mapping_table(path: str | Path) -> MappingTable:
    """Parse a mapping file.

    The root element holds one child per rule::

        <mapping>
            <map>
                <field>title</field>
                <default>Untitled</default>
                <metadata>TitleDocMain</metadata>
                <altMetadata>MainTitle</altMetadata>
            </map>
        </mapping>
    """
    mapping_path = Path(path)
    try:
        root = etree.parse(str(mapping_path)).getroot()
    except (OSError, etree.XMLSyntaxError) as exc:
        raise MappingError(f"Could not read mapping file {mapping_path}: {exc}") from exc

    rules: list[MappingRule] = []
    for element in root:
        if not isinstance(element.tag, str):
            continue
        field = _child_text(element, "field")
        if not field:
            raise MappingError(f"Mapping entry on line {element.sourceline} has no <field>")
        alternatives = tuple(
            alt.text.strip() for alt in element.findall("altMetadata") if alt.text and alt.text.strip()
        )
        rules.append(
            MappingRule(
                field=field,
                default=_child_text(element, "default") or None,
                metadata=_child_text(element, "metadata") or None,
                alternatives=alternatives,
            )
        )
    logger.debug("Loaded %d mapping rules from %s", len(rules), mapping_path)
    return MappingTable(rules)


def _child_text(element: etree._Element, name: str) -> str:
    text = element.findtext(name)
    return text.strip() if text else ""


def find_in_tree(root: etree._Element, label: str) -> list[str]:
    """Collect the text of every element named ``label`` below ``root``.

    The search stops descending at a match: if ``title`` elements are found at
    one level their own children are not searched, while sibling subtrees still
    are.
    """
    if not isinstance(root.tag, str):
        return []
    if etree.QName(root).localname == label:
        return [(root.text or "").strip()]
    values: list[str] = []
    for child in root:
        values.extend(find_in_tree(child, label))
    return values


class FieldMapper:
    """Resolves logical field names against document metadata."""

    def __init__(
        self,
        table: MappingTable | None = None,
        person_fields: Iterable[str] = DEFAULT_PERSON_FIELDS,
    ) -> None:
        self._table = table if table is not None else MappingTable()
        self._person_fields = frozenset(name.lower() for name in person_fields)

    @property
    def table(self) -> MappingTable:
        return self._table

    def resolve(self, field: str, node: DocumentNode) -> list[str]:
        rule = self._table.get(field)
        if rule is None:
            return self._lookup(node, field)

        for name in rule.lookup_names():
            values = self._lookup(node, name)
            if values:
                return values
        return rule.default_values()

    def resolve_in_tree(self, field: str, root: etree._Element) -> list[str]:
        rule = self._table.get(field)
        if rule is None:
            return []
        if not rule.metadata:
            return rule.default_values()

        for name in rule.lookup_names():
            values = [value for value in find_in_tree(root, name) if value]
            if values:
                return values
        return rule.default_values()

    def is_person_field(self, name: str) -> bool:
        return name.lower() in self._person_fields

    def _lookup(self, node: DocumentNode, name: str) -> list[str]:
        if self.is_person_field(name):
            return self._person_values(node, name)
        return self._metadata_values(node, name)

    @staticmethod
    def _person_values(node: DocumentNode, role: str) -> list[str]:
        role = role.lower()
        values = []
        for person in node.persons:
            if person.role.lower() != role:
                continue
            name = person.resolved_name()
            if name:
                values.append(name)
        return values

    @staticmethod
    def _metadata_values(node: DocumentNode, name: str) -> list[str]:
        name = name.lower()
        return [md.value for md in node.metadata if md.type.lower() == name and md.value]
