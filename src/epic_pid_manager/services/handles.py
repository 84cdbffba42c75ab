"""Minting, updating and deleting handles with collision avoidance."""

from __future__ import annotations

import logging
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import Optional

from epic_pid_manager.config import Settings
from epic_pid_manager.models import (
    ADMIN_RECORD_INDEX,
    CITATION_SLOTS,
    URL_INDEX,
    CitationRecord,
    DocumentNode,
    HandleValue,
    IdentifierRecord,
)
from epic_pid_manager.services.citation import CitationExtractor
from epic_pid_manager.services.mapping import MappingError
from epic_pid_manager.services.registry import (
    RC_HANDLE_ALREADY_EXISTS,
    RC_HANDLE_NOT_FOUND,
    HandleRegistryClient,
    HandleRegistryError,
)

logger = logging.getLogger(__name__)

MAX_SUFFIX = 5000
SUFFIX_SEPARATOR = "-"

# add handle, delete handle, no add NA, no delete NA, then every value and admin right
ADMIN_PERMISSIONS = "110011111111"


class RegistryExhaustedError(HandleRegistryError):
    """Raised when no free handle suffix was found below the attempt ceiling."""


class InvalidHandleError(ValueError):
    """Raised when an operation receives an empty handle or target URL."""


class HandleClient:
    """Drives handle creation, update and deletion against one registry.

    The client keeps a cache of handles already known to be registered so the
    registry is asked about each candidate at most once per run. The cache is
    private to this instance: construct a new client (or call
    :meth:`reset_cache`) before working in a different namespace.

    Use it as a context manager so the per-run working directory is removed on
    every exit path.
    """

    def __init__(
        self,
        settings: Settings,
        registry: HandleRegistryClient | None = None,
        citation_extractor: CitationExtractor | None = None,
        max_suffix: int = MAX_SUFFIX,
    ) -> None:
        self.settings = settings
        self.citation_extractor = citation_extractor
        self.max_suffix = max_suffix
        try:
            self.work_dir = Path(tempfile.mkdtemp(prefix=".handles-", dir=settings.temp_folder))
        except OSError as exc:
            raise HandleRegistryError(
                f"Could not create working directory in {settings.temp_folder}: {exc}"
            ) from exc
        try:
            self._registry = registry or HandleRegistryClient(settings, self.work_dir)
        except Exception:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            raise
        self._registered: set[str] = set()

    def __enter__(self) -> HandleClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        try:
            self._registry.close()
        finally:
            shutil.rmtree(self.work_dir, ignore_errors=True)

    @property
    def registered(self) -> frozenset[str]:
        return frozenset(self._registered)

    def reset_cache(self) -> None:
        self._registered.clear()

    def url_for(self, handle: str, url_template: Optional[str] = None) -> str:
        template = url_template if url_template is not None else self.settings.handle_url
        if not template:
            return ""
        if "{handle}" in template:
            return template.replace("{handle}", handle)
        return template + handle

    def is_registered(self, handle: str) -> bool:
        """Return True unless the registry explicitly reports the handle as unknown.

        Any other answer, errors included, counts as registered so a handle is
        never minted over an ambiguous state.
        """
        if handle in self._registered:
            return True

        response = self._registry.resolve(handle)
        if response.code == RC_HANDLE_NOT_FOUND:
            return False
        if not response.ok:
            logger.debug("Handle %s has error: %s", handle, response.describe())
        else:
            logger.debug("Handle %s registered.", handle)
        self._registered.add(handle)
        return True

    def mint(
        self,
        base_name: str,
        url_template: Optional[str] = None,
        mint_suffix: bool = True,
        citation: CitationRecord | None = None,
    ) -> IdentifierRecord:
        """Register ``base_name`` or the first free ``base_name-N``.

        Without ``mint_suffix`` an already registered handle is returned as is.
        With it, candidates are tried in order ``base``, ``base-1``, ``base-2``
        and so on; a candidate is skipped whether the cache, a status check or
        the create request itself reports it as taken.
        """
        if not base_name:
            raise InvalidHandleError("Handle cannot be empty")

        if not mint_suffix and self.is_registered(base_name):
            return IdentifierRecord(handle=base_name, url=self.url_for(base_name, url_template))

        timestamp = _now()
        for suffix in range(self.max_suffix + 1):
            candidate = self._candidate(base_name, suffix)
            if mint_suffix and self.is_registered(candidate):
                logger.debug("Handle exists %s", candidate)
                continue

            url = self.url_for(candidate, url_template)
            logger.debug("Create %s", candidate)
            response = self._registry.create(
                candidate, self._creation_values(url, citation, timestamp)
            )
            if response.ok:
                handle = response.handle or candidate
                self._registered.add(handle)
                logger.info("Handle created: %s", handle)
                return IdentifierRecord(handle=handle, url=url, citation=citation, timestamp=timestamp)

            if response.code == RC_HANDLE_ALREADY_EXISTS:
                self._registered.add(candidate)
                if not mint_suffix:
                    return IdentifierRecord(handle=candidate, url=url)
                logger.debug("Handle %s was taken concurrently, trying next suffix", candidate)
                continue

            logger.error("Failed to create handle %s: %s", candidate, response.describe())
            raise HandleRegistryError(
                f"Failed trying to create handle {candidate} at the server: {response.describe()}"
            )

        raise RegistryExhaustedError(
            f"No free suffix for {base_name} after {self.max_suffix} attempts; "
            "the registry may be reporting every handle as registered."
        )

    def update(
        self,
        handle: str,
        url_template: Optional[str] = None,
        citation: CitationRecord | None = None,
    ) -> IdentifierRecord:
        """Point an existing handle at its current URL, refreshing citation slots if given."""
        url = self.url_for(handle, url_template) if handle else ""
        if not handle or not url:
            raise InvalidHandleError("Handle and URL cannot be empty")

        logger.debug("Update Handle: %s new URL: %s", handle, url)
        timestamp = _now()
        values = [HandleValue(index=URL_INDEX, type="URL", data=url, timestamp=timestamp)]
        if citation is not None:
            values.extend(self._citation_values(citation, timestamp))

        response = self._registry.modify(handle, values)
        if not response.ok:
            logger.error("Tried to update handle %s but failed: %s", handle, response.describe())
            raise HandleRegistryError(f"Failed to update handle {handle}: {response.describe()}")
        self._registered.add(handle)
        return IdentifierRecord(handle=handle, url=url, citation=citation, timestamp=timestamp)

    def delete(self, handle: str) -> bool:
        """Delete a handle; returns False when the registry does not know it."""
        if not handle:
            raise InvalidHandleError("Handle cannot be empty")

        response = self._registry.delete(handle)
        if response.ok:
            self._registered.discard(handle)
            logger.info("Handle deleted: %s", handle)
            return True
        if response.code == RC_HANDLE_NOT_FOUND:
            logger.info("Handle not found: %s", handle)
            return False
        raise HandleRegistryError(f"Failed trying to delete handle {handle}: {response.describe()}")

    def attach_citation(self, handle: str, citation: CitationRecord) -> None:
        if not handle:
            raise InvalidHandleError("Handle cannot be empty")

        values = self._citation_values(citation, _now())
        if not values:
            logger.debug("No citation values to attach to %s", handle)
            return
        logger.debug("Update Handle: %s. Attaching citation.", handle)
        response = self._registry.modify(handle, values)
        if not response.ok:
            raise HandleRegistryError(
                f"Failed to attach citation to handle {handle}: {response.describe()}"
            )

    def mint_for_node(self, node: DocumentNode, object_id: str, make_doi: bool = False) -> IdentifierRecord:
        """Mint ``base/<prefix><sep><name><sep><object_id>`` for a document node."""
        base_name = f"{self.settings.handle_base}/{self.settings.handle_postfix()}{object_id}"
        citation = self._citation_for(node) if make_doi else None
        return self.mint(base_name, mint_suffix=True, citation=citation)

    def update_for_node(self, handle: str, node: DocumentNode, make_doi: bool = False) -> IdentifierRecord:
        citation = self._citation_for(node) if make_doi else None
        return self.update(handle, citation=citation)

    def _citation_for(self, node: DocumentNode) -> CitationRecord:
        if self.citation_extractor is None:
            raise MappingError("DOI generation requires a mapping file.")
        return self.citation_extractor.extract(node)

    def _creation_values(
        self,
        url: str,
        citation: CitationRecord | None,
        timestamp: datetime,
    ) -> list[HandleValue]:
        admin = {
            "handle": self.settings.handle_user,
            "index": self.settings.handle_admin_index,
            "permissions": ADMIN_PERMISSIONS,
        }
        values = [
            HandleValue(index=ADMIN_RECORD_INDEX, type="HS_ADMIN", data=admin, timestamp=timestamp),
            HandleValue(index=URL_INDEX, type="URL", data=url, timestamp=timestamp),
        ]
        if citation is not None:
            values.extend(self._citation_values(citation, timestamp))
        return values

    @staticmethod
    def _citation_values(citation: CitationRecord, timestamp: datetime) -> list[HandleValue]:
        return [
            HandleValue(index=CITATION_SLOTS[slot], type=slot, data=value, timestamp=timestamp)
            for slot, slot_values in citation.slots()
            for value in slot_values
        ]

    @staticmethod
    def _candidate(base_name: str, suffix: int) -> str:
        if suffix == 0:
            return base_name
        return f"{base_name}{SUFFIX_SEPARATOR}{suffix}"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)
