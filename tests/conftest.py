import pytest

from epic_pid_manager.config import Settings
from epic_pid_manager.services.registry import (
    RC_ERROR,
    RC_HANDLE_ALREADY_EXISTS,
    RC_HANDLE_NOT_FOUND,
    RC_SUCCESS,
    RegistryResponse,
)

MAPPING_XML = """<?xml version="1.0" encoding="UTF-8"?>
<mapping>
    <map>
        <field>title</field>
        <default>Untitled</default>
        <metadata>TitleDocMain</metadata>
        <altMetadata>MainTitle</altMetadata>
    </map>
    <map>
        <field>author</field>
        <default></default>
        <metadata>Author</metadata>
    </map>
    <map>
        <field>publisher</field>
        <default>Stadtarchiv Duderstadt</default>
        <metadata>Publisher</metadata>
        <altMetadata>PublisherName</altMetadata>
    </map>
    <map>
        <field>pubdate</field>
        <default></default>
        <metadata>PublicationYear</metadata>
    </map>
    <map>
        <field>inst</field>
        <default>Example Library</default>
        <metadata></metadata>
    </map>
    <map>
        <field>creatorName</field>
        <default></default>
        <metadata>creator</metadata>
        <altMetadata>author</altMetadata>
    </map>
</mapping>
"""


class StubRegistry:
    """In-memory stand-in for the handle registry."""

    def __init__(self, registered=()):
        self.registered = set(registered)
        self.create_conflicts = set()
        self.create_errors = set()
        self.delete_errors = set()
        self.resolve_codes = {}
        self.calls = []
        self.closed = False

    def resolve(self, handle):
        self.calls.append(("resolve", handle))
        if handle in self.resolve_codes:
            return RegistryResponse(code=self.resolve_codes[handle], http_status=500)
        if handle in self.registered:
            return RegistryResponse(code=RC_SUCCESS, http_status=200, handle=handle)
        return RegistryResponse(code=RC_HANDLE_NOT_FOUND, http_status=404)

    def create(self, handle, values):
        self.calls.append(("create", handle, list(values)))
        if handle in self.create_errors:
            return RegistryResponse(code=RC_ERROR, http_status=500, message="boom")
        if handle in self.registered or handle in self.create_conflicts:
            return RegistryResponse(code=RC_HANDLE_ALREADY_EXISTS, http_status=409)
        self.registered.add(handle)
        return RegistryResponse(code=RC_SUCCESS, http_status=201, handle=handle)

    def modify(self, handle, values):
        self.calls.append(("modify", handle, list(values)))
        if handle not in self.registered:
            return RegistryResponse(code=RC_HANDLE_NOT_FOUND, http_status=404)
        return RegistryResponse(code=RC_SUCCESS, http_status=200, handle=handle)

    def delete(self, handle):
        self.calls.append(("delete", handle))
        if handle in self.delete_errors:
            return RegistryResponse(code=RC_ERROR, http_status=500, message="boom")
        if handle in self.registered:
            self.registered.discard(handle)
            return RegistryResponse(code=RC_SUCCESS, http_status=200, handle=handle)
        return RegistryResponse(code=RC_HANDLE_NOT_FOUND, http_status=404)

    def close(self):
        self.closed = True

    def calls_of(self, action):
        return [call for call in self.calls if call[0] == action]


@pytest.fixture
def sample_settings(tmp_path) -> Settings:
    work = tmp_path / "work"
    work.mkdir()
    return Settings(
        handle_api_url="https://handle.example:8000",
        handle_user="0.NA/21.T11998",
        handle_base="21.T11998",
        handle_url="https://viewer.example/resolver?handle=",
        handle_password="secret",
        prefix="proj",
        separator="-",
        temp_folder=str(work),
    )


@pytest.fixture
def registry() -> StubRegistry:
    return StubRegistry()


@pytest.fixture
def mapping_file(tmp_path):
    path = tmp_path / "doi_mapping.xml"
    path.write_text(MAPPING_XML, encoding="utf-8")
    return path
