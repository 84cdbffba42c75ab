from dataclasses import replace

import pytest

from epic_pid_manager.models import DigitalDocument, DocumentNode, Metadata
from epic_pid_manager import pipeline
from epic_pid_manager.pipeline import PipelineError, run_batch, run_pipeline
from epic_pid_manager.services.document import DocumentStore
from epic_pid_manager.services.handles import HandleClient

BASE = "21.T11998/proj-doc42"


def make_document(**logical_kwargs) -> DigitalDocument:
    logical = DocumentNode(
        type="Monograph",
        metadata=[
            Metadata(type="CatalogIDDigital", value="doc42"),
            Metadata(type="TitleDocMain", value="Chronicle"),
        ],
        **logical_kwargs,
    )
    physical = DocumentNode(
        type="BoundBook",
        children=[DocumentNode(type="page"), DocumentNode(type="page")],
    )
    return DigitalDocument(logical=logical, physical=physical)


def save(tmp_path, document, name="meta.json"):
    path = tmp_path / name
    DocumentStore().write(path, document)
    return path


def handles_of(node):
    return [md.value for md in node.metadata_by_type("_urn")]


@pytest.fixture
def use_registry(monkeypatch, registry):
    def factory(settings, citation_extractor=None):
        return HandleClient(settings, registry=registry, citation_extractor=citation_extractor)

    monkeypatch.setattr("epic_pid_manager.pipeline.HandleClient", factory)
    return registry


def test_logical_handle_is_minted_and_saved(tmp_path, sample_settings, use_registry):
    settings = replace(sample_settings, handle_for_physical_document=False)
    path = save(tmp_path, make_document())

    result = run_pipeline(path, settings)

    assert result.success
    saved = DocumentStore().read(path)
    assert handles_of(saved.logical) == [BASE]
    assert handles_of(saved.physical) == []
    assert [call[1] for call in use_registry.calls_of("create")] == [BASE]
    assert [m.text for m in result.messages] == [f"Handle created for Monograph: {BASE}"]


def test_collision_adds_suffix(tmp_path, sample_settings, use_registry):
    settings = replace(sample_settings, handle_for_physical_document=False)
    use_registry.registered.add(BASE)
    path = save(tmp_path, make_document())

    run_pipeline(path, settings)

    assert handles_of(DocumentStore().read(path).logical) == [f"{BASE}-1"]


def test_physical_pages_get_their_own_handles(tmp_path, sample_settings, use_registry):
    path = save(tmp_path, make_document())

    result = run_pipeline(path, sample_settings)

    assert result.success
    saved = DocumentStore().read(path)
    assert handles_of(saved.logical) == [BASE]
    assert handles_of(saved.physical) == [f"{BASE}-1"]
    assert [handles_of(page) for page in saved.physical.children] == [[f"{BASE}-2"], [f"{BASE}-3"]]


def test_second_run_updates_instead_of_minting(tmp_path, sample_settings, use_registry):
    path = save(tmp_path, make_document())
    run_pipeline(path, sample_settings)
    use_registry.calls.clear()

    result = run_pipeline(path, sample_settings)

    assert result.success
    assert use_registry.calls_of("create") == []
    assert len(use_registry.calls_of("modify")) == 4
    assert handles_of(DocumentStore().read(path).logical) == [BASE]


def test_physical_failure_skips_saving(tmp_path, sample_settings, use_registry):
    use_registry.create_errors.add(f"{BASE}-1")
    path = save(tmp_path, make_document())
    before = path.read_text(encoding="utf-8")

    result = run_pipeline(path, sample_settings)

    assert not result.success
    assert path.read_text(encoding="utf-8") == before
    assert any(m.level == "error" for m in result.messages)


def test_logical_failure_does_not_stop_physical_pass(tmp_path, sample_settings, use_registry):
    document = make_document(allowed_metadata_types=["CatalogIDDigital", "TitleDocMain"])
    settings = replace(sample_settings, handle_for_physical_pages=False)
    path = save(tmp_path, document)

    result = run_pipeline(path, settings)

    assert result.success
    saved = DocumentStore().read(path)
    assert handles_of(saved.logical) == []
    assert handles_of(saved.physical) == [f"{BASE}-1"]
    assert [m.level for m in result.messages] == ["error", "info"]


def test_anchor_uses_first_child(tmp_path, sample_settings, use_registry):
    volume = DocumentNode(type="Volume", metadata=[Metadata(type="CatalogIDDigital", value="vol7")])
    anchor = DocumentNode(type="Periodical", anchor=True, children=[volume])
    settings = replace(sample_settings, handle_for_physical_document=False)
    path = save(tmp_path, DigitalDocument(logical=anchor, physical=DocumentNode(type="BoundBook")))

    run_pipeline(path, settings)

    saved = DocumentStore().read(path)
    assert handles_of(saved.logical) == []
    assert handles_of(saved.logical.children[0]) == ["21.T11998/proj-vol7"]


def test_doi_generation_attaches_citation(tmp_path, sample_settings, use_registry, mapping_file):
    settings = replace(
        sample_settings,
        handle_for_physical_document=False,
        doi_generate=True,
        doi_mapping=str(mapping_file),
    )
    path = save(tmp_path, make_document())

    run_pipeline(path, settings)

    values = use_registry.calls_of("create")[0][2]
    assert ("TITLE", "Chronicle") in [(value.type, value.data) for value in values]


def test_missing_identifier_fails(tmp_path, sample_settings, use_registry):
    document = DigitalDocument(logical=DocumentNode(type="Monograph"), physical=DocumentNode(type="BoundBook"))
    path = save(tmp_path, document)

    result = run_pipeline(path, sample_settings)

    assert not result.success
    assert use_registry.calls == []


def test_removal_strips_handles_when_all_deleted(tmp_path, sample_settings, use_registry):
    path = save(tmp_path, make_document())
    run_pipeline(path, sample_settings)

    result = run_pipeline(path, replace(sample_settings, remove_handles="doc42"))

    assert result.success
    saved = DocumentStore().read(path)
    assert handles_of(saved.logical) == []
    assert handles_of(saved.physical) == []
    assert len(use_registry.calls_of("delete")) == 4


def test_removal_keeps_metadata_when_a_delete_fails(tmp_path, sample_settings, use_registry):
    path = save(tmp_path, make_document())
    run_pipeline(path, sample_settings)
    use_registry.delete_errors.add(f"{BASE}-2")
    before = path.read_text(encoding="utf-8")

    result = run_pipeline(path, replace(sample_settings, remove_handles="doc42"))

    assert not result.success
    assert path.read_text(encoding="utf-8") == before


def test_batch_continues_after_a_failed_document(tmp_path, sample_settings, use_registry):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    good = save(tmp_path, make_document())

    results = run_batch([broken, good], sample_settings)

    assert [result.success for result in results] == [False, True]


def test_batch_requires_documents(sample_settings):
    with pytest.raises(PipelineError):
        run_batch([], sample_settings)


def test_working_directories_are_cleaned_up(tmp_path, sample_settings, use_registry):
    path = save(tmp_path, make_document())

    run_pipeline(path, sample_settings)

    assert list((tmp_path / "work").iterdir()) == []


def test_unreadable_certificate_is_reported_per_document(tmp_path, sample_settings):
    settings = replace(sample_settings, handle_password=None, handle_certificate=str(tmp_path / "nope.pem"))
    first = save(tmp_path, make_document(), name="first.json")
    second = save(tmp_path, make_document(), name="second.json")

    results = run_batch([first, second], settings)

    assert [result.success for result in results] == [False, False]
    for result in results:
        assert [m.level for m in result.messages] == ["error"]
        assert "client certificate" in result.messages[0].text
    assert list((tmp_path / "work").iterdir()) == []


def test_missing_mapping_file_only_skips_the_logical_handle(tmp_path, sample_settings, use_registry):
    settings = replace(sample_settings, doi_generate=True, doi_mapping=str(tmp_path / "missing.xml"))
    path = save(tmp_path, make_document())

    result = run_pipeline(path, settings)

    assert result.success
    saved = DocumentStore().read(path)
    assert handles_of(saved.logical) == []
    assert handles_of(saved.physical) == [BASE]
    assert [handles_of(page) for page in saved.physical.children] == [[f"{BASE}-1"], [f"{BASE}-2"]]
    assert result.messages[0].level == "error"
    assert "logical element" in result.messages[0].text


def test_exhausted_suffixes_get_their_own_message(tmp_path, sample_settings, monkeypatch, registry):
    def factory(settings, citation_extractor=None):
        return HandleClient(settings, registry=registry, max_suffix=1)

    monkeypatch.setattr("epic_pid_manager.pipeline.HandleClient", factory)
    registry.registered.update([BASE, f"{BASE}-1"])
    path = save(tmp_path, make_document())

    result = run_pipeline(path, replace(sample_settings, handle_for_physical_document=False))

    assert [m.level for m in result.messages] == ["error"]
    assert result.messages[0].text.startswith("No free suffix left registering Handle for logical element")


def test_document_locks_are_released_after_a_run(tmp_path, sample_settings, use_registry):
    path = save(tmp_path, make_document())

    run_pipeline(path, sample_settings)
    run_pipeline(tmp_path / "absent.json", sample_settings)

    assert pipeline._locks == {}
