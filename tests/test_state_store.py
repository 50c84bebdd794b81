from __future__ import annotations

from pathlib import Path

import pytest

from webgen_factory.errors import StorageError
from webgen_factory.models import Amendment, BuildStatus, ConversationMessage, ConversationState
from webgen_factory.state_store import ArtifactStore, ProjectStore, content_type_for, project_scoped_root, sanitize_project_id


def _store(tmp_path: Path) -> ProjectStore:
    return ProjectStore(tmp_path, project_id="PROJECT-001")


def test_build_versions_are_monotonic(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create_build_record()
    second = store.create_build_record()
    assert (first.version, second.version) == (1, 2)
    assert first.status == BuildStatus.PENDING


def test_finalized_records_are_immutable(tmp_path: Path) -> None:
    store = _store(tmp_path)
    record = store.create_build_record()
    finalized = store.finalize_build(record.build_id, BuildStatus.FAILED, error="boom")

    assert finalized.finalized_at is not None
    with pytest.raises(ValueError):
        store.finalize_build(record.build_id, BuildStatus.SUCCESS)
    with pytest.raises(ValueError):
        store.finalize_build(store.create_build_record().build_id, BuildStatus.PENDING)
    assert store.read_build(record.build_id).error == "boom"


def test_version_files_are_write_once(tmp_path: Path) -> None:
    store = _store(tmp_path)
    record = store.create_build_record()
    store.write_version_files(record, {"./src/App.tsx": "v1"})

    assert store.files_for_version(1) == {"src/App.tsx": "v1"}
    with pytest.raises(StorageError):
        store.write_version_files(record, {"src/App.tsx": "other"})


def test_current_version_cannot_be_discarded(tmp_path: Path) -> None:
    store = _store(tmp_path)
    record = store.create_build_record()
    store.write_version_files(record, {"src/App.tsx": "v1"})
    store.set_current(store.finalize_build(record.build_id, BuildStatus.SUCCESS))

    with pytest.raises(StorageError):
        store.discard_version_files(record)


def test_conversation_log_appends_only_new_messages(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = ConversationState(project_id="PROJECT-001")
    state = state.append(ConversationMessage(role="user", content="Add a footer"))
    state = state.append(ConversationMessage(role="assistant", content="Done"))

    assert len(store.append_messages(state.messages)) == 2
    state = state.append(ConversationMessage(role="user", content="Make it blue"))
    assert [message.content for message in store.append_messages(state.messages)] == ["Make it blue"]

    log = store.read_conversation()
    assert [message.sequence for message in log] == [1, 2, 3]
    assert [message.content for message in store.read_conversation(limit=1)] == ["Make it blue"]


def test_amendments_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    amendment = Amendment(project_id="PROJECT-001", prompt="Add a footer", summary="Added", file_paths=["src/Footer.tsx"])
    store.write_amendment(amendment)
    assert store.list_amendments() == [amendment]


def test_artifact_store_records_content_types(tmp_path: Path) -> None:
    artifacts = ArtifactStore(tmp_path)
    key = artifacts.put("local/PROJECT-001/v1", "assets/logo.svg", b"<svg/>")

    assert key == "local/PROJECT-001/v1/assets/logo.svg"
    assert (tmp_path / key).read_bytes() == b"<svg/>"
    assert artifacts.read_manifest("local/PROJECT-001/v1")["assets/logo.svg"] == {"content_type": "image/svg+xml", "size": 6}
    assert content_type_for("fonts/a.woff2") == "font/woff2"
    assert content_type_for("blob.unknownext") == "application/octet-stream"


def test_project_ids_are_sanitized(tmp_path: Path) -> None:
    assert sanitize_project_id(" my project/1 ") == "my-project-1"
    with pytest.raises(ValueError):
        sanitize_project_id("///")
    scoped = project_scoped_root(tmp_path, "PROJECT-001")
    assert scoped == tmp_path / "projects" / "PROJECT-001"
    assert project_scoped_root(scoped, "PROJECT-001") == scoped
