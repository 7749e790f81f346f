"""Unit tests for epubcache_backend.publisher."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from epubcache_backend.errors import PublishError
from epubcache_backend.models import DocumentIndex, Workspace
from epubcache_backend.publisher import DurablePublisher, LocalContentStore, user_root


@pytest.fixture()
def workspace(tmp_path: Path) -> Workspace:
    root = tmp_path / "books" / "alice" / "doc-1"
    (root / "OEBPS" / "images").mkdir(parents=True)
    (root / "OEBPS" / "ch1.xhtml").write_text("<p>one</p>")
    (root / "OEBPS" / "images" / "cover.png").write_bytes(b"\x89PNG....")
    (root / "mimetype").write_text("application/epub+zip")
    (root / "index.json").write_text("{}")
    return Workspace(owner="alice", document_id="doc-1", root=root, index_path=root / "index.json")


@pytest.fixture()
def index() -> DocumentIndex:
    return DocumentIndex(document_id="doc-1", title="Moby Dick", spine=["OEBPS/ch1.xhtml"])


class TestDurablePublisher:
    def test_first_publish_uploads_everything(
        self, tmp_path: Path, workspace: Workspace, index: DocumentIndex
    ) -> None:
        store = LocalContentStore(tmp_path / "store")
        mirror = DurablePublisher(store).publish(workspace, index)

        assert mirror.collection_id == "/user/alice/epub/doc-1/"
        assert mirror.spine == ["OEBPS/ch1.xhtml"]
        assert mirror.title == "Moby Dick"
        assert mirror.uploaded == 3
        assert mirror.skipped == 0
        published = tmp_path / "store" / "user" / "alice" / "epub" / "doc-1"
        assert (published / "OEBPS" / "images" / "cover.png").read_bytes() == b"\x89PNG...."
        assert not (published / "index.json").exists()

    def test_second_publish_uploads_nothing(
        self, tmp_path: Path, workspace: Workspace, index: DocumentIndex
    ) -> None:
        publisher = DurablePublisher(LocalContentStore(tmp_path / "store"))
        publisher.publish(workspace, index)
        again = publisher.publish(workspace, index)
        assert again.uploaded == 0
        assert again.skipped == 3

    def test_changed_size_is_reuploaded(
        self, tmp_path: Path, workspace: Workspace, index: DocumentIndex
    ) -> None:
        publisher = DurablePublisher(LocalContentStore(tmp_path / "store"))
        publisher.publish(workspace, index)
        (workspace.root / "OEBPS" / "ch1.xhtml").write_text("<p>one, revised</p>")

        again = publisher.publish(workspace, index)
        assert again.uploaded == 1
        published = tmp_path / "store" / "user" / "alice" / "epub" / "doc-1" / "OEBPS" / "ch1.xhtml"
        assert published.read_text() == "<p>one, revised</p>"

    def test_missing_title_defaults(self, tmp_path: Path, workspace: Workspace) -> None:
        mirror = DurablePublisher(LocalContentStore(tmp_path / "store")).publish(
            workspace, DocumentIndex(document_id="doc-1")
        )
        assert mirror.title == "EPUB"

    def test_missing_workspace(self, tmp_path: Path, index: DocumentIndex) -> None:
        ws = Workspace(owner="a", document_id="d", root=tmp_path / "nope", index_path=tmp_path / "nope" / "i")
        with pytest.raises(PublishError):
            DurablePublisher(LocalContentStore(tmp_path / "store")).publish(ws, index)


class TestLocalContentStore:
    def test_collection_requires_parent(self, tmp_path: Path) -> None:
        store = LocalContentStore(tmp_path)
        with pytest.raises(PublishError):
            store.add_collection("/a/b/", "B")

    def test_duplicate_resource_rejected(self, tmp_path: Path) -> None:
        store = LocalContentStore(tmp_path)
        store.add_resource("/x.txt", io.BytesIO(b"1"), "text/plain", "x.txt")
        assert store.resource_length("/x.txt") == 1
        with pytest.raises(PublishError):
            store.add_resource("/x.txt", io.BytesIO(b"2"), "text/plain", "x.txt")

    def test_ids_stay_inside_root(self, tmp_path: Path) -> None:
        store = LocalContentStore(tmp_path / "store")
        store.add_resource("/../../escape.txt", io.BytesIO(b"z"), "text/plain", "escape.txt")
        assert (tmp_path / "store" / "escape.txt").exists()
        assert not (tmp_path / "escape.txt").exists()


def test_user_root_sanitises_owner() -> None:
    assert user_root("alice@example.org") == "/user/alice_example.org/epub/"
