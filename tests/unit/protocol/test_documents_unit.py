# tests/unit/protocol/test_documents_unit.py

import pathlib
import sys

import pytest
import pytest_asyncio

# --- Determine project root dynamically ---
current_dir = pathlib.Path(__file__).parent
project_root = current_dir.parent.parent.parent
sys.path.insert(0, str(project_root / "src"))

try:
    from lsp_bridge.errors import (
        ConnectionClosedError,
        DocumentAlreadyOpenError,
        DocumentNotOpenError,
        SessionNotStartedError,
        TransportError,
    )
    from lsp_bridge.protocol.connection import LspConnection
    from lsp_bridge.protocol.documents import DocumentRecord, DocumentSession
except ImportError as e:
    pytest.skip(
        f"Skipping document session unit tests due to import error: {e}",
        allow_module_level=True,
    )

URI = "file:///a.ts"


@pytest_asyncio.fixture
async def ready_session(stdio_config, transport_factory):
    """A DocumentSession over a started connection; stops it afterwards."""
    conn = LspConnection(stdio_config, transport_factory=transport_factory, shutdown_timeout=0.5, exit_delay=0)
    await conn.start("file:///workspace")
    yield DocumentSession(conn), transport_factory.transport
    await conn.stop()


@pytest.mark.asyncio
async def test_open_change_close_sends_three_notifications(ready_session):
    docs, transport = ready_session

    await docs.open(URI, "ts", "x=1")
    await docs.change(URI, "x=2")
    await docs.close(URI)

    sync = [m for m in transport.notifications() if m["method"].startswith("textDocument/")]
    assert [m["method"] for m in sync] == [
        "textDocument/didOpen",
        "textDocument/didChange",
        "textDocument/didClose",
    ]
    assert sync[0]["params"]["textDocument"] == {
        "uri": URI,
        "languageId": "ts",
        "version": 1,
        "text": "x=1",
    }
    assert sync[1]["params"] == {
        "textDocument": {"uri": URI, "version": 2},
        "contentChanges": [{"text": "x=2"}],
    }
    assert sync[2]["params"] == {"textDocument": {"uri": URI}}
    assert docs.get(URI) is None
    assert not docs.is_open(URI)


@pytest.mark.asyncio
@pytest.mark.parametrize("changes", [0, 1, 5])
async def test_version_is_one_plus_number_of_changes(ready_session, changes):
    docs, _ = ready_session
    await docs.open(URI, "ts", "")
    for i in range(changes):
        record = await docs.change(URI, f"v{i}")
    assert docs.get(URI).version == 1 + changes
    if changes:
        assert record == DocumentRecord(URI, "ts", 1 + changes, f"v{changes - 1}")


@pytest.mark.asyncio
@pytest.mark.parametrize("uri", ["file:///never-opened.ts", "", "untitled:Untitled-1"])
async def test_change_or_close_unknown_uri_fails(ready_session, uri):
    docs, transport = ready_session
    sent_before = len(transport.sent)

    with pytest.raises(DocumentNotOpenError) as exc_info:
        await docs.change(uri, "text")
    assert exc_info.value.uri == uri
    with pytest.raises(DocumentNotOpenError):
        await docs.close(uri)
    assert len(transport.sent) == sent_before


@pytest.mark.asyncio
async def test_change_after_close_fails(ready_session):
    docs, _ = ready_session
    await docs.open(URI, "ts", "x")
    await docs.close(URI)
    with pytest.raises(DocumentNotOpenError):
        await docs.change(URI, "y")


@pytest.mark.asyncio
async def test_reopen_of_open_document_is_rejected(ready_session):
    docs, transport = ready_session
    await docs.open(URI, "ts", "x")
    await docs.change(URI, "y")

    with pytest.raises(DocumentAlreadyOpenError):
        await docs.open(URI, "ts", "z")

    assert docs.get(URI).version == 2
    assert docs.get(URI).text == "y"
    assert len(transport.notifications("textDocument/didOpen")) == 1


@pytest.mark.asyncio
async def test_reopen_after_close_starts_at_version_one(ready_session):
    docs, _ = ready_session
    await docs.open(URI, "ts", "x")
    await docs.change(URI, "y")
    await docs.close(URI)

    record = await docs.open(URI, "ts", "z")
    assert record.version == 1


@pytest.mark.asyncio
async def test_failed_write_leaves_record_untouched(ready_session):
    docs, transport = ready_session
    await docs.open(URI, "ts", "x")
    transport.fail_writes = True

    with pytest.raises(TransportError):
        await docs.change(URI, "y")

    assert docs.get(URI) == DocumentRecord(URI, "ts", 1, "x")
    with pytest.raises(ConnectionClosedError):
        await docs.change(URI, "z")


@pytest.mark.asyncio
async def test_clear_drops_records_without_notifications(ready_session):
    docs, transport = ready_session
    await docs.open(URI, "ts", "x")
    await docs.open("file:///b.ts", "ts", "y")
    sent_before = len(transport.sent)

    docs.clear()

    assert docs.open_uris() == []
    assert len(transport.sent) == sent_before


@pytest.mark.asyncio
async def test_operations_before_start_are_rejected(stdio_config, transport_factory):
    docs = DocumentSession(LspConnection(stdio_config, transport_factory=transport_factory))
    with pytest.raises(SessionNotStartedError):
        await docs.open(URI, "ts", "x")
    with pytest.raises(SessionNotStartedError):
        await docs.change(URI, "x")
    with pytest.raises(SessionNotStartedError):
        await docs.close(URI)
    assert transport_factory.created == []
