from __future__ import annotations

import asyncio
from pathlib import Path


def _create(client) -> str:
    response = client.post("/session/create")
    assert response.status_code == 201
    return response.json()["sessionId"]


def _upload(client, session_id: str, name: str, content: bytes, content_type: str = "application/pdf"):
    return client.post(f"/session/upload/{session_id}", files={"file": (name, content, content_type)})


def _upload_ok(client, session_id: str, name: str, content: bytes) -> str:
    response = _upload(client, session_id, name, content)
    assert response.status_code == 200, response.text
    return response.json()["fileId"]


def test_merge_scenario_preserves_declared_order(client, poll, settings):
    sid = _create(client)
    f0 = _upload_ok(client, sid, "f0.pdf", b"<f0>")
    f1 = _upload_ok(client, sid, "f1.pdf", b"<f1>")
    f2 = _upload_ok(client, sid, "f2.pdf", b"<f2>")

    response = client.post(f"/session/execute/{sid}", json={"tool": "merge", "files": [f2, f0, f1]})
    assert response.status_code == 202
    assert response.json()["status"] == "processing"

    body = poll(sid)
    assert body["status"] == "complete"
    assert body["tool"] == "merge"
    assert "message" not in body

    download = client.get(body["downloadUrl"])
    assert download.status_code == 200
    assert download.content == b"<f2><f0><f1>"
    assert download.headers["content-disposition"].startswith('attachment; filename="f2.pdf"')
    assert download.headers["cache-control"] == "no-store"

    # Download reclaimed the session and its directory.
    assert client.get(f"/session/status/{sid}").status_code == 404
    assert client.get(body["downloadUrl"]).status_code == 404
    assert not (settings.uploads_root / sid).exists()


def test_merge_with_field_name_mapping_is_resorted_by_index(client, poll):
    sid = _create(client)
    ids = [_upload_ok(client, sid, f"p{i}.pdf", f"[{i}]".encode()) for i in range(11)]
    # Fields arrive shuffled; "file-10" must sort after "file-9".
    mapping = {f"file-{i}": ids[i] for i in (10, 3, 0, 9, 1, 2, 8, 4, 7, 5, 6)}

    assert client.post(f"/session/execute/{sid}", json={"tool": "merge", "files": mapping}).status_code == 202
    body = poll(sid)
    content = client.get(body["downloadUrl"]).content
    assert content == b"".join(f"[{i}]".encode() for i in range(11))


def test_execute_with_empty_files_is_rejected_without_state_change(client):
    sid = _create(client)
    _upload_ok(client, sid, "a.pdf", b"a")

    response = client.post(f"/session/execute/{sid}", json={"tool": "merge", "files": []})
    assert response.status_code == 400
    assert client.get(f"/session/status/{sid}").json()["status"] == "created"


def test_merge_minimum_file_count(client):
    sid = _create(client)
    only = _upload_ok(client, sid, "a.pdf", b"a")

    response = client.post(f"/session/execute/{sid}", json={"tool": "merge", "files": [only]})
    assert response.status_code == 400
    assert "at least 2" in response.json()["error"]
    assert client.get(f"/session/status/{sid}").json()["status"] == "created"


def test_unknown_tool_and_unknown_file_are_validation_errors(client):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "a.pdf", b"a")

    assert client.post(f"/session/execute/{sid}", json={"tool": "nope", "files": [file_id]}).status_code == 400
    response = client.post(f"/session/execute/{sid}", json={"tool": "fail", "files": ["0000000000000-deadbeef-x.pdf"]})
    assert response.status_code == 400


def test_malformed_execute_body_is_400(client):
    sid = _create(client)
    response = client.post(f"/session/execute/{sid}", json={"files": ["x"]})
    assert response.status_code == 400
    assert "tool" in response.json()["error"]


def test_second_execute_while_processing_conflicts(client, gate, poll):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "a.pdf", b"a")

    assert client.post(f"/session/execute/{sid}", json={"tool": "gate", "files": [file_id]}).status_code == 202
    second = client.post(f"/session/execute/{sid}", json={"tool": "gate", "files": [file_id]})
    assert second.status_code == 409
    assert client.get(f"/session/status/{sid}").json()["status"] == "processing"

    gate.event.set()
    assert poll(sid)["status"] == "complete"
    assert gate.calls == 1


def test_terminal_session_cannot_run_again(client, poll):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "a.pdf", b"a")
    client.post(f"/session/execute/{sid}", json={"tool": "fail", "files": [file_id]})
    assert poll(sid)["status"] == "error"

    response = client.post(f"/session/execute/{sid}", json={"tool": "fail", "files": [file_id]})
    assert response.status_code == 409
    assert client.get(f"/session/status/{sid}").json()["status"] == "error"


def test_tool_failure_is_reported_through_polling_without_paths(client, poll, settings):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "secret.pdf", b"a")

    assert client.post(f"/session/execute/{sid}", json={"tool": "fail", "files": [file_id]}).status_code == 202
    body = poll(sid)
    assert body["status"] == "error"
    assert "downloadUrl" not in body
    assert str(settings.uploads_root) not in body["message"]
    assert "/" not in body["message"]
    # Inputs are removed after a failed run.
    assert not (settings.uploads_root / sid / file_id).exists()


def test_unexpected_exception_never_leaves_session_processing(client, poll):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "a.pdf", b"a")

    client.post(f"/session/execute/{sid}", json={"tool": "explode", "files": [file_id]})
    body = poll(sid)
    assert body["status"] == "error"
    assert body["message"] == "Unexpected failure while running 'explode'."

    other = _create(client)
    assert client.get(f"/session/status/{other}").json()["status"] == "created"


def test_partial_output_is_discarded(client, poll, settings):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "a.pdf", b"a")

    client.post(f"/session/execute/{sid}", json={"tool": "partial", "files": [file_id]})
    assert poll(sid)["status"] == "error"
    assert list((settings.uploads_root / sid).iterdir()) == []


def test_upload_exceeding_limit_is_not_persisted(client, settings):
    sid = _create(client)
    too_big = b"x" * (settings.max_upload_bytes + 1)

    response = _upload(client, sid, "big.pdf", too_big)
    assert response.status_code == 413
    assert "fileId" not in response.json()
    assert list((settings.uploads_root / sid).iterdir()) == []


def test_upload_rejects_unsupported_type(client):
    sid = _create(client)
    response = _upload(client, sid, "run.sh", b"#!/bin/sh", "application/x-sh")
    assert response.status_code == 400


def test_upload_accepts_octet_stream_with_known_extension(client):
    sid = _create(client)
    response = _upload(client, sid, "scan.png", b"\x89PNG", "application/octet-stream")
    assert response.status_code == 200
    assert response.json()["fileId"].endswith("-scan.png")


def test_upload_file_id_is_sanitized(client, settings):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "my report (final).pdf", b"a")
    assert file_id.endswith("-my_report__final_.pdf")
    assert (settings.uploads_root / sid / file_id).is_file()


def test_unknown_session_is_404_everywhere(client):
    ghost = "0b5a3c1e-8f7d-4a2b-9c6d-1e2f3a4b5c6d"
    assert client.get(f"/session/status/{ghost}").status_code == 404
    assert _upload(client, ghost, "a.pdf", b"a").status_code == 404
    assert client.post(f"/session/execute/{ghost}", json={"tool": "merge", "files": ["a"]}).status_code == 404
    assert client.get(f"/download/{ghost}/a.pdf").status_code == 404
    assert client.get("/session/status/not-a-uuid").status_code == 404


def test_download_of_wrong_name_is_404_and_keeps_session(client, poll):
    sid = _create(client)
    ids = [_upload_ok(client, sid, f"{n}.pdf", n.encode()) for n in ("a", "b")]
    client.post(f"/session/execute/{sid}", json={"tool": "merge", "files": ids})
    body = poll(sid)

    assert client.get(f"/download/{sid}/other.pdf").status_code == 404
    assert client.get(f"/session/status/{sid}").json()["status"] == "complete"
    assert client.get(body["downloadUrl"]).status_code == 200


def test_download_before_completion_is_404(client, gate):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "a.pdf", b"a")
    client.post(f"/session/execute/{sid}", json={"tool": "gate", "files": [file_id]})
    assert client.get(f"/download/{sid}/{file_id}").status_code == 404


def test_upload_after_execute_conflicts(client, gate):
    sid = _create(client)
    file_id = _upload_ok(client, sid, "a.pdf", b"a")
    client.post(f"/session/execute/{sid}", json={"tool": "gate", "files": [file_id]})
    assert _upload(client, sid, "b.pdf", b"b").status_code == 409


def test_status_polling_has_no_side_effects(client):
    sid = _create(client)
    first = client.get(f"/session/status/{sid}").json()
    for _ in range(5):
        assert client.get(f"/session/status/{sid}").json() == first
    assert first["status"] == "created"
    assert set(first) == {"sessionId", "status", "startTime"}


def test_health(client):
    _create(client)
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["sessions"] == 1


def test_startup_purges_leftover_session_dirs(settings, executor):
    from fastapi.testclient import TestClient

    from server import create_app

    leftover = settings.uploads_root / "0b5a3c1e-8f7d-4a2b-9c6d-1e2f3a4b5c6d"
    leftover.mkdir(parents=True)
    (leftover / "old.pdf").write_bytes(b"x")
    unrelated = settings.uploads_root / "keep-me"
    unrelated.mkdir()

    with TestClient(create_app(settings, executor=executor)):
        assert not leftover.exists()
        assert unrelated.exists()


def test_create_returns_500_when_storage_fails(tmp_path, executor):
    from fastapi.testclient import TestClient

    from doctools_backend.config import Settings
    from server import create_app

    app = create_app(Settings(uploads_root=tmp_path / "uploads"), executor=executor)
    with TestClient(app) as c:
        root = Path(app.state.services.store.root)
        root.rmdir()
        root.write_text("not a directory")
        response = c.post("/session/create")
        assert response.status_code == 500
        assert app.state.services.registry.snapshot() == []


def _download_then_disconnect(app, path: str) -> list[dict]:
    """Drive the ASGI app directly; the client goes away after the first body chunk."""

    async def run() -> list[dict]:
        gone = asyncio.Event()
        sent: list[dict] = []
        request_sent = False

        async def receive() -> dict:
            nonlocal request_sent
            if not request_sent:
                request_sent = True
                return {"type": "http.request", "body": b"", "more_body": False}
            await gone.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            sent.append(message)
            if message["type"] == "http.response.body" and message.get("body"):
                gone.set()

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver")],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        await app(scope, receive, send)
        return sent

    return asyncio.run(run())


def test_interrupted_download_keeps_session_for_retry(client, poll):
    sid = _create(client)
    ids = [_upload_ok(client, sid, f"{n}.pdf", n.encode() * 1000) for n in ("a", "b")]
    client.post(f"/session/execute/{sid}", json={"tool": "merge", "files": ids})
    body = poll(sid)

    sent = _download_then_disconnect(client.app, body["downloadUrl"])
    assert sent[0]["type"] == "http.response.start"
    assert sent[0]["status"] == 200

    assert client.get(f"/session/status/{sid}").json()["status"] == "complete"
    retry = client.get(body["downloadUrl"])
    assert retry.status_code == 200
    assert retry.content == b"a" * 1000 + b"b" * 1000
    assert client.get(f"/session/status/{sid}").status_code == 404
