"""HTTP surface: request parsing, status codes and response shapes."""

import pytest
from fastapi.testclient import TestClient

from config import settings
from main import create_app


@pytest.fixture
def client(orchestrator) -> TestClient:
    return TestClient(create_app(orchestrator))


def _chapter(title="Chapter 1", buffer=(1, 2, 3), **extra):
    body = {"chapterTitle": title, "buffer": list(buffer)}
    body.update(extra)
    return body


def test_status_endpoints(client) -> None:
    assert client.get("/api/status").json()["status"] == "running"
    assert client.get("/api/health").json()["status"] == "healthy"


def test_ingest_returns_chapter_summary(client) -> None:
    response = client.post("/api/audiobook", json=_chapter(bookId="book", format="mp3"))

    assert response.status_code == 200
    assert response.json() == {
        "index": 0,
        "title": "Chapter 1",
        "duration": 3.0,
        "status": "completed",
        "bookId": "book",
        "format": "mp3",
    }


def test_ingest_without_book_id_starts_a_new_book(client) -> None:
    first = client.post("/api/audiobook", json=_chapter()).json()
    second = client.post("/api/audiobook", json=_chapter()).json()
    assert first["bookId"] and second["bookId"]
    assert first["bookId"] != second["bookId"]
    assert first["index"] == second["index"] == 0


def test_ingest_with_explicit_index(client) -> None:
    response = client.post("/api/audiobook", json=_chapter(bookId="book", chapterIndex=4))
    assert response.json()["index"] == 4
    response = client.post("/api/audiobook", json=_chapter(bookId="book"))
    assert response.json()["index"] == 0


@pytest.mark.parametrize(
    "body",
    [
        _chapter(bookId="../escape"),
        _chapter(bookId="book", chapterIndex=-1),
        _chapter(bookId="book", chapterIndex=1.5),
        _chapter(bookId="book", format="wav"),
        _chapter(bookId="book", buffer=()),
        _chapter(bookId="book", buffer=(1, 300)),
        {"chapterTitle": "No audio"},
    ],
)
def test_ingest_rejects_bad_input(client, body) -> None:
    response = client.post("/api/audiobook", json=body)
    assert response.status_code == 400
    assert "error" in response.json()


def test_settings_mismatch_is_409_with_stored_settings(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="book", settings={"voice": "alloy", "format": "mp3"}))
    response = client.post("/api/audiobook", json=_chapter(bookId="book", settings={"voice": "nova", "format": "mp3"}))

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "Audiobook settings mismatch"
    assert body["settings"]["voice"] == "alloy"


def test_mixed_format_ingest_is_400(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="book", format="m4b"))
    response = client.post("/api/audiobook", json=_chapter(bookId="book", format="mp3"))
    assert response.status_code == 400


def test_full_book_download(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="book", title="One", buffer=(1,)))
    client.post("/api/audiobook", json=_chapter(bookId="book", title="Two", buffer=(2,)))

    response = client.get("/api/audiobook", params={"bookId": "book"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mp4"
    assert response.headers["content-disposition"] == 'attachment; filename="audiobook.m4b"'
    assert response.headers["cache-control"] == "no-cache"
    assert response.content == b"m4b:\x01|m4b:\x02"


def test_full_book_errors(client) -> None:
    assert client.get("/api/audiobook").status_code == 400
    assert client.get("/api/audiobook", params={"bookId": "bad/id"}).status_code == 400
    assert client.get("/api/audiobook", params={"bookId": "missing"}).status_code == 404
    client.post("/api/audiobook", json=_chapter(bookId="book"))
    assert client.get("/api/audiobook", params={"bookId": "book", "format": "ogg"}).status_code == 400


def test_reset_reports_whether_book_existed(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="book"))

    first = client.delete("/api/audiobook", params={"bookId": "book"})
    second = client.delete("/api/audiobook", params={"bookId": "book"})

    assert first.json() == {"success": True, "existed": True}
    assert second.json() == {"success": True, "existed": False}
    assert client.get("/api/audiobook", params={"bookId": "book"}).status_code == 404
    assert client.delete("/api/audiobook").status_code == 400


def test_regenerate_chapter(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="book", title="One"))

    response = client.put(
        "/api/audiobook/chapter",
        params={"bookId": "book", "chapterIndex": "0"},
        json=_chapter(title="One, again", buffer=(9, 9)),
    )
    assert response.status_code == 200
    assert response.json()["title"] == "One, again"
    assert response.json()["duration"] == 2.0

    missing = client.put(
        "/api/audiobook/chapter",
        params={"bookId": "book", "chapterIndex": "3"},
        json=_chapter(),
    )
    assert missing.status_code == 404


def test_book_status(client) -> None:
    assert client.get("/api/audiobook/status", params={"bookId": "book"}).json()["exists"] is False

    client.post("/api/audiobook", json=_chapter(bookId="book", title="One", settings={"voice": "alloy"}))
    status = client.get("/api/audiobook/status", params={"bookId": "book"}).json()

    assert status["exists"] is True
    assert status["hasComplete"] is False
    assert status["settings"]["voice"] == "alloy"
    assert [c["title"] for c in status["chapters"]] == ["One"]


def test_chapter_download(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="book", title="Part One", format="mp3", buffer=(7,)))

    response = client.get("/api/audiobook/chapter", params={"bookId": "book", "chapterIndex": "0"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.headers["content-disposition"] == 'attachment; filename="part_one.mp3"'
    assert response.content == b"mp3:\x07"

    assert client.get("/api/audiobook/chapter", params={"bookId": "book", "chapterIndex": "5"}).status_code == 404
    assert client.get("/api/audiobook/chapter", params={"bookId": "book"}).status_code == 400


def test_books_are_scoped_to_their_owner(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="private"), headers={"X-User-Id": "alice"})

    assert client.get("/api/audiobook", params={"bookId": "private"}, headers={"X-User-Id": "bob"}).status_code == 404
    assert client.get("/api/audiobook", params={"bookId": "private"}, headers={"X-User-Id": "alice"}).status_code == 200
    assert client.get("/api/audiobook", headers={"X-User-Id": "bad user"}).status_code == 400


def test_api_key_is_enforced_when_configured(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "api_password", "secret")

    assert client.get("/api/status").status_code == 401
    assert client.get("/api/status", headers={"X-API-Key": "wrong"}).status_code == 403
    assert client.get("/api/status", headers={"X-API-Key": "secret"}).status_code == 200


def test_reset_of_someone_elses_book_changes_nothing(client) -> None:
    client.post("/api/audiobook", json=_chapter(bookId="private"), headers={"X-User-Id": "alice"})

    response = client.delete("/api/audiobook", params={"bookId": "private"}, headers={"X-User-Id": "bob"})
    assert response.json() == {"success": True, "existed": False}

    intruder = client.post(
        "/api/audiobook", json=_chapter(bookId="private", chapterIndex=0), headers={"X-User-Id": "bob"}
    )
    assert intruder.status_code == 404

    mine = client.get("/api/audiobook", params={"bookId": "private"}, headers={"X-User-Id": "alice"})
    assert mine.status_code == 200
    assert mine.content == b"m4b:\x01\x02\x03"
