import io

import pytest

from speedprobe.config import KIB, MIB
from speedprobe.streams import SinkOutcome

ORIGIN = "http://ui.example"


def _assert_no_store(response):
    assert "no-store" in response.headers["Cache-Control"]
    assert response.headers["Pragma"] == "no-cache"


@pytest.mark.parametrize("path", ["/ping", "/api/ping"])
def test_ping(client, path):
    response = client.get(path, query_string={"r": "0.123"})
    assert response.status_code == 200
    assert response.get_json() == {"message": "pong"}
    _assert_no_store(response)


@pytest.mark.parametrize(
    "method,path,allowed",
    [
        ("post", "/ping", "GET"),
        ("put", "/download", "GET"),
        ("delete", "/api/download", "GET"),
        ("get", "/upload", "POST"),
    ],
)
def test_wrong_method_is_405(client, method, path, allowed):
    response = getattr(client, method)(path)
    assert response.status_code == 405
    assert response.headers["Allow"] == allowed
    assert "Not Allowed" in response.get_json()["message"]


@pytest.mark.parametrize("size", [1 * KIB, 1000 * 3, 16 * KIB, 16 * KIB + 1, 1 * MIB, 16 * MIB])
def test_download_streams_exact_size(client, size):
    response = client.get("/download", query_string={"size": size})
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "application/octet-stream"
    assert response.headers["Content-Length"] == str(size)
    assert len(response.get_data()) == size
    _assert_no_store(response)


def test_download_accepts_unit_suffix(client):
    response = client.get("/api/download", query_string={"size": "2k"})
    assert len(response.get_data()) == 2 * KIB


@pytest.mark.parametrize("raw", ["", "abc", "0", "-1", "512", str(16 * MIB + 1), "1GB"])
def test_download_out_of_range_falls_back_to_default(client, raw):
    outcomes = []
    for _ in range(2):
        response = client.get("/download", query_string={"size": raw})
        assert response.status_code == 200
        outcomes.append((response.headers["Content-Length"], len(response.get_data())))
    assert outcomes[0] == outcomes[1] == (str(64 * KIB), 64 * KIB)


def test_download_without_size_uses_default(client):
    response = client.get("/download")
    assert len(response.get_data()) == 64 * KIB


@pytest.mark.parametrize("size", [0, 1, 1 * MIB, 50 * MIB])
def test_upload_counts_bytes(client, size):
    response = client.post(
        "/upload",
        data=b"\xab" * size,
        headers={"Content-Type": "application/octet-stream"},
    )
    assert response.status_code == 200
    assert response.get_json()["bytesReceived"] == size
    _assert_no_store(response)


class _ResetInput(io.RawIOBase):
    def readable(self):
        return True

    def readinto(self, buffer):
        raise ConnectionResetError("connection reset by peer")


@pytest.mark.parametrize(
    "wsgi_input",
    [lambda: io.BytesIO(b"x" * 10), _ResetInput],
    ids=["truncated", "reset"],
)
def test_upload_broken_body_returns_500(client, wsgi_input):
    # Declares more bytes than the input will ever deliver.
    response = client.post(
        "/upload",
        environ_overrides={"wsgi.input": wsgi_input(), "CONTENT_LENGTH": "100"},
    )
    assert response.status_code == 500
    body = response.get_json()
    assert body == {"error": "Failed to process upload stream."}
    assert "bytesReceived" not in body


def test_upload_stream_error_returns_500(client, monkeypatch):
    monkeypatch.setattr(
        "speedprobe.web.app.drain_stream",
        lambda stream, chunk_size: SinkOutcome(ok=False, bytes_received=10, error="reset"),
    )
    response = client.post("/api/upload", data=b"x" * 100)
    assert response.status_code == 500
    assert "bytesReceived" not in response.get_json()


@pytest.mark.parametrize("path,method", [("/ping", "GET"), ("/download", "GET"), ("/upload", "POST")])
def test_cors_preflight(client, path, method):
    response = client.options(
        path,
        headers={
            "Origin": ORIGIN,
            "Access-Control-Request-Method": method,
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] in ("*", ORIGIN)
    assert method in response.headers["Access-Control-Allow-Methods"]
    assert "content-type" in response.headers["Access-Control-Allow-Headers"].lower()


def test_cors_header_on_simple_request(client):
    response = client.get("/ping", headers={"Origin": ORIGIN})
    assert response.headers["Access-Control-Allow-Origin"] in ("*", ORIGIN)
