from __future__ import annotations

import contextlib
import dataclasses
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from lecture_audio.services.files import AudioFileStore, AudioStorageError
from lecture_audio.services.storage import LectureRepository
from lecture_audio.web import create_app


SMALL_AUDIO = bytes(index % 251 for index in range(1000))
LARGE_AUDIO = bytes((index * 7) % 256 for index in range(5000))
REMOTE_AUDIO = b"ID3" + bytes(range(200))
REMOTE_URL = "https://cdn.example.org/lectures/remote.mp3"
BROKEN_URL = "https://cdn.example.org/lectures/broken.mp3"


def _create_sample_data(config) -> tuple[LectureRepository, SimpleNamespace]:
    repository = LectureRepository(config)
    sheikh_id = repository.add_sheikh("الشيخ أحمد", "Sheikh Ahmad", slug="ahmad")
    series_id = repository.add_series(sheikh_id, "شرح الأربعين", "Forty Hadith")

    small = repository.add_lecture(
        sheikh_id,
        "الحديث الأول",
        "Hadith One",
        slug="hadith-one",
        series_id=series_id,
        lecture_number=1,
        audio_file_name="2024/hadith-one.mp3",
        file_size=len(SMALL_AUDIO),
        duration=125,
    )
    large = repository.add_lecture(
        sheikh_id,
        "معنى الإيمان: سؤال؟",
        audio_file_name="faith.MP3",
        file_size=len(LARGE_AUDIO),
    )
    silent = repository.add_lecture(sheikh_id, "بدون صوت")
    missing = repository.add_lecture(sheikh_id, "ملف مفقود", audio_file_name="gone.mp3")
    remote = repository.add_lecture(
        sheikh_id,
        "محاضرة بعيدة",
        audio_url=REMOTE_URL,
    )
    broken = repository.add_lecture(sheikh_id, "رابط معطل", "Broken Link", audio_url=BROKEN_URL)

    nested = config.upload_root / "2024"
    nested.mkdir(parents=True, exist_ok=True)
    (nested / "hadith-one.mp3").write_bytes(SMALL_AUDIO)
    (config.upload_root / "faith.MP3").write_bytes(LARGE_AUDIO)

    ids = SimpleNamespace(
        small=small, large=large, silent=silent, missing=missing, remote=remote, broken=broken
    )
    return repository, ids


def _cloud_storage(request: httpx.Request) -> httpx.Response:
    if str(request.url) == REMOTE_URL:
        return httpx.Response(
            200, content=REMOTE_AUDIO, headers={"Content-Type": "audio/mpeg"}
        )
    return httpx.Response(503, text="unavailable")


def _cloud_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(_cloud_storage))


def _wait_for_counters(client: TestClient) -> None:
    client.portal.call(client.app.state.counters.join)


@pytest.fixture()
def api(temp_config):
    repository, ids = _create_sample_data(temp_config)
    app = create_app(repository, config=temp_config, http_client=_cloud_client())
    with TestClient(app) as client:
        yield SimpleNamespace(client=client, repository=repository, ids=ids)


def test_stream_without_range_returns_whole_file(api) -> None:
    response = api.client.get(f"/stream/{api.ids.large}")

    assert response.status_code == 200
    assert response.content == LARGE_AUDIO
    assert response.headers["content-length"] == "5000"
    assert response.headers["accept-ranges"] == "bytes"
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.headers["cache-control"] == "public, max-age=31536000"
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["content-disposition"].startswith("inline; filename=")
    assert "last-modified" in response.headers
    assert "content-range" not in response.headers


def test_stream_open_ended_range(api) -> None:
    response = api.client.get(f"/stream/{api.ids.small}", headers={"Range": "bytes=900-"})

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 900-999/1000"
    assert response.headers["content-length"] == "100"
    assert response.content == SMALL_AUDIO[900:]


def test_stream_closed_range(api) -> None:
    response = api.client.get(f"/stream/{api.ids.large}", headers={"Range": "bytes=1024-3071"})

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 1024-3071/5000"
    assert response.content == LARGE_AUDIO[1024:3072]


@pytest.mark.parametrize("header", ["bytes=1000-1010", "bytes=500-1000", "bytes=abc-"])
def test_unsatisfiable_range_returns_416(api, header: str) -> None:
    response = api.client.get(f"/stream/{api.ids.small}", headers={"Range": header})

    assert response.status_code == 416
    assert response.headers["content-range"] == "bytes */1000"
    assert response.content == b""


def test_multi_range_falls_back_to_whole_file(api) -> None:
    response = api.client.get(
        f"/stream/{api.ids.small}", headers={"Range": "bytes=0-10,20-30"}
    )

    assert response.status_code == 200
    assert response.content == SMALL_AUDIO


def test_repeated_range_requests_are_identical(api) -> None:
    headers = {"Range": "bytes=100-499"}
    first = api.client.get(f"/stream/{api.ids.large}", headers=headers)
    second = api.client.get(f"/stream/{api.ids.large}", headers=headers)

    assert first.status_code == second.status_code == 206
    assert first.content == second.content == LARGE_AUDIO[100:500]
    assert first.headers["content-range"] == second.headers["content-range"]


def test_stream_by_slug(api) -> None:
    response = api.client.get("/stream/hadith-one")

    assert response.status_code == 200
    assert response.content == SMALL_AUDIO
    assert response.headers["content-disposition"] == 'inline; filename="Hadith One.mp3"'


def test_unknown_lecture_returns_404(api) -> None:
    for path in ("/stream/9999", "/download/9999", "/stream/9999/info", "/stream/no-such-slug"):
        response = api.client.get(path)
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Lecture not found"}


def test_lecture_without_audio_is_404_on_both_endpoints(api) -> None:
    for path in (f"/stream/{api.ids.silent}", f"/download/{api.ids.silent}"):
        response = api.client.get(path)
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "message": "Audio file not found on server",
        }


def test_missing_file_is_reported_separately_from_missing_lecture(api) -> None:
    response = api.client.get(f"/stream/{api.ids.missing}")

    assert response.status_code == 404
    message = response.json()["message"]
    assert message == "Audio file not found on server"
    assert message != "Lecture not found"
    assert "gone.mp3" not in response.text


def test_download_serves_attachment_with_descriptive_name(api) -> None:
    response = api.client.get(f"/download/{api.ids.small}", headers={"Range": "bytes=0-9"})

    assert response.status_code == 200
    assert response.content == SMALL_AUDIO
    assert response.headers["content-length"] == "1000"
    assert response.headers["accept-ranges"] == "none"
    assert response.headers["cache-control"] == "no-store"
    assert "x-content-type-options" not in response.headers
    assert (
        response.headers["content-disposition"]
        == 'attachment; filename="Forty Hadith - Part 1 - Hadith One.mp3"'
    )


def test_download_name_for_arabic_title_is_encoded(api) -> None:
    response = api.client.get(f"/download/{api.ids.large}")

    assert response.status_code == 200
    disposition = response.headers["content-disposition"]
    assert disposition.startswith("attachment; filename=")
    assert "filename*=UTF-8''" in disposition
    # "/", ":" and "?" are replaced before encoding.
    assert "%3A" not in disposition
    assert "%2F" not in disposition
    assert "%3F" not in disposition


def test_download_trusts_live_file_size(api, caplog) -> None:
    api.repository.update_lecture_audio(
        api.ids.small, audio_file_name="2024/hadith-one.mp3", file_size=4321
    )

    with caplog.at_level("WARNING"):
        response = api.client.get(f"/download/{api.ids.small}")

    assert response.status_code == 200
    assert response.headers["content-length"] == "1000"
    assert response.content == SMALL_AUDIO
    assert "differs from the file on disk" in caplog.text


def test_head_requests_return_headers_only(api) -> None:
    stream = api.client.head(f"/stream/{api.ids.large}")
    download = api.client.head(f"/download/{api.ids.large}")

    assert stream.status_code == 200
    assert stream.headers["content-length"] == "5000"
    assert stream.content == b""
    assert download.status_code == 200
    assert download.headers["content-disposition"].startswith("attachment;")
    assert download.content == b""


def test_remote_stream_redirects_to_cloud_storage(api) -> None:
    response = api.client.get(f"/stream/{api.ids.remote}", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == REMOTE_URL

    _wait_for_counters(api.client)
    assert api.repository.get_lecture(api.ids.remote).play_count == 1


def test_remote_download_is_relayed_as_attachment(api) -> None:
    response = api.client.get(f"/download/{api.ids.remote}", follow_redirects=False)

    assert response.status_code == 200
    assert response.content == REMOTE_AUDIO
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.headers["content-length"] == str(len(REMOTE_AUDIO))
    assert response.headers["cache-control"] == "no-store"
    disposition = response.headers["content-disposition"]
    assert disposition.startswith("attachment; filename=")
    assert "filename*=UTF-8''Sheikh%20Ahmad%20-%20" in disposition
    assert disposition.endswith(".mp3")

    _wait_for_counters(api.client)
    assert api.repository.get_lecture(api.ids.remote).download_count == 1


def test_remote_download_failure_returns_500(api) -> None:
    response = api.client.get(f"/download/{api.ids.broken}")

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "Download failed from cloud storage",
    }

    _wait_for_counters(api.client)
    assert api.repository.get_lecture(api.ids.broken).download_count == 0


def test_stream_info_describes_lecture_and_file(api) -> None:
    response = api.client.get(f"/stream/{api.ids.small}/info")

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["lecture"] == {
        "id": api.ids.small,
        "titleArabic": "الحديث الأول",
        "titleEnglish": "Hadith One",
        "sheikh": "الشيخ أحمد",
        "series": "شرح الأربعين",
        "duration": "2:05",
        "fileSize": "0.00 MB",
        "playCount": 0,
        "downloadCount": 0,
    }
    assert payload["file"] == {
        "fileName": "2024/hadith-one.mp3",
        "exists": True,
        "size": 1000,
        "mimeType": "audio/mpeg",
    }
    assert payload["urls"] == {
        "stream": f"/stream/{api.ids.small}",
        "download": f"/download/{api.ids.small}",
    }


def test_stream_info_for_missing_file(api) -> None:
    payload = api.client.get(f"/stream/{api.ids.missing}/info").json()

    assert payload["file"]["exists"] is False
    assert payload["file"]["size"] is None


def test_counters_increment_in_background(api) -> None:
    api.client.get(f"/stream/{api.ids.small}")
    api.client.get(f"/stream/{api.ids.small}", headers={"Range": "bytes=500-"})
    api.client.get(f"/download/{api.ids.small}")

    _wait_for_counters(api.client)
    lecture = api.repository.get_lecture(api.ids.small)
    assert lecture.play_count == 2
    assert lecture.download_count == 1


def test_failed_lookups_do_not_touch_counters(api) -> None:
    api.client.get(f"/stream/{api.ids.missing}")
    api.client.get(f"/stream/{api.ids.small}", headers={"Range": "bytes=5000-"})

    _wait_for_counters(api.client)
    assert api.repository.get_lecture(api.ids.missing).play_count == 0
    assert api.repository.get_lecture(api.ids.small).play_count == 0


def test_concurrent_range_requests_are_independent(api) -> None:
    def _fetch(index: int):
        start = index * 100
        end = start + 99
        response = api.client.get(
            f"/stream/{api.ids.large}", headers={"Range": f"bytes={start}-{end}"}
        )
        return index, response

    with ThreadPoolExecutor(max_workers=10) as executor:
        results = list(executor.map(_fetch, range(50)))

    for index, response in results:
        start = index * 100
        assert response.status_code == 206
        assert response.headers["content-range"] == f"bytes {start}-{start + 99}/5000"
        assert response.content == LARGE_AUDIO[start : start + 100]

    _wait_for_counters(api.client)
    assert api.repository.get_lecture(api.ids.large).play_count == 50


def test_cors_exposes_range_headers(api) -> None:
    response = api.client.get(
        f"/stream/{api.ids.small}",
        headers={"Origin": "https://player.example.org", "Range": "bytes=0-9"},
    )

    assert response.status_code == 206
    assert response.headers["access-control-allow-origin"] == "*"
    exposed = response.headers["access-control-expose-headers"].lower()
    assert "content-range" in exposed
    assert "accept-ranges" in exposed


def test_only_initial_ranges_count_when_configured(temp_config) -> None:
    config = dataclasses.replace(temp_config, count_range_requests=False)
    repository, ids = _create_sample_data(config)
    app = create_app(repository, config=config)

    with TestClient(app) as client:
        client.get(f"/stream/{ids.large}")
        client.get(f"/stream/{ids.large}", headers={"Range": "bytes=0-99"})
        client.get(f"/stream/{ids.large}", headers={"Range": "bytes=2000-"})
        client.get(f"/stream/{ids.large}", headers={"Range": "bytes=4000-4999"})
        _wait_for_counters(client)

    assert repository.get_lecture(ids.large).play_count == 2


class _VanishingStore(AudioFileStore):
    def stat(self, path: Path):
        info = super().stat(path)
        path.unlink()
        return info


def test_file_removed_before_open_returns_json_404(temp_config) -> None:
    repository, ids = _create_sample_data(temp_config)
    store = _VanishingStore(temp_config.upload_root)
    app = create_app(repository, config=temp_config, file_store=store)

    with TestClient(app) as client:
        response = client.get(f"/stream/{ids.small}")
        _wait_for_counters(client)

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Audio file not found on server"}
    assert repository.get_lecture(ids.small).play_count == 0


class _BrokenStream:
    def __init__(self) -> None:
        self._served = False

    def __aiter__(self) -> "_BrokenStream":
        return self

    async def __anext__(self) -> bytes:
        if not self._served:
            self._served = True
            return b"\x00" * 10
        raise AudioStorageError("disk went away")


class _FailingStore(AudioFileStore):
    @contextlib.asynccontextmanager
    async def open_read_stream(self, path, byte_range=None, *, length=None, chunk_size=None):
        yield _BrokenStream()


def test_read_error_after_headers_aborts_the_response(temp_config, caplog) -> None:
    repository, ids = _create_sample_data(temp_config)
    app = create_app(
        repository,
        config=temp_config,
        file_store=_FailingStore(temp_config.upload_root),
    )

    with TestClient(app) as client:
        with caplog.at_level("ERROR"):
            with pytest.raises(AudioStorageError):
                client.get(f"/stream/{ids.small}")

    assert "Audio stream failed after 10 of 1000 byte(s)" in caplog.text


class _ExplodingRepository(LectureRepository):
    def find_lecture(self, identifier):
        raise RuntimeError("cannot open /srv/private/lectures.db")


def test_unexpected_errors_become_generic_500(temp_config) -> None:
    repository = _ExplodingRepository(temp_config)
    app = create_app(repository, config=temp_config)

    with TestClient(app) as client:
        stream = client.get("/stream/1")
        download = client.get("/download/1")
        info = client.get("/stream/1/info")

    assert stream.status_code == download.status_code == info.status_code == 500
    assert stream.json() == {"success": False, "message": "Failed to stream audio"}
    assert download.json() == {"success": False, "message": "Failed to download audio"}
    assert info.json() == {"success": False, "message": "Failed to get stream info"}
    assert "/srv/private" not in stream.text


def test_root_path_is_normalised(temp_config) -> None:
    repository, ids = _create_sample_data(temp_config)
    app = create_app(repository, config=temp_config, root_path="audio/")

    assert app.root_path == "/audio"
    with TestClient(app) as client:
        response = client.get(f"/stream/{ids.small}", headers={"Range": "bytes=0-9"})

    assert response.status_code == 206
    assert response.content == SMALL_AUDIO[:10]
