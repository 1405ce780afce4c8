import json
from pathlib import Path

import pytest

import lecture_audio.config as config_module
from lecture_audio.config import AppConfig, load_config


def test_from_mapping_resolves_paths_and_defaults(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        {"upload_root": "uploads", "database_file": "data/lectures.db"},
        base_path=tmp_path,
    )

    assert config.upload_root == (tmp_path / "uploads").resolve()
    assert config.database_file == (tmp_path / "data" / "lectures.db").resolve()
    assert config.data_root == (tmp_path / "data").resolve()
    assert config.stream_chunk_size == config_module.DEFAULT_STREAM_CHUNK_SIZE
    assert config.cache_max_age == 31536000
    assert config.count_range_requests is True


def test_from_mapping_ignores_invalid_numbers(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        {
            "upload_root": "uploads",
            "database_file": "lectures.db",
            "stream_chunk_size": "lots",
            "cache_max_age": -5,
            "count_range_requests": False,
        },
        base_path=tmp_path,
    )

    assert config.stream_chunk_size == config_module.DEFAULT_STREAM_CHUNK_SIZE
    assert config.cache_max_age == config_module.DEFAULT_CACHE_MAX_AGE
    assert config.count_range_requests is False


def test_read_only_upload_root_is_kept(tmp_path: Path, monkeypatch) -> None:
    media = tmp_path / "media"
    media.mkdir()
    (media / "lecture.mp3").write_bytes(b"audio")
    checked_for_writes = []
    original_ensure = config_module._ensure_writable_directory

    def recording_ensure(path: Path) -> bool:
        checked_for_writes.append(path.resolve())
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", recording_ensure)
    media.chmod(0o555)
    try:
        config = AppConfig.from_mapping(
            {"upload_root": str(media), "database_file": "data/lectures.db"},
            base_path=tmp_path,
        )
    finally:
        media.chmod(0o755)

    assert config.upload_root == media.resolve()
    assert media.resolve() not in checked_for_writes
    assert sorted(item.name for item in media.iterdir()) == ["lecture.mp3"]


def test_missing_upload_root_is_created_without_fallback(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(config_module.Path, "home", lambda: tmp_path / "home")

    config = AppConfig.from_mapping(
        {"upload_root": "nested/uploads", "database_file": "data/lectures.db"},
        base_path=tmp_path,
    )

    assert config.upload_root == (tmp_path / "nested" / "uploads").resolve()
    assert config.upload_root.is_dir()
    assert not (tmp_path / "home").exists()


def test_database_falls_back_when_directory_is_unusable(tmp_path: Path, monkeypatch) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)
    blocked = tmp_path / "data"
    blocked.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {"upload_root": "uploads", "database_file": "data/lectures.db"},
        base_path=tmp_path,
    )

    assert config.database_file == (home_dir / ".lecture_audio" / "data" / "lectures.db").resolve()
    assert config.database_file.parent.is_dir()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (False, False),
        ("false", False),
        (" No ", False),
        ("0", False),
        (0, False),
        ("true", True),
        ("on", True),
        (1, True),
        ("maybe", True),
        (None, True),
    ],
)
def test_count_range_requests_parses_common_spellings(tmp_path: Path, raw, expected) -> None:
    config = AppConfig.from_mapping(
        {"upload_root": "uploads", "database_file": "lectures.db", "count_range_requests": raw},
        base_path=tmp_path,
    )

    assert config.count_range_requests is expected


def test_load_config_honours_upload_dir_override(tmp_path: Path, monkeypatch) -> None:
    config_file = tmp_path / "settings.json"
    config_file.write_text(
        json.dumps({"upload_root": "uploads", "database_file": str(tmp_path / "db" / "x.db")}),
        encoding="utf-8",
    )
    override = tmp_path / "media"
    monkeypatch.setenv(config_module.UPLOAD_DIR_ENV, str(override))

    config = load_config(config_file)

    assert config.upload_root == override.resolve()
    assert config.database_file == (tmp_path / "db" / "x.db").resolve()
