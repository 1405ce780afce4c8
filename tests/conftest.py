from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lecture_audio.bootstrap import Bootstrapper
from lecture_audio.config import AppConfig


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)
    config = AppConfig.from_mapping(
        {
            "upload_root": "uploads",
            "database_file": "data/lectures.db",
            "stream_chunk_size": 1024,
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config
