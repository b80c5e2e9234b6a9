from __future__ import annotations

from pathlib import Path

from longzang.config import FALLBACK_ADMIN_CODE, ServiceConfig
from longzang.stores import DEFAULT_STORAGE_KEY


def test_defaults_from_empty_environment() -> None:
    config = ServiceConfig.from_env({})

    assert config.data_dir == Path("data")
    assert config.store_url is None
    assert config.timezone == "Asia/Shanghai"
    assert config.scripture_timeout == 20.0
    assert config.storage_key == DEFAULT_STORAGE_KEY
    assert config.effective_admin_code() == FALLBACK_ADMIN_CODE


def test_sheetdb_names_are_accepted_as_aliases() -> None:
    config = ServiceConfig.from_env(
        {"SHEETDB_API_URL": "https://sheetdb.example/api/v1/abc", "SHEETDB_API_KEY": "k"}
    )

    assert config.store_url == "https://sheetdb.example/api/v1/abc"
    assert config.store_key == "k"


def test_primary_names_win_over_aliases() -> None:
    config = ServiceConfig.from_env(
        {
            "CLAIMS_STORE_URL": "https://db.example/claims",
            "SHEETDB_API_URL": "https://sheetdb.example/api/v1/abc",
        }
    )

    assert config.store_url == "https://db.example/claims"


def test_bad_numbers_fall_back_to_defaults() -> None:
    config = ServiceConfig.from_env({"CLAIMS_STORE_TIMEOUT": "soon", "SCRIPTURE_TIMEOUT": "-1"})

    assert config.store_timeout == 10.0
    assert config.scripture_timeout == 20.0


def test_admin_code_and_data_dir_from_environment(tmp_path: Path) -> None:
    config = ServiceConfig.from_env(
        {"ADMIN_ACCESS_CODE": " lotus ", "LONGZANG_DATA_DIR": str(tmp_path)}
    )

    assert config.effective_admin_code() == "lotus"
    assert config.data_dir == tmp_path
