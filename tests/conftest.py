"""Shared fixtures: isolated configuration, a temporary store and an EC signing key."""

from __future__ import annotations

from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from config import CONFIG_FILE_ENV, Config
from storage.candle_store import CandleStore


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's environment and ~/.config out of every test."""
    keys = {CONFIG_FILE_ENV}
    for aliases in Config._CONFIG_KEY_MAPPING.values():
        keys.update(key for key in aliases if key.isupper())
    for key in keys:
        monkeypatch.delenv(key, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "candles.db"


@pytest.fixture
def store(db_path: Path) -> CandleStore:
    return CandleStore(db_path)


@pytest.fixture
def ec_private_key_pem() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
