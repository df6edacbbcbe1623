"""Tests for downloading talents.json."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests

import fetch_talents_json
from fetch_talents_json import URLS, config_mode, fetch_and_save, normalize_mode


class FakeResponse:
    def __init__(self, content: bytes, status: int = 200) -> None:
        self.content = content
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.urls: list[str] = []

    def get(self, url, headers=None, timeout=None):
        self.urls.append(url)
        return self.response


@pytest.mark.parametrize(
    "value, expected",
    [("live", "live"), (" BETA ", "beta"), ("x", "xptr"), ("ptr", None), ("", None), (None, None)],
)
def test_normalize_mode(value, expected) -> None:
    assert normalize_mode(value) == expected


def test_config_mode(tmp_path: Path) -> None:
    path = tmp_path / "config.ini"
    path.write_text("[talents]\nenv = b\n", encoding="utf-8")
    assert config_mode(path) == "beta"
    assert config_mode(tmp_path / "missing.ini") is None


def test_fetch_and_save_writes_payload(tmp_path: Path, sample_block) -> None:
    payload = json.dumps([sample_block]).encode("utf-8")
    session = FakeSession(FakeResponse(payload))
    out = tmp_path / "talents.json"

    size = fetch_and_save("beta", out, session=session)

    assert size == len(payload)
    assert out.read_bytes() == payload
    assert session.urls == [URLS["beta"]]


def test_fetch_and_save_keeps_existing_file_on_bad_payload(tmp_path: Path) -> None:
    out = tmp_path / "talents.json"
    out.write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError):
        fetch_and_save("live", out, session=FakeSession(FakeResponse(b'{"error": "maintenance"}')))
    assert out.read_text(encoding="utf-8") == "[]"


def test_fetch_and_save_raises_http_errors(tmp_path: Path) -> None:
    with pytest.raises(requests.HTTPError):
        fetch_and_save("live", tmp_path / "talents.json", session=FakeSession(FakeResponse(b"", 503)))


def test_main_reports_network_error(monkeypatch, capsys) -> None:
    def boom(mode, out_path):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(fetch_talents_json, "fetch_and_save", boom)

    assert fetch_talents_json.main(["live"]) == 1
    assert "Network error fetching live" in capsys.readouterr().out


def test_main_saves(monkeypatch, capsys) -> None:
    seen = []
    monkeypatch.setattr(fetch_talents_json, "fetch_and_save", lambda mode, out_path: seen.append(mode) or 10)

    assert fetch_talents_json.main(["x"]) == 0
    assert seen == ["xptr"]
    assert "Saved talents.json (10 bytes)" in capsys.readouterr().out
