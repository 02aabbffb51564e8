from __future__ import annotations

from pathlib import Path

import pytest
from blocklist_sync.core import MIN_BACKOFF_S, Settings, errors, hashing, json, paths


def test_datalayout_paths_and_dirs(tmp_path: Path) -> None:
    layout = paths.DataLayout(root=tmp_path)
    assert layout.download_namespace("local", 150) == tmp_path / "downloads" / "local" / "150"
    assert layout.install_dir("remote", 7) == tmp_path / "blocklists" / "remote" / "7"
    assert layout.sha256sums_txt("local", 1).name == "sha256sums.txt"

    layout.ensure_dirs("local")
    assert layout.downloads_root("local").is_dir()
    assert layout.blocklists_root("local").is_dir()


def test_namespace_timestamps_ignores_non_numeric(tmp_path: Path) -> None:
    layout = paths.DataLayout(root=tmp_path)
    base = layout.downloads_root("local")
    for name in ("300", "20", "tmp", ".partial"):
        (base / name).mkdir(parents=True)
    (base / "400").write_text("not a dir")

    assert layout.namespace_timestamps(base) == [20, 300]
    assert layout.namespace_timestamps(tmp_path / "missing") == []


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BLOCKLIST_SYNC_DATA_ROOT", str(tmp_path))
    monkeypatch.setenv("BLOCKLIST_SYNC_TRANSPORT", "coordinator")
    monkeypatch.setenv("BLOCKLIST_SYNC_BACKOFF_DELAY_S", "1")
    monkeypatch.setenv("BLOCKLIST_SYNC_LOCAL_ENABLED", "false")

    s = Settings()
    assert s.data_root == tmp_path
    assert s.transport == "coordinator"
    assert s.backoff_delay_s == MIN_BACKOFF_S
    assert s.local_enabled is False
    assert s.watch_initial_delay_s == 10.0


def test_settings_rejects_unknown_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BLOCKLIST_SYNC_TRANSPORT", "carrier-pigeon")
    with pytest.raises(ValueError):
        Settings()


def test_sha256_sums_roundtrip_and_verify(tmp_path: Path) -> None:
    f = tmp_path / "data.bin"
    f.write_bytes(b"abc")
    digest = hashing.sha256_file(f)
    assert digest.sha256 == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert digest.bytes == 3

    (tmp_path / "other.txt").write_text("x")
    sums = tmp_path / "sha256sums.txt"
    hashing.write_sha256_sums(
        sums,
        {"data.bin": digest.sha256, "other.txt": hashing.sha256_file(tmp_path / "other.txt").sha256},
    )
    assert sums.read_text().splitlines()[0] == f"{digest.sha256}  data.bin"
    assert hashing.read_sha256_sums(sums)["data.bin"] == digest.sha256
    assert hashing.verify_sha256_sums(tmp_path) == []

    f.write_bytes(b"abd")
    (tmp_path / "other.txt").unlink()
    assert hashing.verify_sha256_sums(tmp_path) == ["data.bin", "other.txt"]


def test_jsonl_append_and_torn_tail(tmp_path: Path) -> None:
    p = tmp_path / "events.jsonl"
    assert list(json.iter_jsonl(p)) == []

    json.append_jsonl(p, {"b": 1, "a": "\u00e9"})
    json.append_jsonl(p, {"n": 2})
    with p.open("a", encoding="utf-8") as f:
        f.write('{"n": 3')

    assert list(json.iter_jsonl(p)) == [{"b": 1, "a": "\u00e9"}, {"n": 2}]

    cfg = tmp_path / "c.json"
    cfg.write_text('{"x": [1, 2]}')
    assert json.read_json(cfg) == {"x": [1, 2]}


def test_job_error_from_exc() -> None:
    try:
        raise errors.InstallError("boom")
    except errors.InstallError as e:
        err = errors.job_error_from_exc(e)

    assert err.exc_type == "InstallError"
    assert err.message == "boom"
    assert "InstallError: boom" in err.traceback
    assert isinstance(errors.InstallError("x"), errors.SyncError)
