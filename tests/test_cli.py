from __future__ import annotations

import json
from pathlib import Path

import pytest

from dash_cam import cli
from dash_cam.storage.index import ORIGINAL_VIDEO_DIR, ChunkIndex, chunk_file_name


def _seed(root: Path) -> ChunkIndex:
    index = ChunkIndex(root)
    for camera_id, start_ms in ((0, 0), (0, 30_000), (1, 0)):
        path = index.directory(ORIGINAL_VIDEO_DIR) / chunk_file_name(camera_id, start_ms)
        path.write_bytes(b"\x00" * 256)
        index.register(camera_id=camera_id, start_ms=start_ms, duration_ms=30_000, path=path)
    return index


def _run_json(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict]:
    code = cli.run(["--json", *argv])
    return code, json.loads(capsys.readouterr().out)


def test_status_summarises_each_camera(tmp_path: Path, capsys) -> None:
    _seed(tmp_path)

    code, payload = _run_json(capsys, "--media-root", str(tmp_path), "status")

    assert code == 0
    assert payload["cameras"]["0"]["original"] == {"count": 2, "bytes": 512}
    assert payload["cameras"]["1"]["latest"]["start_ms"] == 0
    assert payload["media_root"] == str(tmp_path)


def test_status_plain_text(tmp_path: Path, capsys) -> None:
    _seed(tmp_path)

    assert cli.run(["--media-root", str(tmp_path), "status"]) == 0

    output = capsys.readouterr().out
    assert "Camera 0: 2 chunks, 512 B" in output


def test_cleanup_index_drops_missing_files(tmp_path: Path, capsys) -> None:
    index = _seed(tmp_path)
    Path(index.latest(1).path).unlink()

    code, payload = _run_json(capsys, "--media-root", str(tmp_path), "cleanup-index")

    assert code == 0
    assert payload == {"removed": 1}
    assert index.count() == 2


def test_trim_with_inverted_budget_fails(tmp_path: Path, capsys) -> None:
    _seed(tmp_path)

    code, payload = _run_json(
        capsys,
        "--media-root",
        str(tmp_path),
        "trim",
        "--max-size",
        "100",
        "--target-free",
        "200",
    )

    assert code == 2
    assert payload["reason"] == "invalid_budget"


def test_trim_by_size_budget(tmp_path: Path, capsys) -> None:
    index = _seed(tmp_path)

    code, payload = _run_json(
        capsys,
        "--media-root",
        str(tmp_path),
        "trim",
        "--max-size",
        "512",
        "--target-free",
        "256",
    )

    assert code == 0
    assert payload["reason"] == "trimmed"
    assert len(payload["deleted"]) == 2
    assert index.count() == 1


def test_extract_without_footage_exits_nonzero(tmp_path: Path, capsys) -> None:
    _seed(tmp_path)

    code, payload = _run_json(
        capsys,
        "--media-root",
        str(tmp_path),
        "extract",
        "--start-ms",
        "100000",
        "--end-ms",
        "200000",
    )

    assert code == 1
    assert [result["reason"] for result in payload["results"]] == ["no_overlap", "no_overlap"]


def test_media_root_from_environment(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("DASHCAM_MEDIA_ROOT", str(tmp_path / "env"))

    code, payload = _run_json(capsys, "status")

    assert code == 0
    assert payload["media_root"] == str(tmp_path / "env")
