from __future__ import annotations

import json
from pathlib import Path

import pytest

from scripts.route_from_elements import build_parser, load_elements, main, run_route


def _write_elements(tmp_path: Path, elements: list[dict], *, wrapped: bool = False) -> Path:
    path = tmp_path / "elements.json"
    payload = {"elements": elements} if wrapped else elements
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_parser_reads_coordinates() -> None:
    args = build_parser().parse_args(
        ["--elements", "e.json", "--start", "51.5,-0.1", "--end", " 51.6 , -0.2 "]
    )
    assert args.start == (51.5, -0.1)
    assert args.end == (51.6, -0.2)
    assert args.mode == "time"
    assert args.in_process is False

    with pytest.raises(SystemExit):
        build_parser().parse_args(["--elements", "e.json", "--start", "51.5", "--end", "1,2"])


def test_load_elements_accepts_list_or_wrapper(tmp_path: Path, elements: list[dict]) -> None:
    assert load_elements(str(_write_elements(tmp_path, elements))) == elements
    assert load_elements(str(_write_elements(tmp_path, elements, wrapped=True))) == elements


def test_run_route_writes_summary(tmp_path: Path, elements: list[dict]) -> None:
    elements_path = _write_elements(tmp_path, elements)
    out_file = tmp_path / "reports" / "route.json"
    args = build_parser().parse_args(
        [
            "--elements",
            str(elements_path),
            "--start",
            "51.5001,-0.1001",
            "--end",
            "51.5001,-0.0899",
            "--mode",
            "distance",
            "--in-process",
            "--out-file",
            str(out_file),
        ]
    )
    record = run_route(args)
    assert record["ok"] is True
    assert record["start_node"] == 1
    assert record["end_node"] == 3
    assert record["distance"].endswith("km")
    assert len(record["path"]) == 3
    assert json.loads(out_file.read_text(encoding="utf-8")) == record


def test_main_reports_failures(tmp_path: Path, disconnected: list[dict], capsys) -> None:
    elements_path = _write_elements(tmp_path, disconnected)
    code = main(
        [
            "--elements",
            str(elements_path),
            "--start",
            "51.5001,-0.1001",
            "--end",
            "51.5001,-0.0899",
            "--in-process",
        ]
    )
    assert code == 1
    printed = json.loads(capsys.readouterr().out)
    assert printed["ok"] is False
    assert printed["reason_code"] == "path_not_found"
