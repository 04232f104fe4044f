import json
from pathlib import Path

from phase_timeline.__main__ import main

CATALOG = str(Path(__file__).resolve().parent.parent / "catalogs" / "small_site.yaml")


def _run(tmp_path, *extra):
    args = [
        CATALOG,
        "--completion",
        "2026-12",
        "--project",
        "site-7",
        "--store",
        str(tmp_path / "overrides.json"),
        "--out",
        str(tmp_path / "timeline.svg"),
        "--today",
        "2026-06-01",
        "--no-view",
        *extra,
    ]
    return main(args)


def test_cli_renders_timeline(tmp_path, capsys):
    assert _run(tmp_path) == 0

    assert (tmp_path / "timeline.svg").stat().st_size > 0
    out = capsys.readouterr().out
    assert "Construction" in out
    assert "Progress: 0%" in out


def test_cli_move_persists_assignment(tmp_path):
    assert _run(tmp_path, "--move", "site_photos=design") == 0

    stored = json.loads((tmp_path / "overrides.json").read_text(encoding="utf-8"))
    assert json.loads(stored["site-7"])["taskAssignments"] == {"site_photos": "design"}


def test_cli_reports_bad_inputs(tmp_path, capsys):
    assert _run(tmp_path, "--move", "site_photos=construction") == 0
    assert "not adjacent" in capsys.readouterr().err

    bad = tmp_path / "bad.yaml"
    bad.write_text("phases: [{key: p}]\n", encoding="utf-8")
    assert main([str(bad), "--completion", "2026-12", "--no-view", "--out", str(tmp_path / "x.svg")]) == 2

    assert main([CATALOG, "--completion", "soon", "--no-view", "--store", str(tmp_path / "o.json")]) == 2
