from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from narrative_helpers import TEMPLATE_ID, build_template
from novel_engine.adapters.sqlite_template_store import SQLiteTemplateStore
from novel_engine.api.contracts import TemplateBlueprint, save_template_json
from novel_engine.cli import api as api_cli
from novel_engine.cli import templates as templates_cli

ROOT = Path(__file__).resolve().parents[1]


def test_api_cli_calls_uvicorn_factory(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []

    def fake_run(app: str, factory: bool, host: str, port: int, reload: bool) -> None:
        calls.append(
            {"app": app, "factory": factory, "host": host, "port": port, "reload": reload}
        )

    monkeypatch.setattr("novel_engine.cli.api.uvicorn.run", fake_run)
    api_cli.main(["--host", "0.0.0.0", "--port", "9000", "--reload"])

    assert calls == [
        {
            "app": "novel_engine.api.app:create_app",
            "factory": True,
            "host": "0.0.0.0",
            "port": 9000,
            "reload": True,
        }
    ]


def test_api_cli_sets_db_path_and_provider_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NOVEL_ENGINE_DB_PATH", raising=False)
    monkeypatch.delenv("NOVEL_ENGINE_COMPLETION_PROVIDER", raising=False)
    monkeypatch.setattr("novel_engine.cli.api.uvicorn.run", lambda *args, **kwargs: None)
    api_cli.main(["--db-path", "work/local/custom.db", "--provider", "openrouter"])
    assert os.environ["NOVEL_ENGINE_DB_PATH"] == "work/local/custom.db"
    assert os.environ["NOVEL_ENGINE_COMPLETION_PROVIDER"] == "openrouter"


def test_templates_cli_imports_and_lists(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    db_path = tmp_path / "novel.db"
    template_path = tmp_path / "harbor.json"
    save_template_json(template_path, TemplateBlueprint.from_domain(build_template()))

    imported = templates_cli.main(["--db-path", str(db_path), "import", str(template_path)])
    listed = templates_cli.main(["--db-path", str(db_path), "list"])

    captured = capsys.readouterr()
    assert (imported, listed) == (0, 0)
    assert f"Imported template: {TEMPLATE_ID}" in captured.out
    assert "Midnight Harbor\t10 scenes\t2 choice points" in captured.out
    assert SQLiteTemplateStore(db_path=db_path).get_template(template_id=TEMPLATE_ID) is not None


def test_templates_cli_rejects_invalid_files(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    db_path = tmp_path / "novel.db"
    invalid = tmp_path / "broken.json"
    invalid.write_text(
        json.dumps({"template_id": "broken", "title": "Broken", "total_scenes": 0}),
        encoding="utf-8",
    )

    exit_code = templates_cli.main(
        ["--db-path", str(db_path), "import", str(invalid), str(tmp_path / "missing.json")]
    )

    assert exit_code == 1
    assert capsys.readouterr().out.count("Rejected") == 2
    assert SQLiteTemplateStore(db_path=db_path).list_templates() == []


def test_bundled_sample_template_is_valid(tmp_path: Path) -> None:
    db_path = tmp_path / "novel.db"
    sample = ROOT / "templates" / "midnight-harbor.json"
    assert templates_cli.main(["--db-path", str(db_path), "import", str(sample)]) == 0
    template = SQLiteTemplateStore(db_path=db_path).get_template(template_id="midnight-harbor")
    assert template is not None
    assert [point.scene_number for point in template.choice_points] == [3, 6]
