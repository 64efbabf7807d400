from __future__ import annotations

import importlib.util
from pathlib import Path
from types import ModuleType

ROOT = Path(__file__).resolve().parents[1]


def _load_checker_module() -> ModuleType:
    module_path = ROOT / "tools" / "check_imports.py"
    spec = importlib.util.spec_from_file_location("check_imports_tool", module_path)
    assert spec is not None
    loader = spec.loader
    assert loader is not None
    module = importlib.util.module_from_spec(spec)
    loader.exec_module(module)
    return module


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_check_file_allows_core_importing_domain(tmp_path: Path) -> None:
    checker = _load_checker_module()
    source_root = tmp_path / "src" / "novel_engine"
    core_file = source_root / "core" / "resolver.py"
    _write(
        core_file,
        "from novel_engine.domain import ports\nfrom novel_engine.core import prompts\n",
    )
    assert checker.check_file(core_file, source_root) == []


def test_check_file_rejects_core_importing_adapters(tmp_path: Path) -> None:
    checker = _load_checker_module()
    source_root = tmp_path / "src" / "novel_engine"
    core_file = source_root / "core" / "resolver.py"
    _write(core_file, "from novel_engine.adapters import sqlite_story_store\n")
    violations = checker.check_file(core_file, source_root)
    assert len(violations) == 1
    assert "core must not import novel_engine.adapters" in violations[0]


def test_check_file_resolves_relative_imports(tmp_path: Path) -> None:
    checker = _load_checker_module()
    source_root = tmp_path / "src" / "novel_engine"
    domain_file = source_root / "domain" / "models.py"
    _write(domain_file, "from ..application import reading\n")
    violations = checker.check_file(domain_file, source_root)
    assert violations == [f"{domain_file}: domain must not import novel_engine.application"]


def test_repository_respects_layer_boundaries() -> None:
    checker = _load_checker_module()
    assert checker.check_import_boundaries() == []
