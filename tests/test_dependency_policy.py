"""Tests enforcing dependency pinning policy for the distribution."""

from __future__ import annotations

from pathlib import Path

import tomllib

PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def _project() -> dict[str, object]:
    data = tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))
    return data["project"]


def test_all_dependencies_are_pinned() -> None:
    """Project dependencies must be pinned to exact versions."""

    project = _project()
    dependencies = project["dependencies"]
    optional = project.get("optional-dependencies", {})
    assert isinstance(dependencies, list) and isinstance(optional, dict)

    for requirement in dependencies:
        assert "==" in requirement, f"Core dependency not pinned: {requirement}"

    for group, requirements in optional.items():
        for requirement in requirements:
            assert "==" in requirement, (
                f"Optional dependency '{group}' not pinned: {requirement}"
            )


def test_runtime_stack_is_declared() -> None:
    """Every third-party runtime import must be a declared dependency."""

    dependencies = _project()["dependencies"]
    assert isinstance(dependencies, list)
    names = {requirement.split("==")[0] for requirement in dependencies}
    assert {"psutil", "pydantic", "pydantic-settings"} <= names
