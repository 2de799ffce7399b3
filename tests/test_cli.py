"""Tests for the wattprof command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from wattprof import cli
from wattprof.agent import Agent
from wattprof.settings import WattprofSettings


class FakeAgent:
    instances: list[FakeAgent] = []

    def __init__(self, settings: WattprofSettings) -> None:
        self.settings = settings
        self.started = False
        self.stopped = False
        FakeAgent.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> float:
        self.stopped = True
        return 1.5


@pytest.fixture
def fake_agent(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> type[FakeAgent]:
    FakeAgent.instances = []
    monkeypatch.setattr(cli, "Agent", FakeAgent)
    monkeypatch.chdir(tmp_path)
    return FakeAgent


def test_help_returns_success(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--help"]) == 0
    assert "wattprof" in capsys.readouterr().out


def test_script_runs_with_its_arguments(
    tmp_path: Path, fake_agent: type[FakeAgent], capsys: pytest.CaptureFixture[str]
) -> None:
    out = tmp_path / "argv.json"
    script = tmp_path / "job.py"
    script.write_text(
        "import json, sys\n"
        f"open({str(out)!r}, 'w').write(json.dumps(sys.argv[1:]))\n",
        encoding="utf-8",
    )

    code = cli.main(["--filter", "app.", "-f", "lib.", str(script), "--fast", "2"])

    assert code == 0
    assert json.loads(out.read_text(encoding="utf-8")) == ["--fast", "2"]
    agent = fake_agent.instances[0]
    assert agent.started and agent.stopped
    assert agent.settings.filter_method_names == ["app.", "lib."]
    assert "program consumed 1.50 joules" in capsys.readouterr().err


def test_script_exit_code_is_propagated(
    tmp_path: Path, fake_agent: type[FakeAgent]
) -> None:
    script = tmp_path / "fails.py"
    script.write_text("import sys\nsys.exit(3)\n", encoding="utf-8")

    assert cli.main([str(script)]) == 3
    assert fake_agent.instances[0].stopped


def test_module_target(
    tmp_path: Path, fake_agent: type[FakeAgent], monkeypatch: pytest.MonkeyPatch
) -> None:
    (tmp_path / "wattprof_demo_job.py").write_text(
        "import sys\nsys.exit(0 if sys.argv[1:] == ['x'] else 5)\n", encoding="utf-8"
    )
    monkeypatch.syspath_prepend(str(tmp_path))

    assert cli.main(["-m", "wattprof_demo_job", "x"]) == 0


def test_config_file_is_read(tmp_path: Path, fake_agent: type[FakeAgent]) -> None:
    (tmp_path / "config.properties").write_text(
        "filter-method-names=from.file\n", encoding="utf-8"
    )
    script = tmp_path / "noop.py"
    script.write_text("pass\n", encoding="utf-8")

    assert cli.main([str(script)]) == 0
    assert fake_agent.instances[0].settings.filter_method_names == ["from.file"]


def test_unsupported_platform_exits_with_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WATTPROF_RAPL_BASE_PATH", str(tmp_path / "missing"))
    monkeypatch.setattr(
        cli, "Agent", lambda settings: Agent(settings, configure_logging=False)
    )
    script = tmp_path / "noop.py"
    script.write_text("pass\n", encoding="utf-8")

    assert cli.main(["--sensor", "rapl", str(script)]) == 1
    assert "Exiting" in capsys.readouterr().err
