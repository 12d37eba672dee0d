"""
CLI tests. Only commands that never start an agent are exercised here.
"""

import pytest

from .cli import create_parser, main
from .config import Config, save_config
from .store import PhaseStore


@pytest.fixture
def config_path(tmp_path, workspace_root):
    config = Config()
    config.paths.workspace = str(workspace_root)
    config.paths.state_dir = str(tmp_path / "state")
    path = tmp_path / "config.yaml"
    save_config(config, path)
    return path


def test_parser():
    parser = create_parser()

    args = parser.parse_args(["run", "plan.md", "--all"])
    assert args.command == "run"
    assert args.all
    assert str(args.plan) == "plan.md"

    args = parser.parse_args(["-v", "phases", "plan.md", "--regenerate"])
    assert args.verbose
    assert args.regenerate

    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_phases_command(config_path, plan_path, tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["-c", str(config_path), "phases", str(plan_path)])

    assert exc.value.code == 0
    assert "phase-3" in capsys.readouterr().out
    assert PhaseStore(tmp_path / "state").load("plan-007") is not None


def test_skip_and_status(config_path, plan_path, capsys):
    with pytest.raises(SystemExit):
        main(["-c", str(config_path), "status", str(plan_path)])
    assert "No phases yet" in capsys.readouterr().out

    with pytest.raises(SystemExit) as exc:
        main(["-c", str(config_path), "skip", str(plan_path)])
    assert exc.value.code == 0
    assert "Nothing to skip" in capsys.readouterr().out


def test_missing_plan(config_path, tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["-c", str(config_path), "status", str(tmp_path / "missing.md")])
    assert exc.value.code == 1


def test_bad_config(tmp_path, plan_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("phases:\n  max_files_per_phase: 0\n")
    with pytest.raises(SystemExit) as exc:
        main(["-c", str(bad), "status", str(plan_path)])
    assert exc.value.code == 2
