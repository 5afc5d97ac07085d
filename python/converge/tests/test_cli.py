"""
End-to-end tests of the command-line interface against the file-backed
simulated cloud.
"""

import json

import pytest

from converge.cli.converge import EXIT_CHANGES, EXIT_ERROR, EXIT_OK, build_parser, run

CONFIG = """
resources:
  vpc:
    main:
      cidr_block: 10.0.0.0/16
  subnet:
    a:
      vpc_id: ${vpc.main.id}
      cidr_block: 10.0.1.0/24
      availability_zone: us-east-1a
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A directory holding a configuration file; state lives beside it."""
    monkeypatch.delenv("CONVERGE_STATE_PATH", raising=False)
    (tmp_path / "main.yaml").write_text(CONFIG)
    return tmp_path


def _args(workspace, *argv):
    return [
        *argv,
        "--state",
        str(workspace / "state.json"),
    ]


def test_parser_requires_a_subcommand():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_plan_apply_and_replan(workspace, capsys):
    config = str(workspace / "main.yaml")

    assert run(_args(workspace, "plan", "-f", config, "--detailed-exitcode")) == EXIT_CHANGES
    out = capsys.readouterr().out
    assert "+ create   vpc.main" in out
    assert "Plan: 2 to add, 0 to change, 0 to destroy, 0 to replace." in out

    assert run(_args(workspace, "apply", "-f", config, "--auto-approve")) == EXIT_OK
    out = capsys.readouterr().out
    assert "Apply complete: 2 succeeded, 0 failed, 0 skipped, 0 cancelled." in out
    assert (workspace / "state.json").exists()
    assert (workspace / "state.json.cloud.json").exists()
    assert not (workspace / "state.json.lock").exists()

    assert run(_args(workspace, "plan", "-f", config, "--detailed-exitcode")) == EXIT_OK
    assert "No changes." in capsys.readouterr().out


def test_state_list_and_show(workspace, capsys):
    config = str(workspace / "main.yaml")
    assert run(_args(workspace, "apply", "-f", config, "--auto-approve")) == EXIT_OK
    capsys.readouterr()

    assert run(_args(workspace, "state", "list")) == EXIT_OK
    assert capsys.readouterr().out.split() == ["subnet.a", "vpc.main"]

    assert run(_args(workspace, "state", "show", "subnet.a")) == EXIT_OK
    record = json.loads(capsys.readouterr().out)
    assert record["address"] == "subnet.a"
    assert record["attributes"]["vpc_id"].startswith("sim-vpc-")

    assert run(_args(workspace, "state", "show", "subnet.b")) == EXIT_ERROR


def test_saved_plan_round_trip(workspace, capsys):
    config = str(workspace / "main.yaml")
    plan_file = str(workspace / "changes.plan.json")

    assert run(_args(workspace, "plan", "-f", config, "--out", plan_file)) == EXIT_OK
    assert "Saved the plan" in capsys.readouterr().out

    assert run(_args(workspace, "apply", "--plan", plan_file, "--auto-approve")) == EXIT_OK
    capsys.readouterr()

    # The state moved on, so the same saved plan is now stale.
    assert run(_args(workspace, "apply", "--plan", plan_file, "--auto-approve")) == EXIT_ERROR
    assert "plan again" in capsys.readouterr().err


def test_destroy_removes_everything(workspace, capsys):
    config = str(workspace / "main.yaml")
    assert run(_args(workspace, "apply", "-f", config, "--auto-approve")) == EXIT_OK

    assert run(_args(workspace, "destroy", "--auto-approve")) == EXIT_OK
    assert "- destroy  subnet.a" in capsys.readouterr().out

    cloud = json.loads((workspace / "state.json.cloud.json").read_text())
    assert cloud["objects"] == {}
    assert run(_args(workspace, "state", "list")) == EXIT_OK


def test_declined_confirmation_changes_nothing(workspace, capsys, monkeypatch):
    config = str(workspace / "main.yaml")
    monkeypatch.setattr("builtins.input", lambda prompt="": "no")

    assert run(_args(workspace, "apply", "-f", config)) == EXIT_ERROR

    assert "Apply cancelled." in capsys.readouterr().out
    assert not (workspace / "state.json.cloud.json").exists()


def test_force_unlock_with_wrong_id_fails(workspace, capsys):
    assert run(_args(workspace, "force-unlock", "no-such-lock")) == EXIT_ERROR
    assert "Error:" in capsys.readouterr().err


def test_configuration_errors_exit_one(workspace, capsys):
    bad = workspace / "cycle.yaml"
    bad.write_text(
        "resources:\n"
        "  vpc:\n"
        "    a: {cidr_block: '${vpc.b.id}'}\n"
        "    b: {cidr_block: '${vpc.a.id}'}\n"
    )

    assert run(_args(workspace, "apply", "-f", str(bad), "--auto-approve")) == EXIT_ERROR
    assert "Dependency cycle" in capsys.readouterr().err
    assert run(_args(workspace, "plan")) == EXIT_ERROR
    assert "pass one or more -f" in capsys.readouterr().err
