"""Unit tests for the command-line interface."""

from __future__ import annotations

import json
import logging

import pytest
import structlog
import yaml

from conftest import COMMIT, FakeCargo
from relmatrix import cli


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def config_file(tmp_path, project_dir):
    path = tmp_path / "relmatrix.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "project": {"name": "icx-proxy", "directory": str(project_dir)},
                "publish": {"backend": "github", "repository": "dfinity/icx-proxy"},
                "logging": {"console": {"enabled": False}},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def metadata_file(tmp_path, metadata):
    path = tmp_path / "metadata.json"
    path.write_text(json.dumps(metadata), encoding="utf-8")
    return path


@pytest.fixture
def fake_runner(monkeypatch):
    runner = FakeCargo()
    monkeypatch.setattr(cli, "CommandRunner", lambda logger=None: runner)
    return runner


def run_args(config_file, metadata_file, *extra):
    return ["--config", str(config_file), *extra, "--commit", COMMIT, "--metadata", str(metadata_file)]


def test_classify(capsys):
    assert cli.main(["classify", "x86_64-unknown-linux-musl", "x86_64-apple-darwin"]) == cli.EXIT_OK
    out = capsys.readouterr().out.splitlines()
    assert out == ["x86_64-unknown-linux-musl\tlinux-static-libc", "x86_64-apple-darwin\tdarwin"]


def test_classify_unsupported(capsys):
    assert cli.main(["classify", "x86_64-pc-windows-msvc"]) == cli.EXIT_ERROR
    assert "Unsupported target identifier" in capsys.readouterr().err


def test_no_command(capsys):
    assert cli.main([]) == cli.EXIT_ERROR


def test_env(config_file, metadata_file, tmp_path, capsys):
    env_file = tmp_path / "github_env"
    env_file.write_text("EXISTING=1\n", encoding="utf-8")

    argv = run_args(config_file, metadata_file, "env") + ["--append-to", str(env_file)]
    assert cli.main(argv) == cli.EXIT_OK

    expected = ["SHA_SHORT=abcdef1", "OPENSSL_STATIC=yes", "ICX_PROXY_VERSION=0.22.1"]
    assert capsys.readouterr().out.splitlines() == expected
    assert env_file.read_text(encoding="utf-8").splitlines() == ["EXISTING=1"] + expected


def test_env_uses_github_sha(config_file, metadata_file, monkeypatch, capsys):
    monkeypatch.setenv("GITHUB_SHA", "1234567890abcdef")
    argv = ["--config", str(config_file), "env", "--metadata", str(metadata_file)]
    assert cli.main(argv) == cli.EXIT_OK
    assert "SHA_SHORT=1234567" in capsys.readouterr().out


def test_missing_commit(config_file, metadata_file, monkeypatch, capsys):
    monkeypatch.delenv("GITHUB_SHA", raising=False)
    argv = ["--config", str(config_file), "env", "--metadata", str(metadata_file)]
    assert cli.main(argv) == cli.EXIT_ERROR
    assert "No commit given" in capsys.readouterr().err


def test_missing_package(config_file, tmp_path, capsys):
    metadata_file = tmp_path / "other.json"
    metadata_file.write_text(json.dumps({"packages": []}), encoding="utf-8")
    assert cli.main(run_args(config_file, metadata_file, "env")) == cli.EXIT_ERROR
    assert "icx-proxy" in capsys.readouterr().err


def test_dry_run(config_file, metadata_file, tmp_path, fake_runner, capsys):
    """Test the whole matrix against the in-memory store."""
    report_file = tmp_path / "report.json"
    argv = run_args(config_file, metadata_file, "run", "--dry-run") + ["--report", str(report_file)]

    assert cli.main(argv) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "Release abcdef1 (version 0.22.1)" in out
    assert "icx-proxy_0.22.1_amd64.deb: created" in out

    report = json.loads(report_file.read_text(encoding="utf-8"))
    assert report["succeeded"] is True
    assert [c["name"] for c in report["cells"]] == ["macos", "linux", "linux-gnu"]


def test_cell_failure(config_file, metadata_file, fake_runner, capsys):
    fake_runner.fail_targets.add("x86_64-unknown-linux-gnu")
    argv = run_args(config_file, metadata_file, "cell", "--target", "linux-gnu", "--dry-run")

    assert cli.main(argv) == cli.EXIT_CELL_FAILED
    assert "linux-gnu" in capsys.readouterr().out
    # only the selected cell ran
    assert all("x86_64-unknown-linux-musl" not in c for c in fake_runner.commands())


def test_unknown_cell(config_file, metadata_file, fake_runner):
    argv = run_args(config_file, metadata_file, "cell", "--target", "windows", "--dry-run")
    assert cli.main(argv) == cli.EXIT_ERROR


def test_github_backend_requires_token(config_file, metadata_file, fake_runner, monkeypatch, capsys):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    assert cli.main(run_args(config_file, metadata_file, "run")) == cli.EXIT_ERROR
    assert "GITHUB_TOKEN" in capsys.readouterr().err
    assert fake_runner.calls == []
