"""Unit tests for the Configuration Manager."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from relmatrix.build.config import PlatformKind, PublishBackend
from relmatrix.core.config_manager import ConfigManager, ConfigSchema
from relmatrix.utils.exceptions import ConfigurationError, UnsupportedTargetError


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Run every test away from any relmatrix.yaml in the checkout."""
    monkeypatch.chdir(tmp_path)


def test_config_schema_default_values() -> None:
    """Test that ConfigSchema provides correct default values."""
    schema = ConfigSchema()

    assert schema.project.name == "icx-proxy"
    assert len(schema.matrix.targets) == 3
    assert schema.matrix.fail_fast is False
    assert schema.toolchain.default_version == "1.55.0"
    assert schema.toolchain.pins == {PlatformKind.LINUX_STATIC_LIBC: "1.58.1"}
    assert schema.build.features == ["skip_body_verification"]
    assert schema.package.tarball_prefix == "binaries"
    assert schema.publish.backend == PublishBackend.GITHUB
    assert schema.logging["level"] == "INFO"


def test_config_manager_without_file() -> None:
    """Test that a missing default file leaves the defaults in place."""
    manager = ConfigManager(environ={})
    assert manager.status()["initialized"] is False
    assert not manager.healthy
    manager.initialize()

    assert manager.initialized
    assert manager.healthy
    assert manager.status()["name"] == "config_manager"
    assert manager.status()["loaded_from_file"] is False
    assert manager.get("toolchain.default_version") == "1.55.0"
    assert manager.get("missing.key", "fallback") == "fallback"

    manager.shutdown()
    assert not manager.initialized


def test_config_manager_yaml_file(tmp_path: Path) -> None:
    """Test loading configuration from a YAML file."""
    config_file = tmp_path / "release.yaml"
    config_file.write_text(
        yaml.safe_dump(
            {
                "matrix": {
                    "fail_fast": True,
                    "targets": [
                        {
                            "platform_id": "aarch64-unknown-linux-gnu",
                            "os_family": "linux",
                            "output_path": "target/aarch64-unknown-linux-gnu/release",
                            "display_name": "linux-arm64",
                        }
                    ],
                },
                "publish": {"repository": "dfinity/icx-proxy"},
            }
        ),
        encoding="utf-8",
    )

    manager = ConfigManager(config_path=config_file, environ={})
    manager.initialize()

    settings = manager.settings
    assert settings.matrix.fail_fast is True
    assert [t.display_name for t in settings.matrix.targets] == ["linux-arm64"]
    assert settings.publish.repository == "dfinity/icx-proxy"
    # untouched keys keep their defaults
    assert settings.toolchain.default_version == "1.55.0"
    assert manager.status()["loaded_from_file"] is True


def test_config_manager_json_file(tmp_path: Path) -> None:
    config_file = tmp_path / "release.json"
    config_file.write_text(json.dumps({"build": {"locked": False}}), encoding="utf-8")

    manager = ConfigManager(config_path=config_file, environ={})
    manager.initialize()

    assert manager.get("build.locked") is False
    assert manager.get("build.static_link") is True


def test_config_manager_replaces_toolchain_tables(tmp_path: Path) -> None:
    """Test that per-kind tables in a file replace the defaults instead of merging."""
    config_file = tmp_path / "relmatrix.yaml"
    config_file.write_text(
        yaml.safe_dump({"toolchain": {"pins": {"darwin": "1.60.0"}, "versions": {"darwin": "1.60.0"}}}),
        encoding="utf-8",
    )
    manager = ConfigManager(config_path=config_file, environ={})
    manager.initialize()

    assert manager.settings.toolchain.pins == {PlatformKind.DARWIN: "1.60.0"}
    assert manager.settings.toolchain.versions == {PlatformKind.DARWIN: "1.60.0"}
    # other toolchain keys still merge with the defaults
    assert manager.settings.toolchain.default_version == "1.55.0"


def test_config_manager_clears_pins(tmp_path: Path) -> None:
    config_file = tmp_path / "relmatrix.yaml"
    config_file.write_text("toolchain:\n  pins: {}\n", encoding="utf-8")
    manager = ConfigManager(config_path=config_file, environ={})
    manager.initialize()

    assert manager.settings.toolchain.pins == {}


def test_config_manager_default_file_in_cwd(tmp_path: Path) -> None:
    (tmp_path / "relmatrix.yaml").write_text("project:\n  name: other\n", encoding="utf-8")

    manager = ConfigManager(environ={})
    manager.initialize()

    assert manager.settings.project.name == "other"


def test_config_manager_nonexistent_file() -> None:
    """Test that an explicitly named file must exist."""
    manager = ConfigManager(config_path="/path/that/does/not/exist.yaml", environ={})
    with pytest.raises(ConfigurationError, match="Config file not found"):
        manager.initialize()


def test_config_manager_unsupported_format(tmp_path: Path) -> None:
    config_file = tmp_path / "release.toml"
    config_file.write_text("[project]\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Unsupported config file format"):
        ConfigManager(config_path=config_file, environ={}).initialize()


def test_config_manager_invalid_yaml(tmp_path: Path) -> None:
    config_file = tmp_path / "release.yaml"
    config_file.write_text("matrix: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Error parsing config file"):
        ConfigManager(config_path=config_file, environ={}).initialize()


def test_config_manager_non_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "release.yaml"
    config_file.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="must contain a mapping"):
        ConfigManager(config_path=config_file, environ={}).initialize()


def test_config_manager_validation_error(tmp_path: Path) -> None:
    """Test that schema violations surface as ConfigurationError."""
    config_file = tmp_path / "release.yaml"
    config_file.write_text("publish:\n  repository: not-a-repository\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid configuration") as excinfo:
        ConfigManager(config_path=config_file, environ={}).initialize()
    assert "validation_errors" in excinfo.value.details


def test_config_manager_unsupported_target(tmp_path: Path) -> None:
    config_file = tmp_path / "release.yaml"
    config_file.write_text(
        yaml.safe_dump(
            {
                "matrix": {
                    "targets": [
                        {
                            "platform_id": "x86_64-pc-windows-msvc",
                            "os_family": "linux",
                            "output_path": "target/release",
                            "display_name": "windows",
                        }
                    ]
                }
            }
        ),
        encoding="utf-8",
    )
    with pytest.raises(UnsupportedTargetError):
        ConfigManager(config_path=config_file, environ={}).initialize()


def test_config_manager_env_vars() -> None:
    """Test that environment variables override the configuration."""
    environ = {
        "RELMATRIX_PUBLISH_REPOSITORY": "dfinity/icx-proxy",
        "RELMATRIX_MATRIX_FAIL_FAST": "true",
        "RELMATRIX_MATRIX_MAX_WORKERS": "2",
        "RELMATRIX_BUILD_FEATURES": "skip_body_verification, dev_mode",
        "RELMATRIX_TOOLCHAIN_DEFAULT_VERSION": "1.56.0",
        "UNRELATED": "value",
    }
    manager = ConfigManager(environ=environ)
    manager.initialize()

    settings = manager.settings
    assert settings.publish.repository == "dfinity/icx-proxy"
    assert settings.matrix.fail_fast is True
    assert settings.matrix.max_workers == 2
    assert settings.build.features == ["skip_body_verification", "dev_mode"]
    assert settings.toolchain.default_version == "1.56.0"
    assert manager.status()["env_vars_applied"] == sorted(k for k in environ if k != "UNRELATED")


def test_config_manager_overrides_win(tmp_path: Path) -> None:
    """Test precedence: file, then environment, then explicit overrides."""
    config_file = tmp_path / "release.yaml"
    config_file.write_text("publish:\n  backend: github\n  repository: a/b\n", encoding="utf-8")

    manager = ConfigManager(
        config_path=config_file,
        environ={"RELMATRIX_PUBLISH_REPOSITORY": "c/d"},
        overrides={"publish.backend": "memory", "project.directory": "/work/icx-proxy"},
    )
    manager.initialize()

    assert manager.settings.publish.repository == "c/d"
    assert manager.settings.publish.backend == PublishBackend.MEMORY
    assert manager.settings.project.directory == Path("/work/icx-proxy")


def test_config_manager_access_before_initialize() -> None:
    manager = ConfigManager(environ={})
    with pytest.raises(ConfigurationError):
        manager.get("project.name")
    with pytest.raises(ConfigurationError):
        _ = manager.settings
