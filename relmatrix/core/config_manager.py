from __future__ import annotations

import json
import os
import pathlib
from copy import deepcopy
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from relmatrix.build.config import (
    BuildSettings,
    MatrixConfig,
    PackageSettings,
    ProjectSettings,
    PublishSettings,
    ToolchainSettings,
)
from relmatrix.build.toolchain import classify_target
from relmatrix.core.base import RelmatrixManager
from relmatrix.utils.exceptions import ConfigurationError, ManagerInitializationError

DEFAULT_CONFIG_FILE = 'relmatrix.yaml'


class ConfigSchema(BaseModel):
    """Schema for validating the run configuration.

    This model defines the expected structure and default values. The
    defaults describe the three-target release of the proxy binary.
    """
    project: ProjectSettings = Field(default_factory=ProjectSettings, description='Project being released')
    matrix: MatrixConfig = Field(default_factory=MatrixConfig, description='Target matrix')
    toolchain: ToolchainSettings = Field(default_factory=ToolchainSettings, description='Toolchain versions')
    build: BuildSettings = Field(default_factory=BuildSettings, description='Build settings')
    package: PackageSettings = Field(default_factory=PackageSettings, description='Packaging settings')
    publish: PublishSettings = Field(default_factory=PublishSettings, description='Release store settings')
    logging: Dict[str, Any] = Field(
        default_factory=lambda: {
            'level': 'INFO',
            'format': 'text',
            'file': {
                'enabled': False,
                'path': 'logs/relmatrix.log',
                'rotation': '10 MB',
                'retention': '5 days',
            },
            'console': {
                'enabled': True,
                'level': 'INFO',
            },
        },
        description='Logging settings',
    )


class ConfigManager(RelmatrixManager):
    """Configuration manager for a release run.

    This manager handles loading, validating, and providing access to
    configuration settings from files and environment variables.

    Attributes:
        _config_path: Path to the configuration file
        _env_prefix: Prefix for environment variables
        _config: The loaded configuration
        _settings: The validated configuration model
        _loaded_from_file: Whether configuration was loaded from a file
        _env_vars_applied: Set of applied environment variables
    """

    REPLACED_TABLES = {('toolchain', 'pins'), ('toolchain', 'versions')}

    def __init__(
            self,
            config_path: Optional[Union[str, pathlib.Path]] = None,
            env_prefix: str = 'RELMATRIX_',
            overrides: Optional[Dict[str, Any]] = None,
            environ: Optional[Dict[str, str]] = None,
    ) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file; a missing explicit path is an error
            env_prefix: Prefix for environment variables
            overrides: Dotted keys applied after the file and the environment
            environ: Environment to read overrides from, defaults to ``os.environ``
        """
        super().__init__(name='config_manager')
        self._explicit_path = config_path is not None
        self._config_path = pathlib.Path(config_path) if config_path else pathlib.Path(DEFAULT_CONFIG_FILE)
        self._env_prefix = env_prefix
        self._overrides = overrides or {}
        self._environ = os.environ if environ is None else environ
        self._config: Dict[str, Any] = {}
        self._settings: Optional[ConfigSchema] = None
        self._loaded_from_file = False
        self._env_vars_applied: Set[str] = set()

    def initialize(self) -> None:
        """Load configuration from defaults, file, environment and overrides.

        Raises:
            ConfigurationError: If the configuration is missing or invalid
            ManagerInitializationError: If initialization fails for another reason
        """
        try:
            self._config = ConfigSchema().model_dump(mode='json')
            self._load_from_file()
            self._apply_env_vars()
            for key, value in self._overrides.items():
                self._set_nested_value(self._config, key.split('.'), value)
            self._validate_config()

            self._initialized = True
            self._healthy = True
        except ConfigurationError:
            raise
        except Exception as e:
            raise ManagerInitializationError(
                f'Failed to initialize ConfigManager: {str(e)}',
                manager_name=self.name
            ) from e

    def _load_from_file(self) -> None:
        """Load configuration from a file.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        if not self._config_path.exists():
            if self._explicit_path:
                raise ConfigurationError(
                    f'Config file not found: {self._config_path}', config_key='config_path'
                )
            return

        suffix = self._config_path.suffix.lower()
        if suffix not in ('.yaml', '.yml', '.json'):
            raise ConfigurationError(
                f'Unsupported config file format: {self._config_path.suffix}',
                config_key='config_path'
            )

        try:
            content = self._config_path.read_text(encoding='utf-8')
            if suffix == '.json':
                file_config = json.loads(content)
            else:
                file_config = yaml.safe_load(content)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f'Error parsing config file {self._config_path}: {str(e)}',
                config_key='config_path'
            ) from e

        if file_config:
            if not isinstance(file_config, dict):
                raise ConfigurationError(
                    f'Config file {self._config_path} must contain a mapping',
                    config_key='config_path'
                )
            self._merge_config(file_config)
            self._loaded_from_file = True

    def _merge_config(self, new_config: Dict[str, Any], target: Optional[Dict[str, Any]] = None,
                      path: Tuple[str, ...] = ()) -> None:
        """Recursively merge a configuration mapping into the current config.

        Per-kind tables such as ``toolchain.pins`` are replaced as a whole, so
        a file can drop a default entry.
        """
        target = self._config if target is None else target
        for key, value in new_config.items():
            key_path = path + (key,)
            if (isinstance(value, dict) and isinstance(target.get(key), dict)
                    and key_path not in self.REPLACED_TABLES):
                self._merge_config(value, target[key], key_path)
            else:
                target[key] = deepcopy(value)

    def _apply_env_vars(self) -> None:
        """Apply environment variables to the configuration.

        ``RELMATRIX_PUBLISH_REPOSITORY`` sets ``publish.repository``. Names are
        matched against the known keys, so keys containing underscores
        (``RELMATRIX_MATRIX_FAIL_FAST``) resolve as expected.
        """
        for env_name, env_value in self._environ.items():
            if not env_name.startswith(self._env_prefix):
                continue

            parts = env_name[len(self._env_prefix):].lower().split('_')
            config_path = self._resolve_env_path(self._config, parts)
            current = self._get_nested_value(self._config, config_path)
            self._set_nested_value(self._config, config_path, self._parse_env_value(env_value, current))
            self._env_vars_applied.add(env_name)

    def _resolve_env_path(self, config: Any, parts: List[str]) -> List[str]:
        if not parts:
            return []
        if isinstance(config, dict):
            for size in range(len(parts), 0, -1):
                key = '_'.join(parts[:size])
                if key in config:
                    return [key] + self._resolve_env_path(config[key], parts[size:])
        return ['_'.join(parts)]

    @staticmethod
    def _parse_env_value(value: str, current: Any) -> Any:
        """Parse an environment value; pydantic coerces scalars during validation.

        Args:
            value: The string value from the environment
            current: The value currently configured at the same key

        Returns:
            A list for list-valued keys, otherwise the string itself
        """
        if isinstance(current, list):
            return [item.strip() for item in value.split(',') if item.strip()]
        return value

    @staticmethod
    def _get_nested_value(config: Dict[str, Any], path: List[str]) -> Any:
        result: Any = config
        for part in path:
            if not isinstance(result, dict) or part not in result:
                return None
            result = result[part]
        return result

    def _set_nested_value(self, config: Dict[str, Any], path: List[str], value: Any) -> None:
        """Set a nested value in the configuration dictionary.

        Args:
            config: The configuration dictionary
            path: List of keys forming the path to the value
            value: The value to set
        """
        if not path:
            return

        if len(path) == 1:
            config[path[0]] = value
            return

        key = path[0]
        if key not in config or not isinstance(config[key], dict):
            config[key] = {}

        self._set_nested_value(config[key], path[1:], value)

    def _validate_config(self) -> None:
        """Validate the configuration against the schema.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        try:
            settings = ConfigSchema(**self._config)
        except ValidationError as e:
            errors = e.errors()
            error_details = ', '.join((
                f"{'.'.join((str(loc) for loc in error['loc']))}: {error['msg']}"
                for error in errors
            ))
            raise ConfigurationError(
                f'Invalid configuration: {error_details}',
                details={'validation_errors': errors}
            ) from e

        for target in settings.matrix.targets:
            classify_target(target.platform_id)

        self._settings = settings
        self._config = settings.model_dump(mode='json')

    @property
    def settings(self) -> ConfigSchema:
        """The validated configuration.

        Raises:
            ConfigurationError: If the manager isn't initialized
        """
        if self._settings is None:
            raise ConfigurationError('Cannot access configuration before initialization')
        return self._settings

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by key.

        Args:
            key: The configuration key (dot-separated for nested values)
            default: Default value if the key doesn't exist

        Returns:
            The configuration value or default

        Raises:
            ConfigurationError: If the manager isn't initialized
        """
        if not self._initialized:
            raise ConfigurationError(
                'Cannot access configuration before initialization',
                config_key=key
            )

        result: Any = self._config
        try:
            for part in key.split('.'):
                result = result[part]
            return result
        except (KeyError, TypeError):
            return default

    def shutdown(self) -> None:
        self._initialized = False
        self._healthy = False

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            'config_path': str(self._config_path),
            'loaded_from_file': self._loaded_from_file,
            'env_vars_applied': sorted(self._env_vars_applied),
        })
        return status
