"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from vidfetch.exceptions import ConfigurationError
from vidfetch.models.config import ServiceConfig

log = logging.getLogger(__name__)

ENV_PREFIX = "VIDFETCH_"


def _format_ini_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ConfigManager:
    """Handles all operations related to the service's INI config file."""

    def __init__(
        self,
        config_file_path: Path,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config_file_path = config_file_path
        self.environ = os.environ if environ is None else environ
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> ServiceConfig:
        """
        Loads configuration from the INI file, then applies `VIDFETCH_*`
        environment variables and CLI overrides, in that order, and validates it.

        A missing file is not an error; the defaults are used instead.

        Args:
            cli_options: A dictionary of options provided via the command line.
                `None` values are ignored.

        Raises:
            ConfigurationError: If the file cannot be parsed or validation fails.
        """
        settings: dict[str, Any] = {}

        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path)
            except configparser.Error as e:
                raise ConfigurationError(
                    f"Error parsing configuration file: {e}"
                ) from e

            if self._migrate_if_needed():
                log.info(
                    "[yellow]Configuration file was updated with new default values."
                    "[/yellow]"
                )
            settings.update(self._get_config_as_dict())
        else:
            log.debug(
                f"No configuration file at '{self.config_file_path}', using defaults."
            )

        settings.update(self._get_env_overrides())
        if cli_options:
            settings.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            return ServiceConfig(**settings)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any] | None = None) -> None:
        """
        Creates and saves a new configuration file holding every known key.

        Args:
            settings: Values to use instead of the defaults.

        Raises:
            ConfigurationError: If the values are invalid or the file cannot be
                written.
        """
        try:
            config_model = ServiceConfig(**(settings or {}))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {
            key: _format_ini_value(value)
            for key, value in config_model.model_dump().items()
        }

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """
        Reads the 'DEFAULT' section into a dictionary. Values stay strings;
        pydantic coerces them to the field types.
        """
        section = self._parser["DEFAULT"]
        known_keys = ServiceConfig.get_ini_keys()
        unknown = sorted(set(section) - known_keys)
        if unknown:
            log.warning(
                f"[yellow]Ignoring unknown configuration keys: {', '.join(unknown)}"
                "[/yellow]"
            )
        return {key: section[key] for key in known_keys if key in section}

    def _get_env_overrides(self) -> dict[str, str]:
        """Collects `VIDFETCH_<KEY>` variables for every known key."""
        overrides = {}
        for key in ServiceConfig.get_ini_keys():
            env_name = f"{ENV_PREFIX}{key.upper()}"
            if env_name in self.environ:
                overrides[key] = self.environ[env_name]
                log.debug(f"Using {env_name} from the environment.")
        return overrides

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = ServiceConfig()
        needs_saving = False

        config_section = self._parser["DEFAULT"]

        for key in sorted(ServiceConfig.get_ini_keys()):
            if key not in config_section:
                config_section[key] = _format_ini_value(getattr(defaults, key))
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{config_section[key]}'."
                )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
