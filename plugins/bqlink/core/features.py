"""
Feature toggles resolved once at process start.

A FeatureConfig is an explicit value: build it from command line flags,
environment variables or a YAML file, then pass it to whatever needs it.
"""

import argparse
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from bqlink.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "BQLINK_"

# field name -> (flag name, help)
_FLAGS = {
    "shadow_header_detection": (
        "shadow_header_detection",
        "Enable detection of shadow headers when verifying dependencies of c++ compilations",
    ),
    "clean_include_paths": (
        "clean_include_paths",
        "Clean include paths from -I arguments",
    ),
    "experimental_cache_miss_rate": (
        "experimental_cache_miss_rate",
        "Percent of actions to simulate cache misses. Integer [0,100).",
    ),
    "experimental_sysroot_do_not_upload": (
        "experimental_sysroot_do_not_upload",
        "Do not upload the files/directories under the directory given by --sysroot",
    ),
    "experimental_goma_deps_cache": (
        "experimental_goma_deps_cache",
        "Use the local deps cache with goma instead of goma's deps cache",
    ),
    "experimental_goma_deps_cache_size": (
        "experimental_goma_deps_cache_size",
        "Maximum number of entries to hold in the experimental deps cache",
    ),
    "experimental_exit_on_stuck_actions": (
        "experimental_exit_on_stuck_actions",
        "Exit with code 1 if a command did not finish within 2*timeout",
    ),
    "enable_credential_cache": (
        "enable_creds_cache",
        "If false, disables the credentials cache even if the auth mechanism supports it",
    ),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class FeatureConfig:
    """Feature configuration in use."""

    shadow_header_detection: bool = False
    # Cleans include paths by making absolute paths relative to the working directory.
    clean_include_paths: bool = False
    # Simulated cache miss rate, experimental builds only.
    experimental_cache_miss_rate: int = 0
    experimental_sysroot_do_not_upload: bool = False
    experimental_goma_deps_cache: bool = False
    experimental_goma_deps_cache_size: int = 300000
    experimental_exit_on_stuck_actions: bool = False
    enable_credential_cache: bool = True

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            expected = bool if f.type is bool else int
            # bool is an int subclass, so check it explicitly
            if expected is int and isinstance(value, bool) or not isinstance(value, expected):
                raise ConfigurationError(
                    f"{f.name} must be {expected.__name__}, got {value!r}"
                )
        if not 0 <= self.experimental_cache_miss_rate < 100:
            raise ConfigurationError(
                f"experimental_cache_miss_rate must be in [0,100), got {self.experimental_cache_miss_rate}"
            )
        if self.experimental_goma_deps_cache_size <= 0:
            raise ConfigurationError(
                f"experimental_goma_deps_cache_size must be positive, got {self.experimental_goma_deps_cache_size}"
            )

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_args(
        cls, namespace: argparse.Namespace, base: Optional["FeatureConfig"] = None
    ) -> "FeatureConfig":
        """
        Build from arguments parsed by a parser set up with add_feature_flags.

        Only flags given on the command line are applied; everything else
        comes from `base` (the defaults when omitted).

        Args:
            namespace: Parsed arguments
            base: Configuration the flags override, e.g. one loaded from YAML

        Returns:
            FeatureConfig
        """
        values = {}
        for name, (flag, _) in _FLAGS.items():
            if hasattr(namespace, flag):
                values[name] = getattr(namespace, flag)
        return replace(base if base is not None else cls(), **values)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FeatureConfig":
        """Build from BQLINK_<FIELD> environment variables; unset ones keep defaults."""
        if environ is None:
            environ = os.environ
        config = cls()
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                default = getattr(config, f.name)
                values[f.name] = _coerce(f.name, raw, type(default))
        return replace(config, **values)

    @classmethod
    def from_yaml(cls, path: str) -> "FeatureConfig":
        """
        Build from a YAML mapping of field names to values.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigurationError: If the file holds unknown keys or invalid values
        """
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Feature config not found: {config_path}")

        logger.info(f"Loading feature config from {config_path}")
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Feature config {config_path} must be a mapping")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Feature config {config_path} has unknown keys: {', '.join(unknown)}"
            )
        return cls(**data)


def add_feature_flags(parser: argparse.ArgumentParser) -> None:
    """
    Register one flag per feature toggle on the parser.

    Flags left off the command line are absent from the parsed namespace,
    so FeatureConfig.from_args can tell them apart from explicit values.
    """
    group = parser.add_argument_group("features")
    for name, (flag, help_text) in _FLAGS.items():
        kind = next(f.type for f in fields(FeatureConfig) if f.name == name)
        if kind is bool:
            group.add_argument(
                f"--{flag}",
                dest=flag,
                default=argparse.SUPPRESS,
                action=argparse.BooleanOptionalAction,
                help=help_text,
            )
        else:
            group.add_argument(
                f"--{flag}", dest=flag, type=int, default=argparse.SUPPRESS, help=help_text
            )


def _coerce(name: str, raw: str, kind: type) -> Any:
    value = raw.strip().lower()
    if kind is bool:
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        raise ConfigurationError(f"{ENV_PREFIX}{name.upper()} is not a boolean: {raw!r}")
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name.upper()} is not an integer: {raw!r}")
