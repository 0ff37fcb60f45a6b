"""YAML config loading and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Union

import yaml
from pydantic import ValidationError

from stepforge.config.defaults import merge_with_defaults
from stepforge.config.schema import ProjectConfig


class ConfigError(Exception):
    pass


def read_yaml(path: Union[str, Path]) -> dict:
    """Read a YAML mapping from disk, turning every failure into ``ConfigError``."""
    path = Path(path)

    if not path.exists():
        raise ConfigError(
            f"File not found at '{path}'. "
            f"Pass the path to a stepforge YAML file (e.g. stepforge.yaml)."
        )

    try:
        raw_text = path.read_text(encoding="utf-8")
    except PermissionError:
        raise ConfigError(f"Permission denied reading '{path}'.")
    except OSError as e:
        raise ConfigError(f"Error reading '{path}': {e}")

    try:
        raw = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        if hasattr(e, "problem_mark"):
            mark = e.problem_mark
            raise ConfigError(
                f"YAML syntax error in '{path}' on line {mark.line + 1}, "
                f"column {mark.column + 1}: {e.problem}"
            )
        raise ConfigError(f"YAML syntax error in '{path}': {e}")

    if not isinstance(raw, dict):
        raise ConfigError(
            f"'{path}' must be a YAML mapping (dict), got {type(raw).__name__}."
        )
    return raw


class ConfigLoader:

    @staticmethod
    def load(path: Union[str, Path]) -> ProjectConfig:
        raw = read_yaml(path)
        # A bare workflow definition is a project with nothing else configured
        if "workflow" not in raw and "steps" in raw:
            raw = {"workflow": raw}
        return ConfigLoader.validate(raw)

    @staticmethod
    def validate(config: dict) -> ProjectConfig:
        merged = merge_with_defaults(config)

        try:
            return ProjectConfig(**merged)
        except ValidationError as e:
            errors = []
            for err in e.errors():
                loc = " → ".join(str(p) for p in err["loc"])
                errors.append(f"  - {loc or 'root'}: {err['msg']}")
            error_text = "\n".join(errors)
            raise ConfigError(f"Configuration validation failed:\n{error_text}")
