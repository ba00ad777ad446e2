import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import BaseModel

from paneherd.config.schema import PaneherdConfig
from paneherd.utils import expand_env_vars

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("paneherd.yml", "paneherd.json")
USER_CONFIG_PATH = Path("~/.config/paneherd/paneherd.yml")


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if model.model_extra:
        logger.warning("Unknown keys in %s at %s: %s", path, config_path, list(model.model_extra.keys()))

    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)


def candidate_paths(directory: Optional[Path] = None) -> list[Path]:
    """Config locations in lookup order: project directory first, then user config."""
    base = directory if directory is not None else Path.cwd()
    paths = [base / name for name in CONFIG_FILENAMES]
    paths.append(USER_CONFIG_PATH.expanduser())
    return paths


def load_config_file(path: Path) -> PaneherdConfig:
    """Load and validate configuration from a YAML (or JSON) file.

    Args:
        path: Path to the config file.

    Returns:
        The validated configuration. Defaults when the file is missing or unreadable.

    Raises:
        pydantic.ValidationError: The file parsed but its values are invalid.
    """
    if not path.exists():
        return PaneherdConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read config file %s: %s", path, e)
        return PaneherdConfig()

    expanded = expand_env_vars(raw)
    model = PaneherdConfig.model_validate(expanded)
    _warn_unknown_keys(model, "root", path)
    return model


def load_config(path: Optional[Path] = None, *, search: Optional[Iterable[Path]] = None) -> PaneherdConfig:
    """Load the first existing config file.

    An explicit `path` wins over the search list.
    """
    if path is not None:
        return load_config_file(path.expanduser())

    for candidate in search if search is not None else candidate_paths():
        if candidate.exists():
            logger.debug("Loading config from %s", candidate)
            return load_config_file(candidate)
    return PaneherdConfig()
