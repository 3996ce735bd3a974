"""Load YAML configuration from package resources and the user config directory.

Precedence, lowest to highest:
  1) packaged resource ``musculotendon.config/{name}.yml``
  2) ``{user_config_dir}/{name}.yml``, where the directory is given by the
     ``MUSCULOTENDON_CONFIG_DIR`` environment variable

The user file is deep-merged over the packaged one, so it only needs to
list the values it changes.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from collections.abc import Mapping
from importlib import resources
import logging
import os
from pathlib import Path
from typing import Any, Optional

from ruamel.yaml import YAML


logger = logging.getLogger(__name__)


CONFIG_DIR_ENV_VAR_NAME = "MUSCULOTENDON_CONFIG_DIR"
DEFAULT_CONFIG_FILENAME = "default"
RESOURCE_ROOT = "musculotendon.config"


def get_yaml_loader(typ: str = "safe") -> YAML:
    """Returns a ruamel.yaml.YAML instance for reading config files."""
    yaml = YAML(typ=typ)
    yaml.default_flow_style = None
    return yaml


def deep_merge(
    base: Mapping[str, Any], over: Mapping[str, Any], ignore_none: bool = True
) -> dict[str, Any]:
    out: dict[str, Any] = dict(base)
    for k, v in over.items():
        if v is None and ignore_none:
            continue
        bv = out.get(k)
        if isinstance(v, Mapping) and isinstance(bv, Mapping):
            out[k] = deep_merge(bv, v)
        else:
            out[k] = v
    return out


def _maybe_open_yaml(resource_root: str, stem: str) -> Optional[dict]:
    """Return parsed YAML from package resources, or None if missing."""
    try:
        path = resources.files(resource_root) / f"{stem}.yml"
    except ModuleNotFoundError:
        return None

    if not path.is_file():
        return None

    yaml = get_yaml_loader(typ="safe")
    with resources.as_file(path) as real_path:
        with open(real_path, "r", encoding="utf-8") as f:
            return yaml.load(f) or {}


def get_user_config_dir() -> Optional[Path]:
    """Get user config directory from environment variable, or return None."""
    env_config_dir = os.environ.get(CONFIG_DIR_ENV_VAR_NAME)
    if env_config_dir is None:
        return None
    return Path(env_config_dir).expanduser()


def load_config(name: str = DEFAULT_CONFIG_FILENAME) -> dict[str, Any]:
    """Load a YAML config as a dict.

    Args:
        name: Stem of the config file, without the ``.yml`` suffix.

    Returns:
        The packaged config, with any user config of the same name merged over it.

    Raises:
        ValueError: If neither a packaged nor a user config of that name exists.
    """
    data = _maybe_open_yaml(RESOURCE_ROOT, name)

    user_config_dir = get_user_config_dir()
    if user_config_dir is not None:
        upath = user_config_dir / f"{name}.yml"
        if upath.exists():
            with open(upath, "r", encoding="utf-8") as f:
                user_data = get_yaml_loader(typ="safe").load(f) or {}
            logger.debug(f"Merging user config `{upath}`")
            data = deep_merge(data or {}, user_data)
        else:
            logger.info(
                f"Config file {name}.yml not found in user config directory "
                f"`{user_config_dir}`. Falling back to base resources."
            )

    if data is None:
        raise ValueError(f"Config '{name}.yml' not found in package resources or user config dir.")
    return data


def _normalize_log_level(label: str, lvl: str | int) -> int:
    if isinstance(lvl, str):
        lvl = lvl.strip().upper()
        try:
            lvl = logging.getLevelNamesMapping()[lvl]
        except KeyError:
            raise ValueError(f"Invalid {label} specified in YAML config: {lvl!r}")
    if not isinstance(lvl, int):
        raise ValueError(f"Cannot parse log level {lvl!r}")
    return lvl


def load_logging_config(name: str = DEFAULT_CONFIG_FILENAME) -> dict[str, Any]:
    """Return the ``logging`` section of a config, with levels converted to ints."""
    logging_cfg = dict(load_config(name).get("logging", {}))
    if "console_level" in logging_cfg:
        logging_cfg["console_level"] = _normalize_log_level(
            "console_level", logging_cfg["console_level"]
        )
    logging_cfg["pkg_console_levels"] = {
        pkg: _normalize_log_level("pkg_console_levels", lvl)
        for pkg, lvl in (logging_cfg.get("pkg_console_levels") or {}).items()
    }
    return logging_cfg
