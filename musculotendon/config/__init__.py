"""Configuration loading.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from musculotendon.config.config import (
    CONFIG_DIR_ENV_VAR_NAME,
    deep_merge,
    get_user_config_dir,
    load_config,
    load_logging_config,
)

__all__ = [
    "CONFIG_DIR_ENV_VAR_NAME",
    "deep_merge",
    "get_user_config_dir",
    "load_config",
    "load_logging_config",
]
