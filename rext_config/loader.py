"""TOML configuration loader.

Reads the service graph from a single TOML document and refuses to hand it
out unless every node passes `validate_config()`.
"""

import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from rext_config.schemas import RootConfig
from rext_obs.logging import get_logger
from rext_scrape.exceptions import ConfigError

logger = get_logger(__name__)


def parse_config(data: dict[str, Any]) -> RootConfig:
    """Build and validate a RootConfig from already decoded data.

    Raises:
        ConfigError: Structural or semantic validation failed
    """
    try:
        config = RootConfig.model_validate(data)
    except ValidationError as e:
        logger.error("config_malformed", errors=e.errors(include_url=False))
        raise ConfigError(f"malformed configuration: {e}") from e
    if config.validate_config():
        raise ConfigError("configuration has errors, see log for details")
    return config


def load_config(path: str | Path) -> RootConfig:
    """Read, parse and validate the TOML file at `path`.

    Raises:
        ConfigError: File missing, not TOML, or invalid
    """
    path = Path(path)
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except OSError as e:
        logger.error("config_unreadable", path=str(path), error=str(e))
        raise ConfigError(f"can not read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        logger.error("config_not_toml", path=str(path), error=str(e))
        raise ConfigError(f"can not parse {path}: {e}") from e

    config = parse_config(data)
    logger.info(
        "config_loaded",
        path=str(path),
        services=len(config.services),
        resources=sum(len(s.resources) for s in config.services),
    )
    return config
