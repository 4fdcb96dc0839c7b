"""Command line wrapper.

Usage: rextporter --config=rextporter.toml --port=8080

Exit codes: 0 on clean shutdown, 1 on configuration errors. Bind failures
exit non-zero through uvicorn.
"""

import argparse

import uvicorn

from apps.exporter_api.main import create_app
from rext_config.settings import Settings
from rext_obs.logging import get_logger
from rext_scrape.exceptions import ConfigError

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rextporter",
        description="Expose REST API values and relabelled metrics endpoints to Prometheus",
    )
    parser.add_argument("--config", dest="CONFIG_PATH", help="Service configuration TOML file")
    parser.add_argument("--host", dest="LISTEN_HOST", help="Bind host")
    parser.add_argument("--port", dest="LISTEN_PORT", type=int, help="Bind port")
    parser.add_argument("--metrics-path", dest="METRICS_PATH", help="Scrape endpoint path")
    return parser


def load_settings(argv: list[str] | None = None) -> Settings:
    """Settings from the environment, overridden by any flag given."""
    args = build_parser().parse_args(argv)
    overrides = {key: value for key, value in vars(args).items() if value is not None}
    return Settings(**overrides)


def main(argv: list[str] | None = None) -> int:
    """Run the exporter until interrupted."""
    settings = load_settings(argv)
    try:
        app = create_app(settings)
    except ConfigError as e:
        logger.error("exporter_config_error", path=settings.CONFIG_PATH, error=str(e))
        return 1

    uvicorn.run(
        app,
        host=settings.LISTEN_HOST,
        port=settings.LISTEN_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
    return 0


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run()
