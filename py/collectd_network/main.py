"""collectd リスナーの起動ロジック。受信した値をログに出すだけの最小構成。"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, Sequence

from .api import ValueList
from .config import ConfigError, ListenerConfig, load_config
from .server import ServerOptions, listen_and_dispatch

LOGGER = logging.getLogger(__name__)


class LoggingDispatcher:
    """受け取った value list をすべてログに書くディスパッチャ。"""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def dispatch(self, value_list: ValueList) -> None:
        values = ", ".join(
            f"{value_list.ds_name(i)}={value!r}" for i, value in enumerate(value_list.values)
        )
        self._logger.info("%s time=%s %s", value_list.identifier, value_list.time, values)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="collectd network listener")
    parser.add_argument("--config", help="Path to listener configuration (TOML)")
    parser.add_argument("--address", help="override listen address (host:port)")
    parser.add_argument("--log-level", help="override logging level (default: config.log_level)")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    config: ListenerConfig | None = None
    if args.config:
        try:
            config = load_config(args.config)
        except ConfigError as exc:
            print(f"config error: {exc}", file=sys.stderr)
            raise SystemExit(1) from exc

    log_level = args.log_level or (config.log_level if config else "INFO")
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO), format="%(levelname)s %(name)s: %(message)s")

    if config is not None:
        address = args.address or config.address
        options = config.server_options()
    else:
        address = args.address or "0.0.0.0:25826"
        options = ServerOptions()

    try:
        listen_and_dispatch(address, LoggingDispatcher(), options, logger=logging.getLogger("collectd_network.server"))
    except KeyboardInterrupt:
        LOGGER.info("shutting down (keyboard interrupt)")
    except (OSError, ValueError) as exc:
        LOGGER.error("listener stopped: %s", exc)
        raise SystemExit(1) from exc


def run(argv: Iterable[str] | None = None) -> None:
    main(list(argv) if argv else None)


if __name__ == "__main__":
    main()
