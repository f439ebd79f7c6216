"""Command line: python -m yellboard --group ID --nats URL --listen HOST:PORT"""
import argparse
import logging
import sys

import uvicorn

from .config import PLAYERS, Settings, parse_listen
from .errors import ConfigError
from .main import configure_logging, create_app

logger = logging.getLogger("yellboard")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Shared soundboard synchronized over NATS")
    parser.add_argument("--listen", default=None, help="HTTP listen address, host:port")
    parser.add_argument("--nats", default=None, help="Broker URL")
    parser.add_argument("--group", default=None, help="Group identifier")
    parser.add_argument("--storage", default=None, help="Storage root for group directories")
    parser.add_argument("--player", choices=PLAYERS, default=None, help="Audio player")
    args = parser.parse_args(argv)

    try:
        host, port = parse_listen(args.listen) if args.listen else (None, None)
        settings = Settings.from_env().with_overrides(
            group_id=args.group,
            nats_url=args.nats,
            storage_root=args.storage,
            player=args.player,
            host=host,
            port=port,
        )
    except ConfigError as e:
        parser.error(str(e))

    configure_logging(settings.log_level)
    logger.info("Serving group %s on %s:%d", settings.group_id, settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
