"""Entry point for the log processor worker."""

import logging
import signal
import sys
import threading

from log_processor.config import load_config
from log_processor.errors import ConfigError, ConnectionSetupError
from log_processor.worker import Connections, Worker


def main():
    try:
        config = load_config()
    except ConfigError as exc:
        logging.basicConfig(level=logging.ERROR)
        logging.getLogger(__name__).error("Configuration error: %s", exc)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    connections = Connections.from_config(config)
    try:
        connections.verify()
    except ConnectionSetupError as exc:
        logger.error("Log processor worker connections error: %s", exc)
        connections.close()
        sys.exit(1)

    logger.info(
        "Starting log processor on tube %r (%s:%d)",
        config.beanstalk_tube, config.beanstalk_host, config.beanstalk_port,
    )
    Worker(config, connections, shutdown_event).run()


if __name__ == "__main__":
    main()
