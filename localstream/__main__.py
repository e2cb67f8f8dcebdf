import argparse
import logging

from . import create_app
from .config import Config, server_url


def configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="LocalStream signaling server")
    parser.add_argument("--host", default=Config.HOST)
    parser.add_argument("--port", type=int, default=Config.PORT)
    parser.add_argument("--log-level", default=Config.LOG_LEVEL)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    app, socketio = create_app(HOST=args.host, PORT=args.port)

    base = server_url(app.config)
    log = logging.getLogger("localstream")
    log.info("LocalStream signaling server on %s", base)
    log.info("SocketIO async_mode=%s", socketio.async_mode)

    socketio.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
