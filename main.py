"""Entry point for the speed test server and the headless client."""

from __future__ import annotations

import argparse
import json
import logging

from speedprobe import bootstrap
from speedprobe.measurements.models import ProgressEvent, SessionState

LOGGER = logging.getLogger("speedprobe.cli")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Self-hosted HTTP speed test")
    parser.add_argument("--config", help="Path to config.yaml", default="config.yaml")
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the ping/download/upload endpoints")
    serve.add_argument("--host", default=None, help="Override web server host")
    serve.add_argument("--port", type=int, default=None, help="Override web server port")
    serve.add_argument("--debug", action="store_true", help="Enable Flask debug mode")

    run = commands.add_parser("run", help="Run one test session against a server")
    run.add_argument("--url", default=None, help="Override the server base URL")
    run.add_argument("--log-file", action="store_true", help="Also write the rotating log file")
    return parser.parse_args()


def _log_progress(event: ProgressEvent) -> None:
    LOGGER.info("[%5.1f%%] %s", event.percent, event.status)


def run_session(context, base_url=None) -> int:
    controller = context.create_controller(base_url=base_url)
    controller.subscribe(_log_progress)
    session = controller.run()
    print(json.dumps(session.to_dict(), indent=2))
    return 0 if session.state is SessionState.COMPLETE else 1


def main() -> int:
    args = parse_args()
    if args.command == "run":
        with bootstrap(args.config, log_to_file=args.log_file) as context:
            return run_session(context, base_url=args.url)

    context = bootstrap(args.config)

    host = getattr(args, "host", None) or context.config.web.host
    port = getattr(args, "port", None) or context.config.web.port
    context.web_app.run(host=host, port=port, debug=getattr(args, "debug", False), threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
