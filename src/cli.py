"""
Command line entry point: stream-relay VIDEO_FILE STREAM_NAME [options]
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from cancellation import CancellationToken
from config import settings as default_settings, VERSION
from directory import DirectoryClient
from events import EventManager
from models import RelayConfig, RelayEvent, WebhookConfig
from relay import Relay

logger = logging.getLogger(__name__)

LOG_LEVELS = ["critical", "error", "warning", "info", "debug"]


class RelayArgumentParser(argparse.ArgumentParser):
    """Exit with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser(settings=default_settings) -> argparse.ArgumentParser:
    parser = RelayArgumentParser(
        prog="stream-relay",
        description="Relay a transcoded video file to any number of TCP viewers.")
    parser.add_argument("video_file", help="source media passed to the transcoder")
    parser.add_argument("stream_name", help="name the stream is registered under")
    parser.add_argument("--transport",
                        help=f"endpoint transport protocol ({settings.TRANSPORT} by default)")
    parser.add_argument("--host",
                        help=f"endpoint host ({settings.HOST} by default)")
    parser.add_argument("--port", type=int, dest="listen_port",
                        help=f"listen port ({settings.LISTEN_PORT} by default)")
    parser.add_argument("--ffmpeg_port", "--transcoder-port", type=int, dest="transcoder_port",
                        help=f"port for the transcoder instance ({settings.TRANSCODER_PORT} by default)")
    parser.add_argument("--video_size",
                        help=f"video size ({settings.VIDEO_SIZE} by default)")
    parser.add_argument("--bit_rate",
                        help=f"video bit rate ({settings.BIT_RATE} by default)")
    parser.add_argument("--keywords",
                        help="search keywords for the stream: key1,key2,...,keyn")
    parser.add_argument("--transcoder", dest="transcoder_command",
                        help=f"transcoder command ({settings.TRANSCODER_COMMAND} by default)")
    parser.add_argument("--portal", dest="portal_url",
                        help="directory portal base URL")
    parser.add_argument("--status-port", type=int, dest="status_port",
                        help="serve the status API on this port")
    parser.add_argument("--log-level", dest="log_level", type=str.lower, choices=LOG_LEVELS,
                        help=f"log level ({settings.LOG_LEVEL} by default)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def parse_args(argv: Optional[List[str]] = None, settings=default_settings) -> argparse.Namespace:
    """
    Parse the command line.

    Unknown options are kept in `args.unrecognized` so they can be logged and
    skipped. Like every other option they must be followed by a value; a stray
    positional or a trailing option without one is a usage error.
    """
    parser = build_parser(settings)
    args, unknown = parser.parse_known_args(argv)

    args.unrecognized = []
    i = 0
    while i < len(unknown):
        option = unknown[i]
        if not option.startswith("-"):
            parser.error(f"unexpected argument '{option}'")
        if "=" in option:
            i += 1
        elif i + 1 < len(unknown) and not unknown[i + 1].startswith("-"):
            i += 2
        else:
            parser.error(f"missing argument after option {option}")
        args.unrecognized.append(option.split("=", 1)[0])
    return args


def build_config(args: argparse.Namespace, settings=default_settings) -> RelayConfig:
    return RelayConfig.from_settings(
        args.video_file,
        args.stream_name,
        settings,
        transport=args.transport,
        host=args.host,
        listen_port=args.listen_port,
        transcoder_port=args.transcoder_port,
        video_size=args.video_size,
        bit_rate=args.bit_rate,
        keywords=args.keywords,
        transcoder_command=args.transcoder_command,
    )


def log_event_handler(event: RelayEvent):
    """Log every relay event"""
    logger.info(f"Event: {event.event_type.value} for stream {event.stream_name} {event.data}")


async def run_relay(config: RelayConfig, settings=default_settings,
                    portal_url: Optional[str] = None,
                    status_port: Optional[int] = None,
                    token: Optional[CancellationToken] = None,
                    directory: Optional[DirectoryClient] = None) -> int:
    """Run one relay until it stops; returns the exit code."""
    loop = asyncio.get_running_loop()
    token = token or CancellationToken()

    handled_signals = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel, sig.name)
            handled_signals.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or unsupported platform
            pass

    directory = directory or DirectoryClient(
        portal_url or settings.PORTAL_URL,
        timeout=settings.PORTAL_TIMEOUT,
        api_token=settings.API_TOKEN)

    webhook = WebhookConfig(url=settings.WEBHOOK_URL) if settings.WEBHOOK_URL else None
    event_manager = EventManager(webhook, drain_timeout=settings.EVENT_DRAIN_TIMEOUT)
    event_manager.add_handler(log_event_handler)
    await event_manager.start()

    relay = Relay(config, directory, token=token, event_manager=event_manager)

    status = None
    if status_port is not None or settings.STATUS_ENABLED:
        from api import start_status_server
        try:
            status = await start_status_server(
                relay, settings.STATUS_HOST, status_port or settings.STATUS_PORT)
        except OSError as e:
            logger.warning(f"Status API unavailable: {e}")

    try:
        return await relay.serve()
    finally:
        if status:
            from api import stop_status_server
            await stop_status_server(*status)
        await event_manager.stop()
        await directory.aclose()
        for sig in handled_signals:
            loop.remove_signal_handler(sig)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to start the relay."""
    try:
        args = parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1

    try:
        logging.basicConfig(
            level=(args.log_level or default_settings.LOG_LEVEL).upper(),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    except ValueError as e:
        print(f"stream-relay: error: {e}", file=sys.stderr)
        return 1
    for option in args.unrecognized:
        logger.info(f"Unrecognized option '{option}', skipping")

    try:
        config = build_config(args)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    # Try to use uvloop for better async performance
    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        logger.info("Using uvloop event loop")
    except ImportError:
        logger.info("Using standard asyncio event loop")

    logger.info(f"Starting stream-relay v{VERSION}: '{config.stream_name}' from {config.source_path}")
    return asyncio.run(run_relay(
        config,
        portal_url=args.portal_url,
        status_port=args.status_port))


if __name__ == "__main__":
    sys.exit(main())
