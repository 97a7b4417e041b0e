"""
pjsip-watch – PJSIP endpoint state monitor with Slack notifications. Entry point.
- Config file path as argument (default ~/.pjsipwatch/config.json)
- --once: single cycle (seeds state, checks PBX and Slack connectivity)
- SIGINT/SIGTERM stop the monitor after the current cycle
"""
import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent))

from pjsipwatch.config import ConfigError, config_to_dict, dict_to_config, load_config
from pjsipwatch.logging_setup import setup_logging
from pjsipwatch.monitor import run


async def _serve(config, once: bool) -> None:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C arrives as KeyboardInterrupt instead
            pass
    await run(config, shutdown=shutdown, once=once)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="pjsip-watch – PJSIP endpoint state monitor")
    parser.add_argument("config", nargs="?", type=Path, help="Path to config.json")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--log-path", help="Directory for log files")
    args = parser.parse_args(argv)

    try:
        config = dict_to_config(load_config(args.config))
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    log_path = args.log_path or config.log_path
    logger = setup_logging(log_path if log_path else None, config.log_level, config.secrets())
    logger.info("pjsip-watch started")
    logger.debug(
        "Config: %s",
        {k: v for k, v in config_to_dict(config).items() if k not in ("slack_token", "pbx_credential")},
    )
    try:
        asyncio.run(_serve(config, args.once))
    except KeyboardInterrupt:
        pass
    logger.info("pjsip-watch stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
