import argparse

from burnwatch.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="burnwatch",
        description="Billing window and burn rate monitor for Claude Code usage logs",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to serve metrics on (default: :9186)",
    )
    parser.add_argument(
        "--refresh.interval",
        dest="refresh_interval",
        type=float,
        default=1.0,
        help="Aggregation interval in seconds, 1 to 60 (default: 1)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--log-dir",
        dest="log_dir",
        default=None,
        help="Claude Code projects directory (default: ~/.claude/projects)",
    )
    parser.add_argument(
        "--block.hours",
        dest="block_hours",
        type=float,
        default=None,
        help="Billing window length in hours (default: 5)",
    )
    parser.add_argument(
        "--block.idle-grace",
        dest="idle_grace_minutes",
        type=float,
        default=None,
        help="Minutes an ended block stays open for late log lines (default: 2)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Read the logs, report the billing summary and exit",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.refresh_interval = args.refresh_interval
    config.log_level = args.log_level
    config.log_format = args.log_format
    config.once = args.once
    # only override the environment when given explicitly
    if args.log_dir is not None:
        config.log_dir = args.log_dir
    if args.block_hours is not None:
        config.block_hours = args.block_hours
    if args.idle_grace_minutes is not None:
        config.idle_grace_minutes = args.idle_grace_minutes
    return config
