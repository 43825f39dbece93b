#!/usr/bin/env python3
"""
SIEM agent entry point.

Usage:
    siem-agent --config configs/agent.yaml
    siem-agent --config configs/agent.yaml --server-host 10.0.0.5 --server-port 8080
    siem-agent --config configs/agent.yaml --check
"""

import argparse
import logging
import os
import sys

from siem_agent.config import load_config
from siem_agent.errors import ConfigError, StartupError
from siem_agent.pipeline import AgentSupervisor
from siem_agent.sender import BatchSender

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(log_file: str = "", level: str = "INFO") -> logging.Logger:
    """Configure the 'siem_agent' logger tree: stderr plus optional file."""
    logger = logging.getLogger("siem_agent")
    logger.setLevel(level.upper())
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SIEM log-shipping agent")
    parser.add_argument("--config", default="configs/agent.yaml", help="Path to agent YAML config")
    parser.add_argument("--server-host", default="", help="Collector host (overrides config)")
    parser.add_argument("--server-port", type=int, default=0, help="Collector port (overrides config)")
    parser.add_argument("--agent-id", default="", help="Agent ID (overrides config)")
    parser.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level (overrides config)")
    parser.add_argument("--check", action="store_true",
                        help="Only check collector connectivity and exit")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    if args.server_host:
        os.environ["SIEM_SERVER_HOST"] = args.server_host
    if args.server_port > 0:
        os.environ["SIEM_SERVER_PORT"] = str(args.server_port)
    if args.agent_id:
        os.environ["SIEM_AGENT_ID"] = args.agent_id

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    log = setup_logging(cfg.logging.file, args.log_level or cfg.logging.level)

    if args.check:
        sender = BatchSender(cfg.server, cfg.sender, cfg.agent.id, logger=log.getChild("sender"))
        reachable = sender.test_connectivity()
        sender.close()
        print(f"{'✓' if reachable else '✗'} Collector {cfg.server.base_url}: "
              f"{'reachable' if reachable else 'unreachable'}")
        sys.exit(0 if reachable else 1)

    supervisor = AgentSupervisor(cfg, logger=log)
    try:
        ok = supervisor.run()
    except StartupError as e:
        log.critical("Agent failed to start: %s", e)
        sys.exit(1)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
