"""
Logging setup for the agent panel API.

Every module logs through ``logging.getLogger(__name__)``; this only wires the
root handler and format once at startup.
"""

import logging
import sys


def setup_logging(component: str = "panel", level: str | int = logging.INFO) -> logging.Logger:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    format_string = f"[%(asctime)s] [{component.upper()}] %(levelname)s %(name)s - %(message)s"
    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    # boto and httpx are chatty at INFO
    for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger(component)
    logger.info("%s logging initialized (level=%s)", component.upper(), logging.getLevelName(level))
    return logger
