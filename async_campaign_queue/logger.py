# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging helpers for the campaign queue.

Handlers, level and format are configured once by the entry point
(``main.py`` or the CLI) through ``logging.basicConfig``; modules only ask
for named loggers.
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "CampaignQueue") -> logging.Logger:
    """Return the standard library logger bound to ``name``."""
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Apply the service-wide logging configuration."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # replace handlers installed by imported libraries
    )
