"""
Infrastructure package.

Logger construction and structured event logging.
"""

from gridengine.infra.logging_cfg import build_logger, log_event

__all__ = [
    "build_logger",
    "log_event",
]
