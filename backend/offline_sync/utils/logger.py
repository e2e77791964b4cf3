"""
Logging setup

loguru sinks for the sync engine. Every record carries the component name
bound by get_logger(); device-level sync events additionally carry the
device id and event name so they can be routed to their own file.
"""
import os
import sys
from loguru import logger
from typing import Optional

SYNC_EVENT_COMPONENT = 'sync_event'

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | {message}"

_EVENT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {extra[device_id]} | {extra[event]} | {message}"


def _is_sync_event(record) -> bool:
    return record['extra'].get('component') == SYNC_EVENT_COMPONENT


def setup_logger(
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    event_log_file: Optional[str] = None,
    rotation: str = '10 MB',
    retention: str = '7 days'
) -> None:
    """
    Replace loguru's default sink with the engine's sinks

    Args:
        log_level: minimum level; LOG_LEVEL in the environment wins
        log_file: rotating file receiving every record
        event_log_file: rotating file receiving only sync events
        rotation: size at which files are rotated
        retention: how long rotated files are kept
    """
    logger.remove()
    logger.configure(extra={'component': 'sync'})

    level = os.environ.get('LOG_LEVEL', log_level).upper()

    # Tracebacks may contain patient payloads, keep variable values out.
    logger.add(sys.stderr, format=_CONSOLE_FORMAT, level=level, colorize=True, backtrace=True, diagnose=False)

    if log_file:
        logger.add(
            log_file,
            format=_FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression='zip',
            encoding='utf-8',
        )

    if event_log_file:
        logger.add(
            event_log_file,
            format=_EVENT_FORMAT,
            level='INFO',
            filter=_is_sync_event,
            rotation=rotation,
            retention=retention,
            encoding='utf-8',
        )

    logger.debug(f"Logging configured: level={level}, file={log_file}, events={event_log_file}")


def get_logger(component: str = None):
    """Logger bound to a component name, e.g. get_logger('coordinator')."""
    if component:
        return logger.bind(component=component)
    return logger


def log_sync_event(device_id: str, event: str, details: dict = None):
    """Record a device-level sync event (batch processed, full sync, ...)."""
    bound = logger.bind(component=SYNC_EVENT_COMPONENT, device_id=device_id, event=event)
    if details:
        summary = ', '.join(f"{key}={value}" for key, value in details.items())
        bound.info(f"{event} on {device_id}: {summary}")
    else:
        bound.info(f"{event} on {device_id}")
