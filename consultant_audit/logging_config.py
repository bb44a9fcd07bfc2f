"""
Structured logging configuration + per-stage pipeline log lines.

configure_logging() is called once by the CLI and the RQ job entry point.
Supports text (human-readable) and JSON formats via LOG_FORMAT env var.
LOG_LEVEL defaults to INFO.

log_stage() is the single way pipeline code reports what happened to a
consultant: a stage tag (CRAWL/PARSE/BOOKING/AI/SCORE/PIPELINE), the slug, a
status word, optional detail and optional [current/total] progress. The same
fields are attached to the record so the JSON formatter emits them as keys.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

from consultant_audit.config import STAGE_LOG_TAGS

_STAGE_FIELDS = ('stage', 'slug', 'status', 'detail', 'progress')


class JSONFormatter(logging.Formatter):
    """Single-line JSON log formatter for production log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key in _STAGE_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = [
    'urllib3',
    'openai',
    'httpcore',
    'httpx',
    'rq.worker',
]


def configure_logging():
    """
    Set up root logger with format/level from env vars.

    Environment variables:
        LOG_LEVEL  — Python log level name (default: INFO)
        LOG_FORMAT — "text" (default) or "json"
    """
    level_name = os.getenv('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)

    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    root = logging.getLogger()
    root.setLevel(level)

    # Remove any existing handlers to avoid duplicates on re-init
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))

    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def format_stage_line(tag, slug, status, detail=None, progress=None):
    """Render '[CRAWL   ] [3/40] jane-doe: success (200)'."""
    parts = [f'[{tag:<8}]']
    if progress:
        parts.append(f'[{progress[0]}/{progress[1]}]')
    parts.append(f'{slug}:')
    parts.append(status)
    if detail:
        parts.append(f'({detail})')
    return ' '.join(parts)


def log_stage(logger, level, stage, slug, status, detail=None, progress=None):
    """
    Emit one stage line.

    Args:
        logger:   the calling module's logger
        level:    logging level (logging.INFO / WARNING / ERROR)
        stage:    pipeline stage name ('crawl', 'booking_api', ...) or a tag ('PIPELINE')
        slug:     consultant slug, or a pseudo-slug like 'init' for run-level lines
        status:   short status word — 'success', 'retry', 'error', 'skipped', ...
        detail:   optional free text
        progress: optional (current, total) tuple
    """
    tag = STAGE_LOG_TAGS.get(stage, str(stage).upper())
    logger.log(
        level,
        format_stage_line(tag, slug, status, detail, progress),
        extra={
            'stage': tag,
            'slug': slug,
            'status': status,
            'detail': detail,
            'progress': f'{progress[0]}/{progress[1]}' if progress else None,
        },
    )
