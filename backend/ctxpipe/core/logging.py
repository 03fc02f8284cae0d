from __future__ import annotations

import logging

from ctxpipe.core.security import redact_secrets


class RedactionFilter(logging.Filter):
    """Log filter that masks embedding/provider API keys before output."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_secrets(str(record.msg))
        if record.args:
            record.args = tuple(redact_secrets(str(arg)) for arg in record.args)
        return True


def setup_logging(level: str) -> None:
    """Configure pipeline logging with secret redaction."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(isinstance(item, RedactionFilter) for item in root.filters):
        root.addFilter(RedactionFilter())
