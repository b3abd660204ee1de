"""X-Ray instrumentation setup."""

import os
from contextlib import contextmanager
from functools import wraps
from typing import Iterator, Optional

from aws_xray_sdk.core import xray_recorder
from aws_xray_sdk.core import patch as xray_patch

_ENABLED = False


def setup_xray(service_name: str = "cert-worker", enabled: Optional[bool] = None) -> None:
    """Set up X-Ray tracing."""
    global _ENABLED

    if enabled is None:
        enabled = os.getenv("XRAY_ENABLED", "false").lower() == "true"
    # LocalStack has no X-Ray daemon
    _ENABLED = bool(enabled) and not os.getenv("AWS_ENDPOINT_URL")

    if not _ENABLED:
        xray_recorder.configure(service=service_name, context_missing="LOG_ERROR")
        return

    xray_recorder.configure(
        service=service_name,
        context_missing="LOG_ERROR",
        sampling_rules={"version": 1, "default": {"fixed_target": 1, "rate": 0.1}},
    )
    xray_patch(["botocore", "sqlalchemy_core"])


def xray_capture(name):
    """Conditional X-Ray subsegment decorator - no-op unless tracing is enabled."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not _ENABLED:
                return func(*args, **kwargs)
            return xray_recorder.capture(name)(func)(*args, **kwargs)
        return wrapper
    return decorator


@contextmanager
def traced_segment(name: str, **annotations) -> Iterator[None]:
    """Open a segment for one unit of work on the current thread."""
    if not _ENABLED:
        yield
        return

    segment = xray_recorder.begin_segment(name)
    try:
        for key, value in annotations.items():
            segment.put_annotation(key, value)
        yield
    finally:
        xray_recorder.end_segment()
