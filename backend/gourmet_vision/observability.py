"""
Error codes, the error taxonomy shared by clients, store and HTTP layer, and
the structured log lines for scans and image generations.

Log lines have the form `<event> <dict>`, with events
`scan_start`, `scan_done`, `scan_error`, `image_gen`, `invalid_transition`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Release metadata (set via env or build)
# -----------------------------------------------------------------------------
RELEASE_VERSION = os.getenv("RELEASE_VERSION", "v1.0")
GIT_SHA = os.getenv("GIT_SHA", "unknown")


# -----------------------------------------------------------------------------
# Error codes (normalized)
# -----------------------------------------------------------------------------
class ErrorCode(str, Enum):
    """Normalized error codes for HTTP error bodies, SSE events and logging."""

    # Image input errors
    INVALID_IMAGE_BASE64 = "INVALID_IMAGE_BASE64"
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"

    # Model errors
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    IMAGE_GEN_FAILED = "IMAGE_GEN_FAILED"
    API_KEY_MISSING = "API_KEY_MISSING"

    # Session errors
    SCAN_IN_PROGRESS = "SCAN_IN_PROGRESS"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    DISH_NOT_FOUND = "DISH_NOT_FOUND"


# -----------------------------------------------------------------------------
# Error taxonomy
# -----------------------------------------------------------------------------
class AnalysisError(Exception):
    """Whole-scan failure: the menu could not be turned into dishes."""

    error_code = ErrorCode.ANALYSIS_FAILED


class GenerationError(Exception):
    """Dish-scoped failure: no usable image came back for one dish."""

    error_code = ErrorCode.IMAGE_GEN_FAILED


class ScanInProgressError(Exception):
    error_code = ErrorCode.SCAN_IN_PROGRESS


class ApiKeyMissingError(Exception):
    error_code = ErrorCode.API_KEY_MISSING


@dataclass(frozen=True)
class InvalidTransition:
    """A rejected state-machine request. Reported, not raised."""

    dish_id: str
    event: str
    current_state: Optional[str]

    def __str__(self) -> str:
        if self.current_state is None:
            return f"{self.event} for unknown dish {self.dish_id}"
        return f"{self.event} not allowed from {self.current_state} (dish {self.dish_id})"


def log_invalid_transition(condition: InvalidTransition) -> None:
    # Absent ids are expected after a new scan replaced the collection.
    if condition.current_state is None:
        logger.info("invalid_transition %s", {"dish_id": condition.dish_id, "event": condition.event})
        return
    logger.debug(
        "invalid_transition %s",
        {"dish_id": condition.dish_id, "event": condition.event, "state": condition.current_state},
    )


# -----------------------------------------------------------------------------
# Scan timing
# -----------------------------------------------------------------------------
@dataclass
class ScanContext:
    """
    Correlation and timing for one menu scan, from upload to installed dishes.
    """

    session_id: str
    scan_token: str
    image_bytes: int = 0
    started_at: float = field(default_factory=time.monotonic)
    analysis_ms: Optional[int] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    dish_count: int = 0

    def finish(self, status: str, dish_count: int = 0) -> None:
        self.status = status
        self.dish_count = dish_count

    def log_fields(self, *, summary: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "session_id": self.session_id,
            "scan_token": self.scan_token,
            "release": RELEASE_VERSION,
            "git_sha": GIT_SHA,
        }
        if not summary:
            return out
        out["elapsed_ms"] = int((time.monotonic() - self.started_at) * 1000)
        if self.analysis_ms is not None:
            out["analysis_ms"] = self.analysis_ms
        out.update(status=self.status or "unknown", dish_count=self.dish_count, image_bytes=self.image_bytes)
        if self.error_code:
            out["error_code"] = self.error_code
        return out


# -----------------------------------------------------------------------------
# Structured logs
# -----------------------------------------------------------------------------
def log_scan_start(ctx: ScanContext, **extra: Any) -> None:
    logger.info("scan_start %s", {**ctx.log_fields(), **extra})


def log_scan_done(ctx: ScanContext) -> None:
    logger.info("scan_done %s", ctx.log_fields(summary=True))


def log_scan_error(ctx: ScanContext, error_code: ErrorCode, message: str, exc: Optional[BaseException] = None) -> None:
    """AnalysisError is an expected outcome; anything else gets a traceback."""
    ctx.error_code = error_code.value
    fields = {**ctx.log_fields(), "error_code": error_code.value, "error_message": message}
    if exc is None or isinstance(exc, AnalysisError):
        logger.warning("scan_error %s", fields)
    else:
        logger.exception("scan_error %s", fields)


def log_generation_outcome(dish_id: str, status: str, duration_ms: int, error: Optional[str] = None) -> None:
    fields: Dict[str, Any] = {"dish_id": dish_id, "status": status, "duration_ms": duration_ms}
    if not error:
        logger.info("image_gen %s", fields)
        return
    fields.update(error_code=GenerationError.error_code.value, error_message=error)
    logger.warning("image_gen %s", fields)
