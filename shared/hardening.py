"""Hardening utilities shared by the Trellis services.

Provides retry with backoff for transient store failures, conversion of
internal errors into user-facing messages, validation of text and
paths arriving at the system boundary, and component health probes.
Nothing here imports Trellis modules; errors are classified by their
``code`` and ``retryable`` attributes.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 1. Retry Logic
# ---------------------------------------------------------------------------

_DEFAULT_RETRYABLE = (OSError, TimeoutError, ConnectionError)


@dataclass
class RetryConfig:
    """Configuration for retry-with-backoff behavior.

    Attributes:
        max_attempts: Total number of attempts (including the first).
        base_delay: Initial delay in seconds before first retry.
        max_delay: Upper bound on delay between retries.
        exponential_backoff: Double delay on each retry when True.
        retryable_exceptions: Exception types that trigger a retry.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_backoff: bool = True
    retryable_exceptions: tuple[type[BaseException], ...] = _DEFAULT_RETRYABLE

    def to_dict(self) -> dict[str, Any]:
        """Serialize the numeric settings (exception types are not serialized)."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "exponential_backoff": self.exponential_backoff,
        }


class RetriesExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        last_error: The final exception that caused the failure.
        attempts: Total number of attempts made.
    """

    def __init__(self, last_error: Exception, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"All {attempts} attempts failed. Last error: {last_error}")


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Delay in seconds before retry number *attempt* (0-based), capped."""
    if config.exponential_backoff:
        delay = config.base_delay * (2**attempt)
    else:
        delay = config.base_delay
    return min(delay, config.max_delay)


def retry_with_backoff(
    func: Callable[..., Any],
    config: RetryConfig | None = None,
    *args: Any,
    sleep_func: Callable[[float], None] | None = None,
    **kwargs: Any,
) -> Any:
    """Call *func*, retrying with backoff while it raises a retryable error.

    Args:
        func: Callable to invoke.
        config: Retry configuration. Uses defaults when None.
        *args: Positional arguments forwarded to *func*.
        sleep_func: Injectable sleep for testing. Defaults to time.sleep.
        **kwargs: Keyword arguments forwarded to *func*.

    Returns:
        Whatever *func* returns on success.

    Raises:
        RetriesExhaustedError: When all attempts fail with retryable errors.
        Exception: Non-retryable errors propagate on the first occurrence.
    """
    cfg = config or RetryConfig()
    do_sleep = sleep_func or time.sleep
    last_error: Exception | None = None

    for attempt in range(cfg.max_attempts):
        try:
            return func(*args, **kwargs)
        except cfg.retryable_exceptions as exc:
            last_error = exc  # type: ignore[assignment]
            if attempt < cfg.max_attempts - 1:
                delay = _compute_delay(attempt, cfg)
                logger.warning(
                    "Attempt %d/%d failed (%s). Retrying in %.2fs.",
                    attempt + 1,
                    cfg.max_attempts,
                    exc,
                    delay,
                )
                do_sleep(delay)

    raise RetriesExhaustedError(last_error, cfg.max_attempts)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# 2. Error Formatting
# ---------------------------------------------------------------------------


@dataclass
class UserFriendlyError:
    """A structured error designed for end-user consumption.

    Attributes:
        message: Clear description for the user.
        suggestion: Actionable guidance.
        component: Originating subsystem (ordering, export, storage).
        error_code: Machine-readable identifier (e.g. "ORD_rank_out_of_range").
        retryable: Whether repeating the same request may succeed.
        technical_detail: Debugging info for logs only -- never shown to users.
    """

    message: str
    suggestion: str
    component: str
    error_code: str
    retryable: bool = False
    technical_detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses (excludes technical_detail)."""
        return {
            "message": self.message,
            "suggestion": self.suggestion,
            "component": self.component,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }


# error code -> (message, suggestion)
_OUTLINE_MESSAGES: dict[str, tuple[str, str]] = {
    "parent_not_found": (
        "The parent item no longer exists.",
        "Reload the outline and choose another parent.",
    ),
    "node_not_found": (
        "The item no longer exists.",
        "Reload the outline; it may have been deleted elsewhere.",
    ),
    "unsupported_child_kind": (
        "That item cannot be placed there.",
        "Sections hold sections and paragraphs; paragraphs cite references.",
    ),
    "rank_out_of_range": (
        "The requested position is outside the list.",
        "Pick a position between 1 and the number of siblings.",
    ),
    "cycle_detected": (
        "An item cannot be moved inside itself.",
        "Choose a parent outside the item's own subtree.",
    ),
    "store_unavailable": (
        "The outline database is temporarily unavailable.",
        "Try again in a moment. The outline was not changed.",
    ),
    "invariant_violation": (
        "The outline was changed by someone else at the same time.",
        "Reload the outline and try again. Nothing was saved.",
    ),
}


class ErrorFormatter:
    """Convert internal exceptions to user-friendly messages.

    All methods return a ``UserFriendlyError`` and never expose internal
    IDs, paths or stack traces to the end user.
    """

    def format_ordering_error(self, error: Exception) -> UserFriendlyError:
        """Format an error raised by a structural outline operation."""
        return self._format(error, component="ordering", code_prefix="ORD")

    def format_export_error(self, error: Exception) -> UserFriendlyError:
        """Format an error raised while exporting an outline."""
        return self._format(error, component="export", code_prefix="EXP")

    def format_storage_error(self, error: Exception) -> UserFriendlyError:
        """Format an error raised by the graph store."""
        return self._format(error, component="storage", code_prefix="STOR")

    # ------------------------------------------------------------------

    def _format(
        self,
        error: Exception,
        *,
        component: str,
        code_prefix: str,
    ) -> UserFriendlyError:
        message, suggestion, code_suffix = _classify_error(error)
        return UserFriendlyError(
            message=message,
            suggestion=suggestion,
            component=component,
            error_code=f"{code_prefix}_{code_suffix}",
            retryable=bool(getattr(error, "retryable", False)),
            technical_detail=repr(error),
        )


def _classify_error(error: Exception) -> tuple[str, str, str]:
    """Map an exception to (message, suggestion, code_suffix)."""
    code = getattr(error, "code", None)
    if isinstance(code, str) and code in _OUTLINE_MESSAGES:
        message, suggestion = _OUTLINE_MESSAGES[code]
        return message, suggestion, code
    if isinstance(error, (TimeoutError, ConnectionError)):
        return (
            "The operation timed out or lost its connection.",
            "Try again. If the problem persists, check the database.",
            "timeout",
        )
    if isinstance(error, ValueError):
        return (
            "Invalid input was provided.",
            "Check the input values and try again.",
            "invalid_input",
        )
    return (
        "An unexpected error occurred.",
        "If this keeps happening, please report the issue.",
        "unexpected",
    )


# ---------------------------------------------------------------------------
# 3. Input Validation
# ---------------------------------------------------------------------------

_TRAVERSAL_PATTERN = re.compile(r"(\.\.[\\/]|[\\/]\.\.)")
_NULL_BYTE = re.compile(r"\x00")


class ValidationError(Exception):
    """Raised when input validation fails."""


class InputValidator:
    """Validate text and paths at system boundaries.

    Args:
        max_title_length: Longest accepted node title.
        max_body_length: Longest accepted node body.
    """

    def __init__(self, max_title_length: int = 500, max_body_length: int = 20_000) -> None:
        self.max_title_length = max_title_length
        self.max_body_length = max_body_length

    def validate_title(self, value: str) -> str:
        """Clean a node title; titles are single-line and non-empty.

        Raises:
            ValidationError: If the cleaned title is empty or too long.
        """
        cleaned = " ".join(_strip_control_chars(value).split())
        if not cleaned:
            raise ValidationError("Title must not be empty.")
        if len(cleaned) > self.max_title_length:
            raise ValidationError(
                f"Title exceeds the maximum of {self.max_title_length} characters."
            )
        return cleaned

    def validate_body(self, value: str) -> str:
        """Clean a node body, keeping line breaks.

        Windows and old-Mac line endings become ``\\n``.

        Raises:
            ValidationError: If the body is too long.
        """
        cleaned = value.replace("\r\n", "\n").replace("\r", "\n")
        cleaned = _strip_control_chars(cleaned).strip("\n")
        if len(cleaned) > self.max_body_length:
            raise ValidationError(
                f"Body exceeds the maximum of {self.max_body_length} characters."
            )
        return cleaned

    def validate_export_path(
        self,
        path: str | Path,
        *,
        allowed_extensions: tuple[str, ...] | None = None,
        base_directory: Path | None = None,
    ) -> Path:
        """Validate an output path for an export, preventing traversal.

        Raises:
            ValidationError: On traversal sequences, a disallowed
                extension, or a path outside *base_directory*.
        """
        raw = str(path)
        if _NULL_BYTE.search(raw):
            raise ValidationError("Path contains null bytes.")
        if _TRAVERSAL_PATTERN.search(raw):
            raise ValidationError("Path traversal is not allowed.")
        resolved = Path(raw).resolve()

        if base_directory is not None and not _is_subpath(resolved, base_directory.resolve()):
            raise ValidationError("Path is outside the allowed directory.")

        if allowed_extensions is not None:
            if resolved.suffix.lower() not in {e.lower() for e in allowed_extensions}:
                allowed = ", ".join(allowed_extensions)
                raise ValidationError(f"File type not allowed. Accepted types: {allowed}")

        return resolved


def _is_subpath(child: Path, parent: Path) -> bool:
    """Return True when *child* is equal to or nested inside *parent*."""
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def _strip_control_chars(text: str) -> str:
    """Remove ASCII control characters except tab and newline."""
    return re.sub(r"[\x00-\x08\x0b-\x1f\x7f]", "", text)


# ---------------------------------------------------------------------------
# 4. Health Checks
# ---------------------------------------------------------------------------


@dataclass
class HealthCheck:
    """Result of a single component health check.

    Attributes:
        component: Subsystem name.
        status: One of "healthy", "degraded", "unavailable".
        message: Human-readable description.
        checked_at: UTC timestamp of the check.
    """

    component: str
    status: str
    message: str
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, str]:
        """Serialize for API responses."""
        return {
            "component": self.component,
            "status": self.status,
            "message": self.message,
            "checked_at": self.checked_at.isoformat(),
        }


class SystemHealthChecker:
    """Run named health probes and summarize them.

    A probe is a zero-argument callable returning True when its
    component works. A probe that returns False reports "unavailable";
    one that raises reports "unavailable" with the error message.

    Args:
        probes: Mapping of component name to probe.
    """

    def __init__(self, probes: dict[str, Callable[[], bool]] | None = None) -> None:
        self._probes = dict(probes or {})

    def add_probe(self, component: str, probe: Callable[[], bool]) -> None:
        """Register (or replace) the probe for *component*."""
        self._probes[component] = probe

    def check(self, component: str) -> HealthCheck:
        """Run one probe.

        Raises:
            KeyError: If no probe is registered for *component*.
        """
        probe = self._probes[component]
        try:
            ok = probe()
        except Exception as exc:
            logger.warning("Health probe %s raised: %s", component, exc)
            return HealthCheck(component, "unavailable", f"Probe failed: {exc}")
        if ok:
            return HealthCheck(component, "healthy", "Operational.")
        return HealthCheck(component, "unavailable", "Probe reported failure.")

    def check_all(self) -> list[HealthCheck]:
        """Run every registered probe, in registration order."""
        return [self.check(name) for name in self._probes]

    def overall_status(self) -> str:
        """Return "ok", "degraded" or "error" across all probes."""
        results = self.check_all()
        if not results:
            return "ok"
        healthy = [r for r in results if r.status == "healthy"]
        if len(healthy) == len(results):
            return "ok"
        if healthy:
            return "degraded"
        return "error"
