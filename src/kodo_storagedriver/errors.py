from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError

import enum
import logging


logger = logging.getLogger(__name__)

DRIVER_NAME = "kodo"

# Kodo native codes and their S3-compatible equivalents
NOT_FOUND_CODES = frozenset({"612", "404", "NoSuchKey", "NotFound"})
TRANSIENT_CODES = frozenset({"599", "503", "SlowDown", "ServiceUnavailable"})


class ErrorKind(enum.Enum):
    NOT_FOUND = "not-found"
    TRANSIENT = "transient"
    OTHER = "other"


class StorageDriverError(Exception):
    """Base class for everything the driver raises on purpose."""


class PathNotFoundError(StorageDriverError):
    def __init__(self, path, driver_name=DRIVER_NAME):
        super().__init__(f"{driver_name}: Path not found: {path}")
        self.path = path
        self.driver_name = driver_name


class TransientError(StorageDriverError):
    """The provider asked for the same request to be retried."""


class KodoOperationError(StorageDriverError):
    """Wraps provider errors so callers never handle botocore types."""


class ChecksumMismatchError(KodoOperationError):
    pass


class InvalidSegmentError(StorageDriverError, ValueError):
    pass


class SessionFinalizedError(StorageDriverError):
    def __init__(self, state):
        super().__init__(f"already {state}")
        self.state = state


class ContextCancelledError(StorageDriverError):
    pass


class DeadlineExceededError(ContextCancelledError):
    pass


def http_status(error):
    if isinstance(error, ClientError):
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return str(status) if status else ""
    return ""


def error_code(error):
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        return code or http_status(error)
    return ""


def classify(error):
    """Map a raw provider error onto an ErrorKind."""
    if isinstance(error, PathNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(error, TransientError):
        return ErrorKind.TRANSIENT
    code = error_code(error)
    if code in NOT_FOUND_CODES:
        return ErrorKind.NOT_FOUND
    if code in TRANSIENT_CODES or http_status(error) in TRANSIENT_CODES:
        return ErrorKind.TRANSIENT
    return ErrorKind.OTHER


def error_info(error):
    """Human readable detail line for a provider error."""
    if not isinstance(error, ClientError):
        return str(error)
    err = error.response.get("Error", {})
    meta = error.response.get("ResponseMetadata", {})
    headers = meta.get("HTTPHeaders", {})
    parts = [
        f"Code: {err.get('Code', 'Unknown')}",
        f"Message: {err.get('Message', '')}",
    ]
    status = meta.get("HTTPStatusCode")
    if status:
        parts.append(f"Status: {status}")
    reqid = headers.get("x-reqid") or meta.get("RequestId")
    if reqid:
        parts.append(f"RespReqId: {reqid}")
    xlog = headers.get("x-log")
    if xlog:
        parts.append(f"Xlog: {xlog}")
    return ", ".join(parts)


def translate(error, operation, key, retryable=False):
    """Return the exception the driver raises for a failed provider call.

    Only a ``retryable`` operation yields TransientError; elsewhere a
    transient answer is as fatal as any other. The caller is expected to
    ``raise translate(...) from error``.
    """
    if isinstance(error, StorageDriverError):
        return error
    if isinstance(error, BotoCoreError):
        logger.debug("Kodo %s connection failure for key=%s: %s", operation, key, error)
        return KodoOperationError(f"Kodo {operation} failed for key={key}: {error}")

    kind = classify(error)
    detail = error_info(error)
    logger.debug("Kodo %s failed for key=%s: %s", operation, key, detail)
    if kind is ErrorKind.NOT_FOUND:
        return PathNotFoundError(key)
    if kind is ErrorKind.TRANSIENT and retryable:
        return TransientError(
            f"Kodo {operation} asked to retry for key={key}: {detail}"
        )
    return KodoOperationError(f"Kodo {operation} failed for key={key}: {detail}")
