"""Custom exceptions for the MyNotes core.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Presentation (localized messages,
alerts) belongs to the caller; errors only carry a kind, a code, details
and a list of recovery action keys.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Lookup errors (1xxx)
    RECORD_NOT_FOUND = 1001
    BACKUP_NOT_FOUND = 1002

    # Relationship errors (2xxx)
    FOLDER_UNRESOLVED = 2001
    TAG_UNRESOLVED = 2002

    # Storage errors (4xxx)
    STORAGE_OPEN_FAILED = 4001
    STORAGE_FETCH_FAILED = 4002
    STORAGE_COMMIT_FAILED = 4003
    STORAGE_CLOSED = 4004
    DATABASE_CORRUPTED = 4005
    DATABASE_RECOVERY_FAILED = 4006
    STALE_OBJECT_CONFLICT = 4007

    # Backup errors (45xx)
    BACKUP_FAILED = 4501
    RESTORE_FAILED = 4502

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001


class RecoveryAction(str, Enum):
    """Suggested follow-ups a caller may offer after a failure."""

    OK = "ok"
    RETRY = "retry"
    RESTART = "restart"
    RESET_DATABASE = "reset_database"
    CONTACT_SUPPORT = "contact_support"


class MyNotesError(Exception):
    """Base exception for all MyNotes errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
        recovery_actions: Suggested recovery actions for the caller
    """

    default_recovery: List[RecoveryAction] = [RecoveryAction.OK]

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STORAGE_FETCH_FAILED,
        details: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        self.recovery_actions = list(recovery_actions or self.default_recovery)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
            "recovery_actions": [action.value for action in self.recovery_actions],
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(MyNotesError):
    """Raised when an identifier is absent from the store.

    Repositories absorb this case (stale snapshots are expected); it is only
    raised by explicit lookups.
    """

    def __init__(
        self,
        record_id: Any,
        kind: str = "record",
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.RECORD_NOT_FOUND,
    ):
        super().__init__(
            message or f"{kind.capitalize()} '{record_id}' not found",
            code=code,
            details={"kind": kind, "id": str(record_id)},
        )
        self.record_id = record_id
        self.kind = kind


class RelationshipError(MyNotesError):
    """Raised when a folder or tag reference cannot be resolved."""

    def __init__(
        self,
        message: str,
        owner_id: Any = None,
        target_id: Any = None,
        code: ErrorCode = ErrorCode.FOLDER_UNRESOLVED,
    ):
        details = {}
        if owner_id is not None:
            details["owner_id"] = str(owner_id)
        if target_id is not None:
            details["target_id"] = str(target_id)

        super().__init__(message, code=code, details=details)
        self.owner_id = owner_id
        self.target_id = target_id


class InfrastructureError(MyNotesError):
    """Raised when the storage engine fails to open, fetch or commit.

    Attributes:
        operation: What was being attempted ("commit", "fetch", ...)
        recoverable: Whether an automatic retry makes sense
        original_error: The underlying engine exception
    """

    default_recovery = [
        RecoveryAction.RETRY,
        RecoveryAction.RESTART,
        RecoveryAction.RESET_DATABASE,
        RecoveryAction.CONTACT_SUPPORT,
    ]

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_COMMIT_FAILED,
        recoverable: bool = False,
        original_error: Optional[BaseException] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if original_error is not None:
            details["original_error"] = str(original_error)[:200]
        details["recoverable"] = recoverable

        super().__init__(
            message, code=code, details=details, recovery_actions=recovery_actions
        )
        self.operation = operation
        self.recoverable = recoverable
        self.original_error = original_error


class DatabaseCorruptionError(InfrastructureError):
    """Raised when the store file is unreadable at open time.

    Attributes:
        recovered: Whether the store was rebuilt (destructively) from scratch
        backup_path: Where the corrupted file was moved
    """

    def __init__(
        self,
        message: str,
        recovered: bool = False,
        backup_path: Optional[str] = None,
        code: ErrorCode = ErrorCode.DATABASE_CORRUPTED,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            operation="open",
            code=code,
            original_error=original_error,
            recovery_actions=(
                [RecoveryAction.RESTART]
                if recovered
                else [RecoveryAction.RESET_DATABASE, RecoveryAction.CONTACT_SUPPORT]
            ),
        )
        self.recovered = recovered
        self.backup_path = backup_path
        self.details["recovered"] = recovered
        if backup_path:
            self.details["backup_path"] = backup_path


class BackupError(InfrastructureError):
    """Raised when creating or restoring a backup fails."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.BACKUP_FAILED,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            operation="restore" if code == ErrorCode.RESTORE_FAILED else "backup",
            code=code,
            original_error=original_error,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.CONTACT_SUPPORT],
        )
        self.path = path
        if path:
            # Don't expose full paths in error messages
            self.details["path_hint"] = path.replace("\\", "/").split("/")[-1]


class ConfigurationError(MyNotesError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
