"""
DLT Sandbox Error Handling

Error codes and exception classes.

Only configuration mistakes and internal invariant violations raise.
Protocol-level anomalies (forks, stale messages, invalid proofs, dropped
packets) are logged and dropped by the engines instead.
"""

from enum import IntEnum
from typing import Any, Optional


class ErrorCode(IntEnum):
    """Simulator error codes."""

    # 1xxx - General errors
    UNKNOWN_ERROR = 1000
    INVALID_PARAMETER = 1001
    INTERNAL_ERROR = 1002

    # 2xxx - Configuration errors
    UNKNOWN_CONSENSUS = 2001
    INVALID_CONFIG = 2002

    # 3xxx - Engine errors
    ENGINE_NOT_INITIALIZED = 3001


class SimulatorError(Exception):
    """Base exception for all simulator errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Any] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        result = {
            "code": self.code.value,
            "name": self.code.name,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result


class InvalidParameterError(SimulatorError):
    def __init__(self, param: str, message: str = ""):
        msg = f"Invalid parameter: {param}"
        if message:
            msg += f" - {message}"
        super().__init__(ErrorCode.INVALID_PARAMETER, msg, {"parameter": param})


class UnknownConsensusError(SimulatorError):
    def __init__(self, kind: str):
        super().__init__(
            ErrorCode.UNKNOWN_CONSENSUS,
            f"Unknown consensus type: {kind}",
            {"kind": kind}
        )


class InvalidConfigError(SimulatorError):
    def __init__(self, errors: list):
        super().__init__(
            ErrorCode.INVALID_CONFIG,
            "Invalid configuration: " + "; ".join(errors),
            {"errors": list(errors)}
        )


class EngineNotInitializedError(SimulatorError):
    def __init__(self, engine: str, node_id: str):
        super().__init__(
            ErrorCode.ENGINE_NOT_INITIALIZED,
            f"Engine '{engine}' used on node {node_id} before init",
            {"engine": engine, "node_id": node_id}
        )

