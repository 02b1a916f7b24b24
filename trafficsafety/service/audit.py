from __future__ import annotations

from typing import Any, Protocol

from trafficsafety.logging import get_logger


class AuditLogger(Protocol):
    """Structured sink for access decisions. Implementations never raise."""

    def info(self, event: str, **context: Any) -> None: ...

    def error(self, event: str, **context: Any) -> None: ...


def _compact(context: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value
        for key, value in context.items()
        if value is not None and value != "" and value != [] and value != ()
    }


class StructlogAuditLogger:
    """Writes audit entries to the ``trafficsafety.audit`` logger."""

    def __init__(self, name: str = "trafficsafety.audit") -> None:
        self.logger = get_logger(name)

    def info(self, event: str, **context: Any) -> None:
        try:
            self.logger.info(event, **_compact(context))
        except Exception:  # noqa: BLE001 - audit must not break the request
            pass

    def error(self, event: str, **context: Any) -> None:
        try:
            self.logger.error(event, **_compact(context))
        except Exception:  # noqa: BLE001 - audit must not break the request
            pass


class NullAuditLogger:
    def info(self, event: str, **context: Any) -> None:
        return None

    def error(self, event: str, **context: Any) -> None:
        return None
