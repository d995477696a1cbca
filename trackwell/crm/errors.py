from __future__ import annotations

from pydantic import ValidationError


class CRMError(Exception):
    """Base error for domain failures surfaced by the lifecycle operations."""


class NotFoundError(CRMError):
    def __init__(self, kind: str, record_id: str, detail: str | None = None) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(detail or f"{kind} '{record_id}' not found")


class ValidationFailedError(CRMError):
    def __init__(self, field_errors: dict[str, list[str]]) -> None:
        self.field_errors = {key: list(reasons) for key, reasons in field_errors.items()}
        summary = "; ".join(f"{key}: {', '.join(reasons)}" for key, reasons in sorted(self.field_errors.items()))
        super().__init__(f"Validation failed: {summary}")

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> ValidationFailedError:
        field_errors: dict[str, list[str]] = {}
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or "__root__"
            field_errors.setdefault(location, []).append(str(error.get("msg", "invalid value")))
        return cls(field_errors)

    @classmethod
    def single(cls, field: str, reason: str) -> ValidationFailedError:
        return cls({field: [reason]})


class BusinessRuleBlockedError(CRMError):
    def __init__(self, reason: str, blocking: list[str]) -> None:
        self.reason = reason
        self.blocking = list(blocking)
        super().__init__(reason)
