"""
Typed validation outcomes.

Core operations return `value | LedgerError` instead of raising, so the UI can
show a field- or line-level message and nothing is ever half-written. Each
error carries a stable `code` and the structured data behind its message.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional


@dataclass(frozen=True)
class LedgerError:
    code: ClassVar[str] = "ledger_error"

    @property
    def message(self) -> str:
        return self.code

    def __str__(self) -> str:
        return self.message


def _line_prefix(line_index: Optional[int]) -> str:
    return f"Line {line_index + 1}: " if line_index is not None else ""


@dataclass(frozen=True)
class UnknownArticle(LedgerError):
    code: ClassVar[str] = "unknown_article"
    article_id: int
    line_index: Optional[int] = None

    @property
    def message(self) -> str:
        return f"{_line_prefix(self.line_index)}article {self.article_id} does not exist or is inactive."


@dataclass(frozen=True)
class UnknownDelivery(LedgerError):
    code: ClassVar[str] = "unknown_delivery"
    delivery_id: int
    line_index: Optional[int] = None

    @property
    def message(self) -> str:
        return f"{_line_prefix(self.line_index)}delivery {self.delivery_id} does not exist."


@dataclass(frozen=True)
class UnknownQuality(LedgerError):
    code: ClassVar[str] = "unknown_quality"
    quality_id: int

    @property
    def message(self) -> str:
        return f"Quality {self.quality_id} does not exist or is inactive."


@dataclass(frozen=True)
class UnknownSale(LedgerError):
    code: ClassVar[str] = "unknown_sale"
    sale_id: int

    @property
    def message(self) -> str:
        return f"Sale {self.sale_id} does not exist."


@dataclass(frozen=True)
class UnknownSaleLine(LedgerError):
    code: ClassVar[str] = "unknown_sale_line"
    sale_id: int
    line_id: int

    @property
    def message(self) -> str:
        return f"Sale {self.sale_id} has no line {self.line_id}."


@dataclass(frozen=True)
class InsufficientRealStock(LedgerError):
    code: ClassVar[str] = "insufficient_real_stock"
    delivery_id: int
    required: float
    available: float
    line_index: Optional[int] = None

    @property
    def message(self) -> str:
        return (
            f"{_line_prefix(self.line_index)}not enough stock in delivery {self.delivery_id} (Real): "
            f"required {self.required:.3f} kg, available {self.available:.3f} kg."
        )


@dataclass(frozen=True)
class InsufficientAccountingStock(LedgerError):
    code: ClassVar[str] = "insufficient_accounting_stock"
    delivery_id: int
    required: float
    available: float
    line_index: Optional[int] = None

    @property
    def message(self) -> str:
        return (
            f"{_line_prefix(self.line_index)}not enough stock in delivery {self.delivery_id} (Accounting): "
            f"required {self.required:.3f} kg, available {self.available:.3f} kg."
        )


@dataclass(frozen=True)
class MissingAccountingDelivery(LedgerError):
    """
    The real delivery is not invoiced and no invoiced accounting delivery was
    given. `accounting_delivery_id` is set when one was given but is itself
    not invoiced.
    """

    code: ClassVar[str] = "missing_accounting_delivery"
    real_delivery_id: int
    accounting_delivery_id: Optional[int] = None
    line_index: Optional[int] = None

    @property
    def message(self) -> str:
        if self.accounting_delivery_id is not None:
            return (
                f"{_line_prefix(self.line_index)}accounting delivery {self.accounting_delivery_id} "
                "is not invoiced."
            )
        return (
            f"{_line_prefix(self.line_index)}delivery {self.real_delivery_id} is not invoiced; "
            "an invoiced accounting delivery is required."
        )


@dataclass(frozen=True)
class InvalidLine(LedgerError):
    code: ClassVar[str] = "invalid_line"
    reason: str
    line_index: Optional[int] = None

    @property
    def message(self) -> str:
        return f"{_line_prefix(self.line_index)}{self.reason}"


@dataclass(frozen=True)
class EmptySale(LedgerError):
    code: ClassVar[str] = "empty_sale"

    @property
    def message(self) -> str:
        return "A sale needs at least one line."


@dataclass(frozen=True)
class SaleNotDraft(LedgerError):
    code: ClassVar[str] = "sale_not_draft"
    sale_id: int
    status: str

    @property
    def message(self) -> str:
        return f"Sale {self.sale_id} is {self.status}; only drafts can be changed or finalized."


@dataclass(frozen=True)
class DeliveryLocked(LedgerError):
    code: ClassVar[str] = "delivery_locked"
    delivery_id: int
    fields: tuple[str, ...] = ()

    @property
    def message(self) -> str:
        changed = ", ".join(self.fields) if self.fields else "fields"
        return (
            f"Delivery {self.delivery_id} is referenced by sales; "
            f"{changed} can no longer be changed."
        )


@dataclass(frozen=True)
class DuplicateDisplayId(LedgerError):
    code: ClassVar[str] = "duplicate_display_id"
    display_id: str

    @property
    def message(self) -> str:
        return f"Delivery ID {self.display_id!r} already exists."


@dataclass(frozen=True)
class DuplicateQualityName(LedgerError):
    code: ClassVar[str] = "duplicate_quality_name"
    name: str

    @property
    def message(self) -> str:
        return f"Quality {self.name!r} already exists."


@dataclass(frozen=True)
class DuplicateArticleName(LedgerError):
    code: ClassVar[str] = "duplicate_article_name"
    name: str

    @property
    def message(self) -> str:
        return f"Article {self.name!r} already exists."


@dataclass(frozen=True)
class ConcurrentModification(LedgerError):
    code: ClassVar[str] = "concurrent_modification"
    attempts: int

    @property
    def message(self) -> str:
        return f"The data changed while saving ({self.attempts} attempts). Please try again."
