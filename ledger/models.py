from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

PAYMENT_METHODS = ("cash", "card", "other")
LEDGER_MODES = ("real", "accounting")


def normalize_payment_method(v: Optional[str]) -> str:
    if not v:
        return "cash"
    pm = str(v).strip().lower()
    if pm in PAYMENT_METHODS:
        return pm
    raise ValueError("Invalid payment method. Use 'cash', 'card' or 'other'.")


def normalize_mode(v: Optional[str]) -> str:
    if not v:
        return "real"
    mode = str(v).strip().lower()
    if mode in LEDGER_MODES:
        return mode
    raise ValueError("Invalid ledger mode. Use 'real' or 'accounting'.")


@dataclass(frozen=True)
class Quality:
    id: int
    name: str
    is_active: bool = True
    note: Optional[str] = None

    @classmethod
    def from_row(cls, r) -> "Quality":
        return cls(id=int(r["id"]), name=str(r["name"]), is_active=bool(r["is_active"]), note=r["note"])


@dataclass(frozen=True)
class Article:
    id: int
    name: str
    grams_per_piece: float
    is_active: bool = True
    last_sold_at: Optional[str] = None

    @property
    def kg_per_piece(self) -> float:
        return float(self.grams_per_piece) / 1000.0

    @property
    def pieces_per_kg(self) -> float:
        return 1000.0 / float(self.grams_per_piece)

    @classmethod
    def from_row(cls, r) -> "Article":
        return cls(
            id=int(r["id"]),
            name=str(r["name"]),
            grams_per_piece=float(r["grams_per_piece"]),
            is_active=bool(r["is_active"]),
            last_sold_at=r["last_sold_at"],
        )


@dataclass(frozen=True)
class Delivery:
    id: int
    display_id: str
    date: str
    quality_id: int
    kg_in: float
    unit_cost_per_kg: float
    invoice_number: Optional[str] = None
    supplier_name: Optional[str] = None
    note: Optional[str] = None

    @property
    def is_invoiced(self) -> bool:
        return bool(self.invoice_number and str(self.invoice_number).strip())

    @property
    def total_cost_eur(self) -> float:
        return float(self.kg_in) * float(self.unit_cost_per_kg)

    @classmethod
    def from_row(cls, r) -> "Delivery":
        return cls(
            id=int(r["id"]),
            display_id=str(r["display_id"]),
            date=str(r["date"]),
            quality_id=int(r["quality_id"]),
            kg_in=float(r["kg_in"]),
            unit_cost_per_kg=float(r["unit_cost_per_kg"]),
            invoice_number=r["invoice_number"],
            supplier_name=r["supplier_name"],
            note=r["note"],
        )


@dataclass(frozen=True)
class Sale:
    id: int
    sale_number: str
    date_time: str
    payment_method: str = "cash"
    note: Optional[str] = None
    status: str = "draft"
    finalized_at: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.status == "finalized"

    @classmethod
    def from_row(cls, r) -> "Sale":
        return cls(
            id=int(r["id"]),
            sale_number=str(r["sale_number"]),
            date_time=str(r["date_time"]),
            payment_method=str(r["payment_method"]),
            note=r["note"],
            status=str(r["status"]),
            finalized_at=r["finalized_at"],
        )


@dataclass(frozen=True)
class SaleLine:
    id: int
    sale_id: int
    article_id: int
    quantity: int
    unit_price_eur: float
    real_delivery_id: int
    accounting_delivery_id: Optional[int]
    kg_per_piece_snapshot: float
    unit_cost_per_kg_real_snapshot: float
    unit_cost_per_kg_acc_snapshot: Optional[float] = None
    position: int = 0

    @property
    def effective_accounting_delivery_id(self) -> int:
        if self.accounting_delivery_id is not None:
            return int(self.accounting_delivery_id)
        return int(self.real_delivery_id)

    @property
    def kg_line(self) -> float:
        return int(self.quantity) * float(self.kg_per_piece_snapshot)

    @classmethod
    def from_row(cls, r) -> "SaleLine":
        acc = r["accounting_delivery_id"]
        acc_cost = r["unit_cost_per_kg_acc_snapshot"]
        return cls(
            id=int(r["id"]),
            sale_id=int(r["sale_id"]),
            article_id=int(r["article_id"]),
            quantity=int(r["quantity"]),
            unit_price_eur=float(r["unit_price_eur"]),
            real_delivery_id=int(r["real_delivery_id"]),
            accounting_delivery_id=int(acc) if acc is not None else None,
            kg_per_piece_snapshot=float(r["kg_per_piece_snapshot"]),
            unit_cost_per_kg_real_snapshot=float(r["unit_cost_per_kg_real_snapshot"]),
            unit_cost_per_kg_acc_snapshot=float(acc_cost) if acc_cost is not None else None,
            position=int(r["position"]),
        )


@dataclass(frozen=True)
class ProposedLine:
    """Already-parsed operator input for one sale line."""

    article_id: int
    quantity: int
    unit_price_eur: float
    real_delivery_id: int
    accounting_delivery_id: Optional[int] = None


@dataclass(frozen=True)
class SaleHeader:
    date_time: str
    payment_method: str = "cash"
    note: Optional[str] = None


@dataclass(frozen=True)
class CascadeReport:
    """What a destructive delete removed."""

    deleted_sales: int
    deleted_deliveries: int = 0
    deleted_qualities: int = 0
