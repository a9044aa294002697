"""Downstream actions and their outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dealhook.errors import ProcessingError


class ActionKind(str, Enum):
    TRACK_CONVERSION = "track_conversion"
    NOTIFY_CUSTOMER = "notify_customer"


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Customer:
    contact_id: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone_number: str = ""

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass(frozen=True)
class PropertyInfo:
    property_id: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    property_type: str = ""
    square_footage: float | None = None


@dataclass(frozen=True)
class DealSnapshot:
    """The deal fields downstream integrations need, parsed from a CRM body."""

    deal_id: str
    deal_name: str = ""
    deal_value: float | None = None
    currency: str = ""
    status: str = ""
    closing_date: str = ""
    customer: Customer = field(default_factory=Customer)
    property: PropertyInfo = field(default_factory=PropertyInfo)

    @classmethod
    def from_payload(cls, body: Any) -> DealSnapshot:
        """Parse a CRM webhook body. Raises ProcessingError if it has no deal."""
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or _text(data.get("dealId")) == "":
            raise ProcessingError("Payload has no deal data")

        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        details = data.get("dealDetails") if isinstance(data.get("dealDetails"), dict) else {}
        prop = (
            data.get("propertyInformation")
            if isinstance(data.get("propertyInformation"), dict)
            else {}
        )
        return cls(
            deal_id=_text(data.get("dealId")),
            deal_name=_text(details.get("dealName")),
            deal_value=_number(details.get("dealValue")),
            currency=_text(details.get("currency")),
            status=_text(details.get("status")),
            closing_date=_text(details.get("closingDate")),
            customer=Customer(
                contact_id=_text(customer.get("contactId")),
                first_name=_text(customer.get("firstName")),
                last_name=_text(customer.get("lastName")),
                email=_text(customer.get("email")),
                phone_number=_text(customer.get("phoneNumber")),
            ),
            property=PropertyInfo(
                property_id=_text(prop.get("propertyId")),
                address=_text(prop.get("address")),
                city=_text(prop.get("city")),
                state=_text(prop.get("state")),
                zip_code=_text(prop.get("zipCode")),
                property_type=_text(prop.get("propertyType")),
                square_footage=_number(prop.get("squareFootage")),
            ),
        )


@dataclass(frozen=True)
class DownstreamAction:
    """One thing a processed job asks the outside world to do.

    ``name`` is the integration-level label: the conversion event name for
    TRACK_CONVERSION (``Lead``, ``Purchase``) or the template for
    NOTIFY_CUSTOMER (``property_details``).
    """

    kind: ActionKind
    name: str
    deal: DealSnapshot
    job_id: str = ""


@dataclass
class DispatchResult:
    """Outcome of one dispatcher handling one action."""

    success: bool
    dispatcher_id: str
    action: str
    error: str = ""
    skipped: bool = False  # circuit open or dispatcher not configured
    response_id: str = ""


@dataclass
class DispatchReport:
    """Everything the dispatchers did for one job."""

    job_id: str
    results: list[DispatchResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[DispatchResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[DispatchResult]:
        return [r for r in self.results if not r.success and not r.skipped]

    @property
    def skipped(self) -> list[DispatchResult]:
        return [r for r in self.results if r.skipped]

    def summary(self) -> str:
        return (
            f"{len(self.succeeded)} ok, {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "results": [
                {
                    "dispatcher": r.dispatcher_id,
                    "action": r.action,
                    "success": r.success,
                    "skipped": r.skipped,
                    "error": r.error,
                }
                for r in self.results
            ],
        }
