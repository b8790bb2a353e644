from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

PENDING = "pending"
ERROR = "error"
EXPIRED = "expired"
APPROVED = "APPROVED"
SUCCESS_CODE = "00"


class VendRequest(BaseModel):
    """Client-submitted request found at ``{root}/{machine}/request``."""

    model_config = ConfigDict(extra="ignore")

    time: Union[str, int, float]
    amount: Union[int, float, str]
    location: Optional[Union[str, int]] = None
    items: List[Any] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def items_as_list(cls, v):
        # The realtime database hands back sparse arrays as objects
        if v is None:
            return []
        if isinstance(v, dict):
            return [v[k] for k in sorted(v, key=lambda k: int(k) if str(k).isdigit() else 0)]
        return v


class ChargeResponse(BaseModel):
    """Written to ``{root}/{machine}/response`` after the create-charge call."""

    qrString: Optional[Any] = None
    error: Optional[Any] = None
    amount: Optional[Any] = None
    timestamp: str
    requestTime: Union[str, int, float]
    status: str

    def to_tree(self) -> dict:
        return self.model_dump(exclude_none=True)


class PaymentStatus(BaseModel):
    """Written to ``{root}/{machine}/status`` on every poll observation."""

    payment_status: Optional[str] = None
    tran_id: str
    amount: Optional[Any] = None
    apv: Optional[Any] = None
    currency: Optional[str] = None
    payment_amount: Optional[Any] = None
    timestamp: str

    @classmethod
    def from_check_reply(cls, reply: dict, tran_id: str, timestamp: str) -> "PaymentStatus":
        data = reply_section(reply, "data")
        return cls(
            payment_status=_text(data.get("payment_status")),
            tran_id=tran_id,
            amount=data.get("total_amount"),
            apv=data.get("apv"),
            currency=_text(data.get("payment_currency")),
            timestamp=timestamp,
        )

    def to_tree(self) -> dict:
        return self.model_dump(exclude_none=True)


def reply_section(reply, key: str) -> dict:
    """Return ``reply[key]`` when it is an object, else an empty dict."""
    section = reply.get(key) if isinstance(reply, dict) else None
    return section if isinstance(section, dict) else {}


def _text(value) -> Optional[str]:
    return None if value is None else str(value)


def is_approved(reply: dict) -> bool:
    status = reply_section(reply, "status")
    data = reply_section(reply, "data")
    return str(status.get("code")) == SUCCESS_CODE and data.get("payment_status") == APPROVED
