"""Boundary schemas: processor webhook payloads and donor/payment API shapes."""

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

from givepay.common.errors import ValidationError

CHECKOUT_COMPLETED = "checkout.session.completed"

# Column bounds; anything larger can never be stored and is a client error.
MAX_AMOUNT_MINOR = 2_147_483_647
MAX_ID_LENGTH = 255
MAX_EMAIL_LENGTH = 320


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class CustomerDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    name: str | None = Field(default=None, max_length=255)

    @field_validator("email", "name", mode="before")
    @classmethod
    def strip_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CheckoutMetadata(BaseModel):
    """Caller-supplied attribution; untrusted and optional."""

    model_config = ConfigDict(extra="ignore")

    campaign_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH)
    recipient_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH)

    @field_validator("campaign_id", "recipient_id", mode="before")
    @classmethod
    def coerce_untrusted(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if value is not None and not isinstance(value, str):
            return None
        return _blank_to_none(value)


class CheckoutSessionObject(BaseModel):
    """The `data.object` of a checkout-completed event (consumed fields only)."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    payment_intent: str | None = Field(default=None, max_length=MAX_ID_LENGTH)
    amount_total: Annotated[StrictInt, Field(ge=0, le=MAX_AMOUNT_MINOR)] | None = 0
    currency: Annotated[str, Field(pattern=r"^[A-Za-z]{3}$")] | None = None
    customer_details: CustomerDetails | None = None
    metadata: CheckoutMetadata | None = None

    @field_validator("payment_intent", "currency", mode="before")
    @classmethod
    def strip_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ProcessorEvent(BaseModel):
    """Outer envelope every processor notification carries."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    type: str = Field(min_length=1, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)


class CheckoutCompleted(BaseModel):
    """Validated input to one reconciliation unit of work."""

    external_event_id: str
    event_type: str
    checkout_id: str
    payment_intent_id: str | None = None
    amount_total: int = Field(default=0, ge=0, le=MAX_AMOUNT_MINOR)
    currency: str | None = None
    email: str | None = None
    customer_name: str | None = None
    campaign_id: str | None = None
    recipient_id: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)


def _describe(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors()
    )


def parse_envelope(payload: Any) -> ProcessorEvent:
    """Validate the outer event envelope or raise `ValidationError`."""

    try:
        return ProcessorEvent.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid event envelope: {_describe(exc)}") from exc


def parse_checkout_completed(envelope: ProcessorEvent, payload: dict[str, Any]) -> CheckoutCompleted:
    """Flatten a checkout-completed event into `CheckoutCompleted`.

    Missing or malformed required fields fail fast here so that nothing
    downstream has to guess at nulls.
    """

    obj = envelope.data.get("object")
    if not isinstance(obj, dict):
        raise ValidationError("invalid event: data.object is missing")
    try:
        session = CheckoutSessionObject.model_validate(obj)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid checkout session: {_describe(exc)}") from exc

    customer = session.customer_details or CustomerDetails()
    metadata = session.metadata or CheckoutMetadata()
    return CheckoutCompleted(
        external_event_id=envelope.id,
        event_type=envelope.type,
        checkout_id=session.id,
        payment_intent_id=session.payment_intent,
        amount_total=session.amount_total or 0,
        currency=session.currency,
        email=customer.email,
        customer_name=customer.name,
        campaign_id=metadata.campaign_id,
        recipient_id=metadata.recipient_id,
        raw_payload=payload,
    )


class WebhookAck(BaseModel):
    received: bool = True
    state: str


class DonorCreateRequest(BaseModel):
    """Payload accepted by `POST /donors`."""

    full_name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    country: str | None = Field(default=None, max_length=100)

    @field_validator("email", "country", mode="before")
    @classmethod
    def strip_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class DonorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    donor_id: str
    full_name: str | None
    email: str | None
    country: str | None
    created_at: datetime | None = None


class TrailEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    entry_type: str
    amount_minor: int
    currency: str
    created_at: datetime | None = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    donor_id: str | None
    campaign_id: str | None
    recipient_id: str | None
    amount_minor: int
    currency: str
    status: str
    external_checkout_id: str
    external_payment_intent_id: str | None
    trail: list[TrailEntryResponse] = Field(default_factory=list)
