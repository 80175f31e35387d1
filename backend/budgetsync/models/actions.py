from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_serializer, field_validator

ExpenseCategory = Literal[
    "GROCERIES",
    "UTILITIES",
    "MAINTENANCE",
    "MISC",
    "LOANS",
    "SUBSCRIPTIONS",
    "SAVINGS",
    "INSURANCE",
    "TUITIONS",
    "ALLOWANCES",
]

IncomeSource = Literal["SALARY", "INVESTMENT", "OTHER"]


def iso_z(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class _PayloadBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    user_id: str = Field(alias="userId", min_length=1)
    amount: Decimal = Field(gt=0)
    note: str | None = None
    occurred_at: datetime | None = Field(default=None, alias="occurredAt")

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_serializer("occurred_at")
    def _serialize_occurred_at(self, value: datetime | None) -> str | None:
        return iso_z(value) if value is not None else None

    def to_wire(self) -> dict:
        data = self.model_dump(mode="json", by_alias=True)
        if data.get("occurredAt") is None:
            data.pop("occurredAt", None)
        return data


class ExpensePayload(_PayloadBase):
    category: ExpenseCategory


class IncomePayload(_PayloadBase):
    source: IncomeSource


class ExpenseAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["expense"] = "expense"
    payload: ExpensePayload


class IncomeAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["income"] = "income"
    payload: IncomePayload


OfflineAction = Annotated[Union[ExpenseAction, IncomeAction], Field(discriminator="type")]

offline_action_adapter: TypeAdapter[ExpenseAction | IncomeAction] = TypeAdapter(OfflineAction)


def dump_action(action: ExpenseAction | IncomeAction) -> dict:
    return {"type": action.type, "payload": action.payload.to_wire()}


class ConnectivityRequest(BaseModel):
    online: bool


class FlushResponse(BaseModel):
    ok: bool = True
    flushed: int
    pending: int


class SubmitResponse(BaseModel):
    ok: bool = True
    queued: bool
    stored: bool = True
    status: str
    record: dict | None = None
