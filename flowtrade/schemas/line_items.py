import uuid
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class LineItemBase(BaseModel):
    item_type: str = "labour"
    description: str = Field(..., min_length=1)
    quantity: Decimal = Field(default=Decimal("1"), ge=0)
    unit: Optional[str] = None
    unit_price: Decimal = Decimal("0")
    is_optional: bool = False


class LineItemResponse(BaseModel):
    id: uuid.UUID
    position: int
    item_type: Optional[str] = None
    description: str
    quantity: Decimal
    unit: Optional[str] = None
    unit_price: Decimal
    line_total: Decimal
    is_optional: bool = False

    class Config:
        from_attributes = True


# Edit commands: applied as one unit, removals first, then updates, then adds
class AddLineItem(LineItemBase):
    op: Literal["add"]


class UpdateLineItem(BaseModel):
    op: Literal["update"]
    id: uuid.UUID
    item_type: Optional[str] = None
    description: Optional[str] = Field(default=None, min_length=1)
    quantity: Optional[Decimal] = Field(default=None, ge=0)
    unit: Optional[str] = None
    unit_price: Optional[Decimal] = None
    is_optional: Optional[bool] = None


class RemoveLineItem(BaseModel):
    op: Literal["remove"]
    id: uuid.UUID


LineItemChange = Annotated[Union[AddLineItem, UpdateLineItem, RemoveLineItem], Field(discriminator="op")]


class LineItemChanges(BaseModel):
    changes: List[LineItemChange]
