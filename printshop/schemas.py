from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class NewCustomerIn(BaseModel):
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None


class OrderItemIn(BaseModel):
    product_name: str = ''
    quantity: int = Field(default=1)
    price: int = Field(default=0)


class OrderCreate(BaseModel):
    customer_id: Optional[int] = None
    new_customer: Optional[NewCustomerIn] = None
    items: list[OrderItemIn]
    notes: Optional[str] = None
    deadline: Optional[datetime] = None


class PaymentCreate(BaseModel):
    amount: int
    method: str
    card_token: Optional[str] = None


class WorkOrderCreate(BaseModel):
    notes: Optional[str] = None


class AdvanceRequest(BaseModel):
    expected_stage: str
