"""
Database Schemas for E2Recycle

Each Pydantic model represents a MongoDB collection. Collection name is the
snake_case of the class name (e.g., User -> "user", RecyclingRequest ->
"recycling_request"). References to other documents are stored as id strings.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from identity import ROLE_PATTERN

# Decimal128 holds 34 significant digits; commission adds up to three more
PRICE_MAX_DIGITS = 24
PRICE_DECIMAL_PLACES = 4


def utcnow():
    return datetime.now(timezone.utc)


class User(BaseModel):
    """Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=1, description="Full name or organization contact")
    email: EmailStr = Field(..., description="Login email, stored lowercase")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: str = Field(..., pattern=ROLE_PATTERN)
    phone: Optional[str] = Field(None, description="Contact phone number")
    address: Optional[str] = Field(None, description="Default pickup / business address")
    organization: Optional[str] = Field(None, description="Company, school or recycling facility name")
    dateCreated: datetime = Field(default_factory=utcnow)


class RequestDetails(BaseModel):
    """What a submitter provides for one item to be recycled."""
    model_config = ConfigDict(str_strip_whitespace=True)

    productName: str = Field(..., min_length=1, description="e.g. iPhone 12")
    productType: str = Field(..., min_length=1, description="e.g. phone, laptop, battery")
    brand: Optional[str] = None
    model: Optional[str] = None
    condition: Optional[str] = Field(None, description="working, damaged, dead ...")
    description: Optional[str] = None
    pickupAddress: Optional[str] = None
    quantity: int = Field(..., gt=0)
    estimatedPrice: Decimal = Field(
        ..., ge=0, max_digits=PRICE_MAX_DIGITS, decimal_places=PRICE_DECIMAL_PLACES,
        description="Estimated value in currency units",
    )


class RecyclingRequest(RequestDetails):
    """Recycling requests collection schema
    Collection name: "recycling_request"
    """
    user: str = Field(..., description="Submitting userId (string)")
    uniqueCode: str = Field(..., description="Public, globally unique request code")
    secretCode: str = Field(..., description="Pickup code revealed to the recycler after commission confirmation")
    status: str = Field("pending", description="pending | approved | accepted | completed | rejected")
    acceptedBy: Optional[str] = Field(None, description="Accepting recycler userId")
    adminNotes: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)
    reviewedAt: Optional[datetime] = None
    acceptedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


class Transaction(BaseModel):
    """Commission transactions collection schema
    Collection name: "transaction"
    """
    request: str = Field(..., description="RecyclingRequest id (string)")
    recycler: str = Field(..., description="Recycler userId who owes the commission")
    orderAmount: Decimal = Field(..., ge=0)
    commissionRate: int = Field(8, ge=0, le=100, description="Integer percent")
    commissionAmount: Decimal = Field(..., ge=0)
    status: str = Field("pending", description="pending | paid | confirmed | disputed")
    paymentMethod: Optional[str] = None
    paymentReference: Optional[str] = None
    paymentDate: Optional[datetime] = None
    adminNotes: Optional[str] = None
    confirmedBy: Optional[str] = None
    confirmedAt: Optional[datetime] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)
