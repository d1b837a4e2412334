"""
Database Schemas

Each Pydantic model represents a MongoDB collection. The collection name is
the lowercase of the class name:
- User -> "user"
- Property -> "property"
- Meeting -> "meeting"
- RoomSharing -> "roomsharing"
- OTP -> "otp"
- Booking -> "booking"

References between documents are stored as string ids.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    STUDENT = "student"
    OWNER = "owner"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Role"]:
        """Accept legacy capitalised values ("Owner") as well as the canonical ones."""
        if value is None or isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class MeetingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    PENDING_OWNER_RESPONSE = "pending_owner_response"
    DECLINED = "declined"


TERMINAL_MEETING_STATUSES = {
    MeetingStatus.CANCELLED.value,
    MeetingStatus.COMPLETED.value,
    MeetingStatus.DECLINED.value,
    MeetingStatus.NO_SHOW.value,
}


class ShareStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class OTPType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class MongoModel(BaseModel):
    # enums are stored as their plain string values
    model_config = ConfigDict(use_enum_values=True)


class RefreshToken(MongoModel):
    token: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class User(MongoModel):
    """
    Users collection schema
    Collection name: "user"
    """
    email: EmailStr = Field(..., description="Email address, stored lowercase")
    phone: str = Field(..., description="Phone number, digits with optional leading +")
    full_name: str = Field(..., description="Full name")
    password_hash: str = Field(..., description="Hashed password")
    role: Role
    is_email_verified: bool = False
    is_phone_verified: bool = False
    is_identity_verified: bool = False
    identity_verification_required: bool = False
    is_active: bool = True
    last_login: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    refresh_tokens: List[RefreshToken] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Location(MongoModel):
    address: str
    city: str
    state: Optional[str] = None
    pincode: Optional[str] = Field(default=None, pattern=r"^\d{6}$")


class Property(MongoModel):
    """
    Listings collection schema
    Collection name: "property"
    """
    owner: str = Field(..., description="User id of the owner")
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=500)
    price: float = Field(..., ge=0)
    room_type: str = Field(default="single", description="single | shared | studio")
    accommodation_type: str = Field(default="room", description="pg | hostel | apartment | room")
    location: Location
    status: str = Field(default="active", description="active | inactive")
    total_rooms: int = Field(default=1, ge=0)
    available_rooms: int = Field(default=1, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CounterProposal(MongoModel):
    date: datetime
    time: str
    reason: str = "Student counter-proposal"


class HistoryEntry(MongoModel):
    action: str
    performed_by: str
    performed_at: datetime = Field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class Meeting(MongoModel):
    """
    Meetings (visit requests) collection schema
    Collection name: "meeting"
    """
    property: str = Field(..., description="Property id")
    student: str = Field(..., description="User id of the requesting student")
    owner: str = Field(..., description="User id of the property owner")
    preferred_dates: List[datetime] = Field(default_factory=list)
    confirmed_date: Optional[datetime] = None
    confirmed_time: Optional[str] = None
    status: MeetingStatus = MeetingStatus.PENDING
    meeting_type: str = Field(default="physical", description="physical | virtual | phone")
    purpose: str = Field(default="property_viewing")
    student_notes: Optional[str] = Field(default=None, max_length=500)
    owner_response: Optional[str] = None
    student_response: Optional[str] = None
    student_response_at: Optional[datetime] = None
    counter_proposal: Optional[CounterProposal] = None
    is_rescheduled: bool = False
    rescheduled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Participant(MongoModel):
    user: str
    joined_at: datetime = Field(default_factory=datetime.utcnow)
    status: str = "confirmed"


class Application(MongoModel):
    id: str
    applicant: str
    message: str = ""
    status: ApplicationStatus = ApplicationStatus.PENDING
    applied_at: datetime = Field(default_factory=datetime.utcnow)
    responded_at: Optional[datetime] = None
    response_message: Optional[str] = None


class RoomSharing(MongoModel):
    """
    Room sharing collection schema
    Collection name: "roomsharing"
    """
    initiator: str = Field(..., description="User id of the student who opened the share")
    property: str = Field(..., description="Property id")
    description: Optional[str] = Field(default=None, max_length=1000)
    max_participants: int = Field(default=2, ge=2, le=10)
    rent_per_person: Optional[float] = Field(default=None, ge=0)
    current_participants: List[Participant] = Field(default_factory=list)
    applications: List[Application] = Field(default_factory=list)
    status: ShareStatus = ShareStatus.ACTIVE
    completion_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    views: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OTP(MongoModel):
    """
    One-time codes collection schema
    Collection name: "otp"
    """
    identifier: str = Field(..., description="Email address or phone number")
    type: OTPType
    purpose: Optional[str] = None
    code: str = Field(..., min_length=6, max_length=6)
    expires_at: datetime
    is_used: bool = False
    attempts: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None


class Booking(MongoModel):
    """
    Bookings collection schema
    Collection name: "booking"
    """
    property: str
    student: str
    owner: str
    move_in_date: datetime
    move_out_date: datetime
    duration: int = Field(..., ge=1, description="Months")
    monthly_rent: float
    security_deposit: float = 0
    total_amount: float
    status: BookingStatus = BookingStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    payment_status: PaymentStatus = PaymentStatus.PENDING
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    student_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
