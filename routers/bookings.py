import calendar
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, get_db
from logging_config import get_logger
from schemas import Booking, BookingStatus, PaymentMethod, PaymentStatus, Role
from security import get_token_payload, require_role
from utils import naive_utc, ok, oid, serialize

logger = get_logger(__name__)

bookings_router = APIRouter(prefix="/api/bookings", tags=["bookings"])

ACTIVE_BOOKING_STATUSES = [BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value]


class BookingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    property_id: str = Field(..., alias="roomId")
    move_in_date: datetime = Field(..., alias="moveInDate")
    duration: int = Field(..., ge=1, le=60, description="Months")
    security_deposit: Optional[float] = Field(default=None, ge=0, alias="securityDeposit")
    payment_method: PaymentMethod = Field(default=PaymentMethod.ONLINE, alias="paymentMethod")
    notes: Optional[str] = Field(default=None, max_length=500)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    reason: Optional[str] = None


class PaymentConfirmation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_confirmed: bool = Field(..., alias="ownerConfirmed")
    notes: Optional[str] = None


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def get_booking_or_404(db: Database, booking_id: str) -> dict:
    booking = db["booking"].find_one({"_id": oid(booking_id)})
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def get_owned_booking(db: Database, booking_id: str, owner_id: str) -> dict:
    booking = get_booking_or_404(db, booking_id)
    if booking["owner"] != owner_id:
        raise HTTPException(status_code=403, detail="Only the property owner can manage this booking")
    return booking


@bookings_router.post("", status_code=201)
def create_booking(payload: BookingCreate, student: dict = Depends(require_role(Role.STUDENT)), db: Database = Depends(get_db)):
    prop = db["property"].find_one({"_id": oid(payload.property_id)})
    if not prop:
        raise HTTPException(status_code=404, detail="Room not found")
    if prop.get("status") != "active" or prop.get("available_rooms", 0) <= 0:
        raise HTTPException(status_code=409, detail="Room is not available for booking")

    now = datetime.utcnow()
    active = db["booking"].find_one({
        "student": student["sub"],
        "status": {"$in": ACTIVE_BOOKING_STATUSES},
        "move_out_date": {"$gt": now},
        "payment_status": {"$ne": PaymentStatus.FAILED.value},
    })
    if active:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "You already have an active booking. One student can only book one room at a time.",
                "data": {"current_booking_id": str(active["_id"]), "current_booking_expires": active["move_out_date"].isoformat()},
            },
        )

    move_in = naive_utc(payload.move_in_date)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if move_in < today:
        raise HTTPException(status_code=400, detail="Move-in date cannot be in the past")

    # take the room before writing the booking; the guard keeps availability >= 0
    taken = db["property"].find_one_and_update(
        {"_id": prop["_id"], "available_rooms": {"$gt": 0}},
        {"$inc": {"available_rooms": -1}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if taken is None:
        raise HTTPException(status_code=409, detail="Room is not available for booking")

    monthly_rent = prop["price"]
    deposit = payload.security_deposit if payload.security_deposit is not None else monthly_rent
    booking = Booking(
        property=str(prop["_id"]),
        student=student["sub"],
        owner=prop["owner"],
        move_in_date=move_in,
        move_out_date=add_months(move_in, payload.duration),
        duration=payload.duration,
        monthly_rent=monthly_rent,
        security_deposit=deposit,
        total_amount=monthly_rent + deposit,
        payment_method=payload.payment_method,
        student_notes=payload.notes or "",
    )
    try:
        booking_id = create_document("booking", booking, database=db)
    except Exception:
        # give the room back so availability matches the stored bookings
        db["property"].update_one({"_id": prop["_id"]}, {"$inc": {"available_rooms": 1}})
        logger.error(f"Booking insert failed for property {prop['_id']}, room released", exc_info=True)
        raise
    logger.info(f"Student {student['sub']} booked property {prop['_id']} ({booking_id})")
    return ok({"booking": serialize(get_booking_or_404(db, booking_id))}, "Booking created successfully")


@bookings_router.get("/my-bookings")
def my_bookings(
    status: Optional[BookingStatus] = None,
    payload: dict = Depends(get_token_payload),
    db: Database = Depends(get_db),
):
    side = "owner" if Role.parse(payload.get("role")) == Role.OWNER else "student"
    query = {side: payload["sub"]}
    if status:
        query["status"] = status.value
    bookings = [serialize(b) for b in db["booking"].find(query).sort("created_at", DESCENDING)]
    counts = {s.value: 0 for s in BookingStatus}
    for b in bookings:
        counts[b["status"]] = counts.get(b["status"], 0) + 1
    return ok({"bookings": bookings, "summary": {"total": len(bookings), **counts}})


@bookings_router.put("/{booking_id}/status")
def update_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    owner: dict = Depends(require_role(Role.OWNER)),
    db: Database = Depends(get_db),
):
    booking = get_owned_booking(db, booking_id, owner["sub"])
    if booking["status"] == payload.status.value:
        raise HTTPException(status_code=400, detail=f"Booking is already {booking['status']}")
    if booking["status"] in (BookingStatus.CANCELLED.value, BookingStatus.COMPLETED.value):
        raise HTTPException(status_code=400, detail=f"Cannot change a {booking['status']} booking")

    now = datetime.utcnow()
    changes = {"status": payload.status.value, "updated_at": now}
    if payload.status == BookingStatus.CONFIRMED:
        changes["confirmed_at"] = now
    elif payload.status == BookingStatus.CANCELLED:
        changes["cancelled_at"] = now
        changes["cancellation_reason"] = payload.reason or ""

    updated = db["booking"].find_one_and_update(
        {"_id": booking["_id"], "status": booking["status"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=409, detail="Booking was modified by another request, please retry")

    if payload.status == BookingStatus.CANCELLED:
        db["property"].update_one({"_id": oid(booking["property"])}, {"$inc": {"available_rooms": 1}})

    logger.info(f"Booking {booking_id} moved {booking['status']} -> {payload.status.value}")
    return ok({"booking": serialize(updated)}, f"Booking {payload.status.value} successfully")


@bookings_router.patch("/{booking_id}/confirm-payment")
def confirm_payment(
    booking_id: str,
    payload: PaymentConfirmation,
    owner: dict = Depends(require_role(Role.OWNER)),
    db: Database = Depends(get_db),
):
    booking = get_owned_booking(db, booking_id, owner["sub"])
    if booking.get("payment_method") != PaymentMethod.OFFLINE.value:
        raise HTTPException(status_code=400, detail="Only offline payments can be confirmed by the owner")
    if not payload.owner_confirmed:
        raise HTTPException(status_code=400, detail="Payment confirmation required")
    if booking["status"] not in ACTIVE_BOOKING_STATUSES:
        raise HTTPException(status_code=400, detail=f"Cannot confirm payment for a {booking['status']} booking")
    if booking.get("payment_status") == PaymentStatus.PAID.value:
        raise HTTPException(status_code=400, detail="Payment is already confirmed")

    now = datetime.utcnow()
    updated = db["booking"].find_one_and_update(
        {
            "_id": booking["_id"],
            "status": {"$in": ACTIVE_BOOKING_STATUSES},
            "payment_status": {"$ne": PaymentStatus.PAID.value},
        },
        {"$set": {
            "payment_status": PaymentStatus.PAID.value,
            "status": BookingStatus.CONFIRMED.value,
            "confirmed_at": now,
            "payment_confirmed_at": now,
            "payment_notes": payload.notes or "",
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=409, detail="Booking was modified by another request, please retry")
    logger.info(f"Owner {owner['sub']} confirmed offline payment for booking {booking_id}")
    return ok({"booking": serialize(updated)}, "Payment confirmed successfully")
