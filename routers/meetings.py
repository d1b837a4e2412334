"""
Meeting (visit request) negotiation.

    pending -> confirmed | declined | rescheduled | pending_owner_response
            -> confirmed | declined | cancelled
            -> completed | no_show

Owners accept, decline, reschedule and answer counter-proposals. Students
accept, decline or counter-propose. Either side may cancel. Every change is
written as a compare-and-set on the status that was read, and appended to the
meeting's history.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, get_db
from logging_config import get_logger
from routers.properties import get_property_or_404
from schemas import TERMINAL_MEETING_STATUSES, HistoryEntry, Meeting, MeetingStatus, Role
from security import get_token_payload, require_role
from utils import naive_utc, ok, oid, paginate, serialize

logger = get_logger(__name__)

meetings_router = APIRouter(prefix="/api/meetings", tags=["meetings"])

TIME_PATTERN = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"


class MeetingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    property_id: str = Field(..., alias="roomId")
    preferred_dates: List[datetime] = Field(default_factory=list, alias="preferredDates")
    meeting_type: Literal["physical", "virtual", "phone"] = Field(default="physical", alias="meetingType")
    purpose: str = "property_viewing"
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("preferred_dates")
    @classmethod
    def dates_in_future(cls, value: List[datetime]) -> List[datetime]:
        value = [naive_utc(d) for d in value]
        if any(d <= datetime.utcnow() for d in value):
            raise ValueError("Preferred dates must be in the future")
        return value


class OwnerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["accept", "confirm", "decline", "accept_counter", "decline_counter"]
    response: Optional[str] = None
    confirmed_date: Optional[datetime] = Field(default=None, alias="confirmedDate")
    confirmed_time: Optional[str] = Field(default=None, alias="confirmedTime", pattern=TIME_PATTERN)


class CounterProposalIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_date: Optional[datetime] = Field(default=None, alias="newDate")
    new_time: Optional[str] = Field(default=None, alias="newTime", pattern=TIME_PATTERN)
    reason: Optional[str] = None


class StudentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["accept", "decline", "counter_reschedule"]
    response: Optional[str] = None
    counter_proposal: Optional[CounterProposalIn] = Field(default=None, alias="counterProposal")


class ReschedulePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_date: Optional[datetime] = Field(default=None, alias="newDate")
    new_time: Optional[str] = Field(default=None, alias="newTime", pattern=TIME_PATTERN)
    reason: Optional[str] = None


class CancelPayload(BaseModel):
    reason: Optional[str] = None


class StatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["pending", "confirmed", "cancelled", "completed", "no_show"]
    confirmed_date: Optional[datetime] = Field(default=None, alias="confirmedDate")


class AcceptTimePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slot_index: int = Field(..., ge=0, alias="slotIndex")
    time: str = Field(..., pattern=TIME_PATTERN)


def get_meeting_or_404(db: Database, meeting_id: str) -> dict:
    meeting = db["meeting"].find_one({"_id": oid(meeting_id)})
    if not meeting:
        raise HTTPException(status_code=404, detail="Meeting not found")
    return meeting


def ensure_open(meeting: dict):
    if meeting["status"] in TERMINAL_MEETING_STATUSES:
        raise HTTPException(status_code=400, detail=f"Meeting is already {meeting['status']}")


def transition(
    db: Database,
    meeting: dict,
    changes: Dict[str, Any],
    action: str,
    performed_by: str,
    details: Optional[Dict[str, Any]] = None,
    unset: Iterable[str] = (),
) -> dict:
    """Apply `changes` only if the meeting still has the status it was read with."""
    now = datetime.utcnow()
    entry = HistoryEntry(action=action, performed_by=performed_by, performed_at=now, details=details or {})
    update: Dict[str, Any] = {
        "$set": {**changes, "updated_at": now},
        "$push": {"history": entry.model_dump()},
    }
    unset = list(unset)
    if unset:
        update["$unset"] = {field: "" for field in unset}

    updated = db["meeting"].find_one_and_update(
        {"_id": meeting["_id"], "status": meeting["status"]},
        update,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.warning(f"Meeting {meeting['_id']} changed while applying {action}")
        raise HTTPException(status_code=409, detail="Meeting was modified by another request, please retry")
    logger.info(f"Meeting {meeting['_id']}: {action} by {performed_by} ({meeting['status']} -> {updated['status']})")
    return updated


def populate(db: Database, meetings: List[dict]) -> List[dict]:
    """Attach property title/location and participant contact details."""
    property_ids = {m["property"] for m in meetings}
    user_ids = {m["student"] for m in meetings} | {m["owner"] for m in meetings}
    properties = {
        str(p["_id"]): {"id": str(p["_id"]), "title": p.get("title"), "location": p.get("location")}
        for p in db["property"].find({"_id": {"$in": [oid(i) for i in property_ids]}})
    }
    users = {
        str(u["_id"]): {"id": str(u["_id"]), "full_name": u.get("full_name"), "email": u.get("email"), "phone": u.get("phone")}
        for u in db["user"].find({"_id": {"$in": [oid(i) for i in user_ids]}})
    }
    result = []
    for m in meetings:
        item = serialize(m)
        item["property"] = properties.get(m["property"], {"id": m["property"]})
        item["student"] = users.get(m["student"], {"id": m["student"]})
        item["owner"] = users.get(m["owner"], {"id": m["owner"]})
        result.append(item)
    return result


@meetings_router.post("", status_code=201)
def create_meeting(
    payload: MeetingCreate,
    student: dict = Depends(require_role(Role.STUDENT)),
    db: Database = Depends(get_db),
):
    prop = get_property_or_404(db, payload.property_id)
    meeting = Meeting(
        property=str(prop["_id"]),
        student=student["sub"],
        owner=prop["owner"],
        preferred_dates=payload.preferred_dates,
        meeting_type=payload.meeting_type,
        purpose=payload.purpose,
        student_notes=payload.notes or "",
        history=[HistoryEntry(action="requested", performed_by=student["sub"])],
    )
    meeting_id = create_document("meeting", meeting, database=db)
    logger.info(f"Student {student['sub']} requested meeting {meeting_id} for property {prop['_id']}")
    created = db["meeting"].find_one({"_id": oid(meeting_id)})
    return ok({"meeting": populate(db, [created])[0]}, "Meeting scheduled successfully")


@meetings_router.get("")
def list_meetings(
    status: Optional[MeetingStatus] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    payload: dict = Depends(get_token_payload),
    db: Database = Depends(get_db),
):
    role = Role.parse(payload.get("role"))
    query: Dict[str, Any] = {"owner" if role == Role.OWNER else "student": payload["sub"]}
    if status:
        query["status"] = status.value

    total = db["meeting"].count_documents(query)
    meetings = list(
        db["meeting"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    )
    return ok({"meetings": populate(db, meetings), "pagination": paginate(page, limit, total)})


@meetings_router.get("/{meeting_id}")
def get_meeting(meeting_id: str, payload: dict = Depends(get_token_payload), db: Database = Depends(get_db)):
    meeting = get_meeting_or_404(db, meeting_id)
    if payload["sub"] not in (meeting["owner"], meeting["student"]):
        raise HTTPException(status_code=403, detail="You do not have access to this meeting")
    return ok({"meeting": populate(db, [meeting])[0]})


@meetings_router.post("/{meeting_id}/respond")
@meetings_router.put("/{meeting_id}/respond")
def owner_respond(
    meeting_id: str,
    payload: OwnerResponse,
    owner: dict = Depends(require_role(Role.OWNER)),
    db: Database = Depends(get_db),
):
    meeting = get_meeting_or_404(db, meeting_id)
    if meeting["owner"] != owner["sub"]:
        raise HTTPException(status_code=403, detail="Unauthorized: You can only respond to your own meeting requests")
    ensure_open(meeting)

    changes: Dict[str, Any] = {}
    unset: List[str] = []
    if payload.action in ("accept", "confirm"):
        changes["status"] = MeetingStatus.CONFIRMED.value
        changes["owner_response"] = payload.response or "Meeting confirmed"
        if payload.confirmed_date and payload.confirmed_time:
            changes["confirmed_date"] = naive_utc(payload.confirmed_date)
            changes["confirmed_time"] = payload.confirmed_time
        unset.append("counter_proposal")
    elif payload.action == "decline":
        changes["status"] = MeetingStatus.DECLINED.value
        changes["owner_response"] = payload.response or "Meeting declined"
    elif payload.action == "accept_counter":
        counter = meeting.get("counter_proposal")
        if not counter:
            raise HTTPException(status_code=400, detail="No counter proposal found to accept")
        changes["status"] = MeetingStatus.CONFIRMED.value
        changes["confirmed_date"] = counter["date"]
        changes["confirmed_time"] = counter["time"]
        changes["owner_response"] = payload.response or "Counter proposal accepted"
        unset.append("counter_proposal")
    else:
        # decline_counter sends the negotiation back to the start
        changes["status"] = MeetingStatus.PENDING.value
        changes["owner_response"] = payload.response or "Counter proposal declined"
        unset.append("counter_proposal")

    changes["owner_response_at"] = datetime.utcnow()
    updated = transition(db, meeting, changes, payload.action, owner["sub"], {"response": changes["owner_response"]}, unset)
    past = {"accept": "accepted", "confirm": "confirmed", "decline": "declined",
            "accept_counter": "accepted the counter proposal for", "decline_counter": "declined the counter proposal for"}
    return ok({"meeting": serialize(updated)}, f"Owner {past[payload.action]} the meeting")


@meetings_router.post("/{meeting_id}/student-respond")
def student_respond(
    meeting_id: str,
    payload: StudentResponse,
    student: dict = Depends(require_role(Role.STUDENT)),
    db: Database = Depends(get_db),
):
    meeting = get_meeting_or_404(db, meeting_id)
    if meeting["student"] != student["sub"]:
        raise HTTPException(status_code=403, detail="Unauthorized: You can only respond to your own meetings")
    ensure_open(meeting)

    now = datetime.utcnow()
    details: Dict[str, Any] = {}
    if payload.action == "accept":
        changes = {
            "status": MeetingStatus.CONFIRMED.value,
            "student_response": payload.response or "Meeting accepted by student",
        }
        message = "Meeting accepted successfully"
    elif payload.action == "decline":
        changes = {
            "status": MeetingStatus.DECLINED.value,
            "student_response": payload.response or "Meeting declined by student",
        }
        message = "Meeting declined"
    else:
        counter = payload.counter_proposal
        if not counter or not counter.new_date or not counter.new_time:
            raise HTTPException(status_code=400, detail="Counter proposal must include new date and time")
        proposal = {
            "date": naive_utc(counter.new_date),
            "time": counter.new_time,
            "reason": counter.reason or "Student counter-proposal",
        }
        changes = {
            "status": MeetingStatus.PENDING_OWNER_RESPONSE.value,
            "student_response": payload.response or "Student requested different time",
            "counter_proposal": proposal,
        }
        details = dict(proposal)
        message = "Counter proposal sent to owner"

    changes["student_response_at"] = now
    updated = transition(db, meeting, changes, payload.action, student["sub"], details)
    return ok({"meeting": serialize(updated)}, message)


@meetings_router.post("/{meeting_id}/reschedule")
def reschedule(
    meeting_id: str,
    payload: ReschedulePayload,
    owner: dict = Depends(require_role(Role.OWNER)),
    db: Database = Depends(get_db),
):
    if not payload.new_date or not payload.new_time:
        raise HTTPException(status_code=400, detail="New date and time are required for rescheduling")

    meeting = get_meeting_or_404(db, meeting_id)
    if meeting["owner"] != owner["sub"]:
        raise HTTPException(status_code=403, detail="Unauthorized: You can only reschedule your own meetings")
    ensure_open(meeting)

    new_date = naive_utc(payload.new_date)
    changes = {
        "confirmed_date": new_date,
        "confirmed_time": payload.new_time,
        "status": MeetingStatus.CONFIRMED.value,
        "owner_response": payload.reason or "Meeting rescheduled by owner",
        "rescheduled_at": datetime.utcnow(),
        "is_rescheduled": True,
    }
    updated = transition(
        db, meeting, changes, "rescheduled", owner["sub"],
        {"new_date": new_date, "new_time": payload.new_time, "reason": changes["owner_response"]},
    )
    return ok({"meeting": serialize(updated)}, "Meeting rescheduled successfully")


@meetings_router.post("/{meeting_id}/cancel")
def cancel_meeting(
    meeting_id: str,
    payload: Optional[CancelPayload] = Body(default=None),
    user: dict = Depends(get_token_payload),
    db: Database = Depends(get_db),
):
    meeting = get_meeting_or_404(db, meeting_id)
    user_id = user["sub"]
    if user_id not in (meeting["owner"], meeting["student"]):
        raise HTTPException(status_code=403, detail="You do not have permission to cancel this meeting")
    ensure_open(meeting)

    reason = (payload.reason if payload else None) or "No reason provided"
    side = "owner" if meeting["owner"] == user_id else "student"
    changes = {
        "status": MeetingStatus.CANCELLED.value,
        "cancelled_by": user_id,
        "cancelled_at": datetime.utcnow(),
        "cancellation_reason": reason,
    }
    updated = transition(db, meeting, changes, "cancelled", user_id, {"reason": reason, "cancelled_by": side})
    return ok({"meeting": populate(db, [updated])[0]}, "Meeting cancelled successfully")


@meetings_router.put("/{meeting_id}/status")
def update_status(
    meeting_id: str,
    payload: StatusUpdate,
    user: dict = Depends(get_token_payload),
    db: Database = Depends(get_db),
):
    meeting = get_meeting_or_404(db, meeting_id)
    if meeting["owner"] != user["sub"]:
        raise HTTPException(status_code=403, detail="Only the property owner can update meeting status")
    ensure_open(meeting)

    if payload.status in ("completed", "no_show") and meeting["status"] != MeetingStatus.CONFIRMED.value:
        raise HTTPException(status_code=400, detail=f"Only confirmed meetings can be marked {payload.status}")

    changes: Dict[str, Any] = {"status": payload.status}
    if payload.status == "confirmed" and payload.confirmed_date:
        changes["confirmed_date"] = naive_utc(payload.confirmed_date)
    if payload.status == "cancelled":
        changes.update({"cancelled_by": user["sub"], "cancelled_at": datetime.utcnow()})

    updated = transition(db, meeting, changes, f"status:{payload.status}", user["sub"])
    return ok({"meeting": serialize(updated)}, "Meeting status updated successfully")


@meetings_router.put("/{meeting_id}/accept-time")
def accept_time(
    meeting_id: str,
    payload: AcceptTimePayload,
    owner: dict = Depends(require_role(Role.OWNER)),
    db: Database = Depends(get_db),
):
    meeting = get_meeting_or_404(db, meeting_id)
    if meeting["owner"] != owner["sub"]:
        raise HTTPException(status_code=403, detail="Unauthorized: You can only respond to your own meeting requests")
    ensure_open(meeting)

    dates = meeting.get("preferred_dates") or []
    if payload.slot_index >= len(dates):
        raise HTTPException(status_code=400, detail="Time slot not found")

    changes = {
        "status": MeetingStatus.CONFIRMED.value,
        "confirmed_date": dates[payload.slot_index],
        "confirmed_time": payload.time,
        "owner_response": "Preferred time accepted",
    }
    updated = transition(db, meeting, changes, "accept_time", owner["sub"], {"slot_index": payload.slot_index})
    return ok({"meeting": serialize(updated)}, "Meeting time accepted successfully")
