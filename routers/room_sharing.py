from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from constants import ROOM_SHARE_INACTIVE_DAYS
from database import create_document, get_db, get_documents
from logging_config import get_logger
from routers.properties import get_property_or_404
from schemas import Application, ApplicationStatus, Participant, RoomSharing, ShareStatus
from security import get_optional_payload, get_token_payload, require_verified_student
from utils import ok, oid, paginate, serialize

logger = get_logger(__name__)

room_sharing_router = APIRouter(prefix="/api/room-sharing", tags=["room-sharing"])


class ShareCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    property_id: str = Field(..., alias="propertyId")
    description: Optional[str] = Field(default=None, max_length=1000)
    max_participants: int = Field(default=2, ge=2, le=10, alias="maxParticipants")
    rent_per_person: Optional[float] = Field(default=None, ge=0, alias="rentPerPerson")


class ApplyPayload(BaseModel):
    message: Optional[str] = Field(default=None, max_length=500)


class RespondPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    application_id: str = Field(..., alias="applicationId")
    status: Literal["accepted", "rejected"]
    message: Optional[str] = None


class DeactivatePayload(BaseModel):
    reason: Optional[str] = None


class CleanupPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    days_inactive: int = Field(default=7, ge=0, alias="daysInactive")
    force_cleanup: bool = Field(default=False, alias="forceCleanup")


def get_share_or_404(db: Database, share_id: str) -> dict:
    share = db["roomsharing"].find_one({"_id": oid(share_id)})
    if not share:
        raise HTTPException(status_code=404, detail="Room share not found")
    return share


def confirmed_count(share: dict) -> int:
    return sum(1 for p in share.get("current_participants", []) if p.get("status") == "confirmed")


def share_view(share: dict, user_id: Optional[str] = None) -> Dict[str, Any]:
    data = serialize(share)
    taken = confirmed_count(share)
    data["available_slots"] = max(share.get("max_participants", 0) - taken, 0)
    data["is_full"] = taken >= share.get("max_participants", 0)
    if user_id:
        application = next((a for a in share.get("applications", []) if a["applicant"] == user_id), None)
        data["user_context"] = {
            "has_applied": application is not None,
            "application_status": application["status"] if application else None,
            "is_participant": any(p["user"] == user_id for p in share.get("current_participants", [])),
            "is_initiator": share["initiator"] == user_id,
        }
    return data


def deactivation_reason(prop: Optional[dict], share: dict, cutoff: Optional[datetime], inactive_days: Optional[int]) -> Optional[str]:
    if not prop:
        return "Property deleted"
    if prop.get("status") != "active":
        return f"Property status: {prop.get('status')}"
    if prop.get("available_rooms") == 0:
        return "Property fully booked"
    if cutoff is not None and share.get("updated_at") and share["updated_at"] < cutoff:
        return f"Inactive for more than {inactive_days} days"
    return None


def cleanup_room_shares(
    db: Database,
    inactive_days: Optional[int] = ROOM_SHARE_INACTIVE_DAYS,
    force: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Cancel active shares whose property can no longer host them, or that went quiet.

    `inactive_days=None` disables the inactivity rule; `force` cancels every active share.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=inactive_days) if inactive_days is not None else None

    active = get_documents("roomsharing", {"status": ShareStatus.ACTIVE.value}, database=db)
    property_ids = list({oid(s["property"]) for s in active})
    properties = {str(p["_id"]): p for p in db["property"].find({"_id": {"$in": property_ids}})}
    logger.info(f"Room sharing cleanup: checking {len(active)} active shares")

    results: List[Dict[str, Any]] = []
    for share in active:
        prop = properties.get(share["property"])
        reason = "Manual cleanup triggered" if force else deactivation_reason(prop, share, cutoff, inactive_days)
        if not reason:
            continue

        # skip shares that changed status since the scan
        updated = db["roomsharing"].update_one(
            {"_id": share["_id"], "status": ShareStatus.ACTIVE.value},
            {"$set": {
                "status": ShareStatus.CANCELLED.value,
                "completion_reason": reason,
                "completed_at": now,
                "updated_at": now,
            }},
        )
        if updated.modified_count == 0:
            continue
        results.append({
            "share_id": str(share["_id"]),
            "property_title": prop.get("title") if prop else "Unknown",
            "reason": reason,
            "action": "deactivated",
        })
        logger.info(f"Deactivated room sharing {share['_id']}: {reason}")

    return {
        "total_checked": len(active),
        "deactivated": len(results),
        "cutoff_date": cutoff.isoformat() if cutoff else None,
        "results": results,
    }


@room_sharing_router.post("", status_code=201)
def create_share(payload: ShareCreate, user: dict = Depends(require_verified_student), db: Database = Depends(get_db)):
    prop = get_property_or_404(db, payload.property_id)
    if prop.get("status") != "active":
        raise HTTPException(status_code=400, detail="Property is not active")

    user_id = str(user["_id"])
    existing = db["roomsharing"].find_one({"initiator": user_id, "property": str(prop["_id"]), "status": ShareStatus.ACTIVE.value})
    if existing:
        raise HTTPException(status_code=409, detail="You already have an active room share for this property")

    share = RoomSharing(
        initiator=user_id,
        property=str(prop["_id"]),
        description=payload.description,
        max_participants=payload.max_participants,
        rent_per_person=payload.rent_per_person,
        current_participants=[Participant(user=user_id)],
    )
    share_id = create_document("roomsharing", share, database=db)
    logger.info(f"Student {user_id} opened room share {share_id}")
    return ok(share_view(get_share_or_404(db, share_id), user_id), "Room share created successfully")


@room_sharing_router.get("")
def list_shares(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query = {"status": ShareStatus.ACTIVE.value}
    total = db["roomsharing"].count_documents(query)
    shares = db["roomsharing"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"shares": [share_view(s) for s in shares], "pagination": paginate(page, limit, total)})


@room_sharing_router.get("/my-shares")
def my_shares(user: dict = Depends(require_verified_student), db: Database = Depends(get_db)):
    user_id = str(user["_id"])
    initiated = db["roomsharing"].find({"initiator": user_id}).sort("created_at", DESCENDING)
    applied = db["roomsharing"].find({"applications.applicant": user_id}).sort("created_at", DESCENDING)
    return ok({
        "initiated": [share_view(s, user_id) for s in initiated],
        "applied": [share_view(s, user_id) for s in applied],
    })


@room_sharing_router.get("/cleanup")
def cleanup_check(db: Database = Depends(get_db)):
    summary = cleanup_room_shares(db)
    return ok(summary, f"Cleanup completed. {summary['deactivated']} shares deactivated.")


@room_sharing_router.post("/cleanup")
def cleanup_trigger(
    payload: Optional[CleanupPayload] = Body(default=None),
    user: dict = Depends(get_token_payload),
    db: Database = Depends(get_db),
):
    payload = payload or CleanupPayload()
    logger.info(f"Manual room sharing cleanup by {user['sub']}: days_inactive={payload.days_inactive}, force={payload.force_cleanup}")
    summary = cleanup_room_shares(db, payload.days_inactive, payload.force_cleanup)
    summary["cleanup_criteria"] = {"days_inactive": payload.days_inactive, "force_cleanup": payload.force_cleanup}
    return ok(summary, f"Manual cleanup completed. Processed {summary['total_checked']} shares.")


@room_sharing_router.get("/{share_id}")
def get_share(share_id: str, payload: Optional[dict] = Depends(get_optional_payload), db: Database = Depends(get_db)):
    share = get_share_or_404(db, share_id)
    user_id = payload["sub"] if payload else None
    if user_id and user_id != share["initiator"]:
        share = db["roomsharing"].find_one_and_update(
            {"_id": share["_id"]}, {"$inc": {"views": 1}}, return_document=ReturnDocument.AFTER
        )
    return ok(share_view(share, user_id))


@room_sharing_router.post("/{share_id}/apply")
def apply(
    share_id: str,
    payload: Optional[ApplyPayload] = Body(default=None),
    user: dict = Depends(require_verified_student),
    db: Database = Depends(get_db),
):
    share = get_share_or_404(db, share_id)
    user_id = str(user["_id"])
    if share["status"] != ShareStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail="This room share is not accepting applications")
    if share["initiator"] == user_id:
        raise HTTPException(status_code=400, detail="You cannot apply to your own room share")
    if any(p["user"] == user_id and p.get("status") == "confirmed" for p in share.get("current_participants", [])):
        raise HTTPException(status_code=400, detail="You are already a participant in this room share")

    application = Application(id=uuid4().hex, applicant=user_id, message=(payload.message if payload else None) or "")
    # the filter rejects a second pending application from the same student
    updated = db["roomsharing"].find_one_and_update(
        {
            "_id": share["_id"],
            "status": ShareStatus.ACTIVE.value,
            "applications": {"$not": {"$elemMatch": {"applicant": user_id, "status": ApplicationStatus.PENDING.value}}},
        },
        {"$push": {"applications": application.model_dump()}, "$set": {"updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=400, detail="You have already applied to this room share")
    logger.info(f"Student {user_id} applied to room share {share_id}")
    return ok(share_view(updated, user_id), "Application submitted successfully")


@room_sharing_router.delete("/{share_id}/apply")
def withdraw(share_id: str, user: dict = Depends(require_verified_student), db: Database = Depends(get_db)):
    share = get_share_or_404(db, share_id)
    user_id = str(user["_id"])
    pending = {"applicant": user_id, "status": ApplicationStatus.PENDING.value}
    result = db["roomsharing"].update_one(
        {"_id": share["_id"], "applications": {"$elemMatch": pending}},
        {"$pull": {"applications": pending}, "$set": {"updated_at": datetime.utcnow()}},
    )
    if result.modified_count == 0:
        raise HTTPException(status_code=404, detail="No pending application found")
    logger.info(f"Student {user_id} withdrew from room share {share_id}")
    return ok(message="Application withdrawn successfully")


@room_sharing_router.put("/{share_id}/respond")
def respond(
    share_id: str,
    payload: RespondPayload,
    user: dict = Depends(require_verified_student),
    db: Database = Depends(get_db),
):
    share = get_share_or_404(db, share_id)
    user_id = str(user["_id"])
    if share["initiator"] != user_id:
        raise HTTPException(status_code=403, detail="Only the initiator can respond to applications")
    if share["status"] != ShareStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail=f"Room share is {share['status']}")

    applications = share.get("applications", [])
    index = next((i for i, a in enumerate(applications) if a["id"] == payload.application_id), None)
    if index is None:
        raise HTTPException(status_code=404, detail="Application not found")
    application = applications[index]
    if application["status"] != ApplicationStatus.PENDING.value:
        raise HTTPException(status_code=400, detail=f"Application has already been {application['status']}")

    accepting = payload.status == ApplicationStatus.ACCEPTED.value
    if accepting and confirmed_count(share) >= share["max_participants"]:
        raise HTTPException(status_code=400, detail="Room share is already full")

    now = datetime.utcnow()
    path = f"applications.{index}"
    update: Dict[str, Any] = {"$set": {
        f"{path}.status": payload.status,
        f"{path}.responded_at": now,
        f"{path}.response_message": payload.message or "",
        "updated_at": now,
    }}
    if accepting:
        update["$push"] = {"current_participants": Participant(user=application["applicant"], joined_at=now).model_dump()}

    # the application must still sit at the same index and be pending
    updated = db["roomsharing"].find_one_and_update(
        {
            "_id": share["_id"],
            "status": ShareStatus.ACTIVE.value,
            f"{path}.id": payload.application_id,
            f"{path}.status": ApplicationStatus.PENDING.value,
        },
        update,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=409, detail="Application was modified by another request, please retry")

    if accepting and confirmed_count(updated) >= updated["max_participants"]:
        updated = db["roomsharing"].find_one_and_update(
            {"_id": share["_id"], "status": ShareStatus.ACTIVE.value},
            {"$set": {"status": ShareStatus.COMPLETED.value, "completion_reason": "All slots filled", "completed_at": now}},
            return_document=ReturnDocument.AFTER,
        ) or updated

    logger.info(f"Room share {share_id}: application {payload.application_id} {payload.status}")
    return ok(share_view(updated, user_id), f"Application {payload.status} successfully")


@room_sharing_router.patch("/{share_id}/deactivate")
def deactivate(
    share_id: str,
    payload: Optional[DeactivatePayload] = Body(default=None),
    user: dict = Depends(get_token_payload),
    db: Database = Depends(get_db),
):
    share = get_share_or_404(db, share_id)
    if share["initiator"] != user["sub"]:
        raise HTTPException(status_code=403, detail="Only the initiator can deactivate this room sharing")
    if share["status"] != ShareStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail=f"Room sharing is already {share['status']}")

    now = datetime.utcnow()
    reason = (payload.reason if payload else None) or "Manually deactivated by initiator"
    updated = db["roomsharing"].find_one_and_update(
        {"_id": share["_id"], "status": ShareStatus.ACTIVE.value},
        {"$set": {"status": ShareStatus.CANCELLED.value, "completion_reason": reason, "completed_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=409, detail="Room sharing was modified by another request, please retry")
    logger.info(f"Room sharing {share_id} deactivated by initiator")
    return ok(serialize(updated), "Room sharing deactivated successfully")
