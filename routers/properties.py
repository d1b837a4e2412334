from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, get_db
from logging_config import get_logger
from schemas import Location, Property, Role
from security import require_role
from utils import ok, oid, paginate, serialize

logger = get_logger(__name__)

properties_router = APIRouter(prefix="/api/properties", tags=["properties"])


class PropertyCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=500)
    price: float = Field(..., ge=0)
    room_type: str = Field(default="single", alias="roomType")
    accommodation_type: str = Field(default="room", alias="accommodationType")
    location: Location
    total_rooms: int = Field(default=1, ge=1, alias="totalRooms")


class PropertyUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    price: Optional[float] = Field(default=None, ge=0)
    status: Optional[str] = Field(default=None, pattern="^(active|inactive)$")
    total_rooms: Optional[int] = Field(default=None, ge=0, alias="totalRooms")
    available_rooms: Optional[int] = Field(default=None, ge=0, alias="availableRooms")


def get_property_or_404(db: Database, property_id: str) -> dict:
    prop = db["property"].find_one({"_id": oid(property_id)})
    if not prop:
        raise HTTPException(status_code=404, detail="Property not found")
    return prop


@properties_router.post("", status_code=201)
def create_property(payload: PropertyCreate, owner: dict = Depends(require_role(Role.OWNER)), db: Database = Depends(get_db)):
    prop = Property(
        owner=owner["sub"],
        available_rooms=payload.total_rooms,
        **payload.model_dump(),
    )
    property_id = create_document("property", prop, database=db)
    logger.info(f"Owner {owner['sub']} listed property {property_id}")
    return ok(serialize(db["property"].find_one({"_id": oid(property_id)})), "Property created successfully")


@properties_router.get("")
def list_properties(
    city: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query = {"status": "active"}
    if city:
        query["location.city"] = {"$regex": city, "$options": "i"}
    total = db["property"].count_documents(query)
    items = db["property"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"properties": [serialize(p) for p in items], "pagination": paginate(page, limit, total)})


@properties_router.get("/my-properties")
def my_properties(owner: dict = Depends(require_role(Role.OWNER)), db: Database = Depends(get_db)):
    items = db["property"].find({"owner": owner["sub"]}).sort("created_at", DESCENDING)
    return ok({"properties": [serialize(p) for p in items]})


@properties_router.get("/{property_id}")
def get_property(property_id: str, db: Database = Depends(get_db)):
    return ok(serialize(get_property_or_404(db, property_id)))


@properties_router.put("/{property_id}")
def update_property(
    property_id: str,
    payload: PropertyUpdate,
    owner: dict = Depends(require_role(Role.OWNER)),
    db: Database = Depends(get_db),
):
    prop = get_property_or_404(db, property_id)
    if prop["owner"] != owner["sub"]:
        raise HTTPException(status_code=403, detail="You can only update your own properties")

    changes = payload.model_dump(exclude_none=True)
    total = changes.get("total_rooms", prop.get("total_rooms", 0))
    available = changes.get("available_rooms", prop.get("available_rooms", 0))
    if available > total:
        raise HTTPException(status_code=400, detail="Available rooms cannot exceed total rooms")

    changes["updated_at"] = datetime.utcnow()
    db["property"].update_one({"_id": prop["_id"]}, {"$set": changes})
    return ok(serialize(db["property"].find_one({"_id": prop["_id"]})), "Property updated successfully")
