import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from assignments import AssignmentPriority, assign_order, list_unassigned_orders
from auth import Capability, require
from database import db, create_document, serialize_doc, utcnow
from schemas import ASSIGNMENT_STATUSES, OPEN_ASSIGNMENT_STATUSES, DeliveryAgent as DeliveryAgentSchema
from sequences import next_agent_id

logger = logging.getLogger("farmmarket.agents")

router = APIRouter(prefix="/api/delivery-agents", tags=["delivery-agents"])

dispatcher = require(Capability.MANAGE_DELIVERY, "Admin access required")

AgentStatus = Literal["Active", "Inactive", "Busy"]


class AgentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    email: EmailStr
    location: str = Field(..., min_length=1)
    status: AgentStatus = "Active"


class AgentAssignRequest(BaseModel):
    order_id: str
    agent_id: str
    priority: AssignmentPriority = "Normal"
    notes: str = ""


class AgentUpdateRequest(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[EmailStr] = None
    location: Optional[str] = None
    status: Optional[AgentStatus] = None
    rating: Optional[float] = Field(None, ge=0, le=5)


def _get_agent(agent_id: str) -> dict:
    agent = db["deliveryagent"].find_one({"agent_id": agent_id})
    if not agent:
        raise HTTPException(status_code=404, detail="Delivery agent not found.")
    return agent


@router.post("", status_code=201)
def create_delivery_agent(req: AgentCreateRequest, admin=Depends(dispatcher)):
    if db["deliveryagent"].find_one({"email": req.email}):
        raise HTTPException(status_code=409, detail="Agent with this email already exists.")
    agent = DeliveryAgentSchema(
        agent_id=next_agent_id(),
        name=req.name,
        phone_number=req.phone_number,
        email=req.email,
        location=req.location,
        status=req.status,
    )
    try:
        create_document("deliveryagent", agent)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Agent with this email already exists.")
    created = db["deliveryagent"].find_one({"agent_id": agent.agent_id})
    logger.info("delivery agent %s created by=%s", agent.agent_id, admin["_id"])
    return {"success": True, "message": "Delivery agent created successfully", "data": serialize_doc(created)}


@router.get("")
def get_delivery_agents(status: Optional[AgentStatus] = None, admin=Depends(dispatcher)):
    query = {"status": status} if status else {}
    agents = [serialize_doc(a) for a in db["deliveryagent"].find(query).sort("created_at", DESCENDING)]
    return {"success": True, "count": len(agents), "data": agents}


@router.get("/orders/unassigned")
def agent_unassigned_orders(admin=Depends(dispatcher)):
    data = list_unassigned_orders()
    return {"success": True, "count": len(data), "data": data}


@router.post("/orders/assign", status_code=201)
def assign_order_to_agent(req: AgentAssignRequest, admin=Depends(dispatcher)):
    data = assign_order(req.order_id, req.agent_id, req.priority, req.notes, str(admin["_id"]))
    return {"success": True, "message": f"Order {req.order_id} assigned to {req.agent_id}", "data": data}


@router.get("/stats/{agent_id}")
def agent_statistics(agent_id: str, admin=Depends(dispatcher)):
    agent = _get_agent(agent_id)
    by_status = {s: 0 for s in ASSIGNMENT_STATUSES}
    durations = []
    for a in db["orderassignment"].find({"delivery_agent_id": agent_id}):
        by_status[a["status"]] = by_status.get(a["status"], 0) + 1
        if a["status"] == "Completed" and a.get("completed_date") and a.get("assigned_date"):
            durations.append((a["completed_date"] - a["assigned_date"]).total_seconds() / 60)
    total = sum(by_status.values())
    return {
        "success": True,
        "data": {
            "agent_id": agent_id,
            "name": agent["name"],
            "status": agent["status"],
            "total_assignments": total,
            "open_assignments": sum(by_status[s] for s in OPEN_ASSIGNMENT_STATUSES),
            "by_status": by_status,
            "completed_deliveries": agent.get("completed_deliveries", 0),
            "completion_rate": round(by_status["Completed"] / total * 100, 2) if total else 0,
            "average_delivery_minutes": round(sum(durations) / len(durations)) if durations else None,
            "rating": agent.get("rating", 0),
        },
    }


@router.get("/{agent_id}")
def get_delivery_agent(agent_id: str, admin=Depends(dispatcher)):
    return {"success": True, "data": serialize_doc(_get_agent(agent_id))}


@router.put("/{agent_id}")
def update_delivery_agent(agent_id: str, req: AgentUpdateRequest, admin=Depends(dispatcher)):
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if "email" in updates and db["deliveryagent"].find_one({"email": updates["email"], "agent_id": {"$ne": agent_id}}):
        raise HTTPException(status_code=409, detail="Another agent with this email already exists.")
    updates["updated_at"] = utcnow()
    agent = db["deliveryagent"].find_one_and_update(
        {"agent_id": agent_id}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    if not agent:
        raise HTTPException(status_code=404, detail="Delivery agent not found.")
    logger.info("delivery agent %s updated fields=%s", agent_id, sorted(updates))
    return {"success": True, "message": "Delivery agent updated successfully", "data": serialize_doc(agent)}


@router.delete("/{agent_id}")
def delete_delivery_agent(agent_id: str, admin=Depends(dispatcher)):
    agent = _get_agent(agent_id)
    open_count = db["orderassignment"].count_documents(
        {"delivery_agent_id": agent_id, "status": {"$in": list(OPEN_ASSIGNMENT_STATUSES)}}
    )
    if open_count:
        raise HTTPException(
            status_code=400,
            detail=f"Delivery agent {agent_id} still has {open_count} open assignment(s). Reassign or close them first.",
        )
    db["deliveryagent"].delete_one({"_id": agent["_id"]})
    logger.info("delivery agent %s deleted by=%s", agent_id, admin["_id"])
    return {"success": True, "message": "Delivery agent deleted successfully."}
