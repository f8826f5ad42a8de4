"""
Human-readable sequential identifiers (CBC0001 for orders, DA001 for agents).

Each sequence is a document in the "counters" collection bumped with a single
atomic $inc, so two requests can never be handed the same number.
"""
from pymongo import ReturnDocument

from database import db

ORDER_SEQUENCE = "order"
AGENT_SEQUENCE = "deliveryagent"


def next_sequence(name: str) -> int:
    counter = db["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def next_order_id() -> str:
    return "CBC" + str(next_sequence(ORDER_SEQUENCE)).zfill(4)


def next_agent_id() -> str:
    return "DA" + str(next_sequence(AGENT_SEQUENCE)).zfill(3)
