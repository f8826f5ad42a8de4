import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import agents
import assignments
import cart
import orders
import payhere
import payments
import products
import users
import utility
from config import PAYHERE_MODE, PORT
from database import db, ensure_indexes, utcnow

logger = logging.getLogger("farmmarket.app")

# App init
app = FastAPI(title="Farm Market API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (users, products, cart, orders, assignments, agents, payments, utility):
    app.include_router(module.router)


# Error envelope
@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Something broke!", "error": str(exc)})


# Routes
@app.get("/")
def root():
    return {"message": "Farm Market API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    response["database_url"] = "Set" if os.getenv("DATABASE_URL") else "Not Set"
    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.warning("database check failed: %s", e)
        response["database"] = f"Connected but Error: {str(e)[:50]}"
    return response


@app.get("/api/health")
def health():
    return {
        "status": "OK",
        "timestamp": utcnow().isoformat(),
        "database": "connected" if db is not None else "unavailable",
        "payhere": {"mode": PAYHERE_MODE, "configured": payhere.is_configured()},
    }


@app.on_event("startup")
def prepare_database():
    payhere.validate_config()
    if db is None:
        return
    try:
        ensure_indexes()
    except PyMongoError:
        logger.exception("could not ensure MongoDB indexes")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
