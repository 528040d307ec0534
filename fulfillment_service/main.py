# main.py
import logging
import uuid
from typing import List, Optional

from databases import Database
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from fulfillment_service.database import database, init_db
from fulfillment_service.errors import FulfillmentError, NotFound
from fulfillment_service.lattice import DeliveryStatus, OrderStatus
from fulfillment_service.payments import PaymentGateway
from fulfillment_service.schemas import (
    CaptureRequest, Delivery, DeliveryStatusUpdate, DisputeRequest, Driver, DriverCreate, LocationPoint, Order,
    OrderCreate, OrderPage, OrderStatusUpdate, RefundRequest,
)
from fulfillment_service.service import FulfillmentService
from fulfillment_service.store import fetch_delivery_for_order, fetch_driver
from fulfillment_service.ws_manager import ConnectionManager
from shared.auth import (
    CUSTOMER, DRIVER, STORE_ROLES, decode_token, get_current_user, is_admin, is_store_member, require_roles,
)

logger = logging.getLogger("fulfillment-service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)

# Order moves a store member may request. Customers may only cancel.
STORE_ORDER_TARGETS = {
    OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED,
}

router = APIRouter()


def get_service(request: Request) -> FulfillmentService:
    return request.app.state.service


# ------------------------- ACCESS HELPERS -------------------------
def can_see_order(user: dict, order: Order, delivery: Optional[Delivery] = None) -> bool:
    if is_admin(user) or is_store_member(user, order.store_id):
        return True
    if user["role"] == CUSTOMER and user["id"] == order.customer_id:
        return True
    return user["role"] == DRIVER and delivery is not None and delivery.driver_id == user["id"]


def ensure_order_access(user: dict, order: Order, delivery: Optional[Delivery] = None):
    if not can_see_order(user, order, delivery):
        raise HTTPException(status_code=403, detail="Not allowed to access this order")


async def scope_allowed(service: FulfillmentService, user: dict, scope: str) -> bool:
    kind, _, entity_id = scope.partition(":")
    if not entity_id:
        return False
    if is_admin(user):
        return True
    if kind == "driver":
        return user["role"] == DRIVER and user["id"] == entity_id
    if kind == "customer":
        return user["role"] == CUSTOMER and user["id"] == entity_id
    if kind == "store":
        return is_store_member(user, entity_id)
    try:
        if kind == "order":
            order = await service.orders.get(entity_id)
            return can_see_order(user, order, await fetch_delivery_for_order(service.db, order.id))
        if kind == "delivery":
            delivery = await service.deliveries.get(entity_id)
            order = await service.orders.get(delivery.order_id)
            return can_see_order(user, order, delivery)
    except NotFound:
        return False
    return False


def default_scopes(user: dict) -> List[str]:
    if user["role"] == DRIVER:
        return [f"driver:{user['id']}"]
    if user["role"] == CUSTOMER:
        return [f"customer:{user['id']}"]
    return [f"store:{store_id}" for store_id in user["store_ids"]]


# ------------------------- ORDERS -------------------------
@router.post("/orders", response_model=Order, status_code=201)
async def create_order(body: OrderCreate, user=Depends(require_roles(CUSTOMER)),
                       service: FulfillmentService = Depends(get_service)):
    if not is_admin(user) and body.customer_id != user["id"]:
        raise HTTPException(status_code=403, detail="Customers can only order for themselves")
    return await service.orders.create(body, trace_id=user["trace_id"])


def order_page(items: List[Order], total: int, page: int, limit: int) -> OrderPage:
    return OrderPage(items=items, page=page, limit=limit, total=total, has_next=page * limit < total)


@router.get("/orders/my", response_model=OrderPage)
async def my_orders(status: Optional[OrderStatus] = None, page: int = Query(1, ge=1),
                    limit: int = Query(20, ge=1, le=100), user=Depends(require_roles(CUSTOMER)),
                    service: FulfillmentService = Depends(get_service)):
    items, total = await service.orders.list_orders(customer_id=user["id"], status=status, page=page, limit=limit)
    return order_page(items, total, page, limit)


@router.get("/orders/store/{store_id}", response_model=OrderPage)
async def store_orders(store_id: str, status: Optional[OrderStatus] = None, page: int = Query(1, ge=1),
                       limit: int = Query(20, ge=1, le=100), user=Depends(get_current_user),
                       service: FulfillmentService = Depends(get_service)):
    if not (is_admin(user) or is_store_member(user, store_id)):
        raise HTTPException(status_code=403, detail="Not a member of this store")
    items, total = await service.orders.list_orders(store_id=store_id, status=status, page=page, limit=limit)
    return order_page(items, total, page, limit)


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, user=Depends(get_current_user), service: FulfillmentService = Depends(get_service)):
    order = await service.orders.get(order_id)
    ensure_order_access(user, order, await fetch_delivery_for_order(service.db, order_id))
    return order


@router.put("/orders/{order_id}/status", response_model=Order)
async def update_order_status(order_id: str, body: OrderStatusUpdate, user=Depends(get_current_user),
                              service: FulfillmentService = Depends(get_service)):
    order = await service.orders.get(order_id)
    allowed = (
        is_admin(user)
        or (is_store_member(user, order.store_id) and body.target_status in STORE_ORDER_TARGETS)
        or (user["role"] == CUSTOMER and user["id"] == order.customer_id
            and body.target_status == OrderStatus.CANCELLED)
    )
    if not allowed:
        raise HTTPException(status_code=403, detail=f"Not allowed to move this order to {body.target_status.value}")
    return await service.orders.transition(
        order_id, body.target_status, body.expected_version, body.reason, trace_id=user["trace_id"],
    )


@router.post("/orders/{order_id}/dispute", response_model=Order)
async def open_dispute(order_id: str, body: DisputeRequest, user=Depends(require_roles()),
                       service: FulfillmentService = Depends(get_service)):
    return await service.orders.open_dispute(order_id, body.expected_version, body.reason, trace_id=user["trace_id"])


# ------------------------- PAYMENTS -------------------------
@router.post("/payments/capture", response_model=Order)
async def capture_payment(body: CaptureRequest, user=Depends(get_current_user),
                          service: FulfillmentService = Depends(get_service)):
    order = await service.orders.get(body.order_id)
    ensure_order_access(user, order)
    return await service.payments.confirm_capture(
        body.order_id, body.gateway_payment_id, body.amount, body.currency, trace_id=user["trace_id"],
    )


@router.post("/payments/refund", response_model=Order)
async def refund_payment(body: RefundRequest, user=Depends(require_roles(*STORE_ROLES)),
                         service: FulfillmentService = Depends(get_service)):
    order = await service.orders.get(body.order_id)
    if not is_admin(user) and not is_store_member(user, order.store_id):
        raise HTTPException(status_code=403, detail="Not allowed to refund this order")
    return await service.payments.refund(body.order_id, body.amount, body.reason, trace_id=user["trace_id"])


@router.post("/payments/webhook")
async def payment_webhook(request: Request, service: FulfillmentService = Depends(get_service)):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    payload = await request.body()
    return await service.payments.handle_webhook(payload, request.headers.get("stripe-signature"), trace_id)


# ------------------------- DELIVERIES -------------------------
@router.get("/deliveries/available")
async def available_deliveries(radius_km: Optional[float] = Query(None, gt=0), user=Depends(require_roles(DRIVER)),
                               service: FulfillmentService = Depends(get_service)):
    return await service.dispatch.available_for(user["id"], radius_km)


@router.get("/deliveries/my", response_model=List[Delivery])
async def my_deliveries(status: Optional[DeliveryStatus] = None, user=Depends(require_roles(DRIVER)),
                        service: FulfillmentService = Depends(get_service)):
    return await service.deliveries.list_for_driver(user["id"], status.value if status else None)


@router.put("/deliveries/location")
async def report_location(point: LocationPoint, user=Depends(require_roles(DRIVER)),
                          service: FulfillmentService = Depends(get_service)):
    location = service.tracker.report_location(user["id"], point)
    return {"accepted": True, "flags": list(location.flags)}


@router.post("/deliveries/toggle-availability", response_model=Driver)
async def toggle_availability(is_available: Optional[bool] = Body(None, embed=True),
                              user=Depends(require_roles(DRIVER)), service: FulfillmentService = Depends(get_service)):
    return await service.set_availability(user["id"], is_available)


@router.get("/deliveries/{delivery_id}")
async def get_delivery(delivery_id: str, user=Depends(get_current_user),
                       service: FulfillmentService = Depends(get_service)):
    delivery = await service.deliveries.get(delivery_id, with_points=True)
    order = await service.orders.get(delivery.order_id)
    ensure_order_access(user, order, delivery)
    return {"delivery": delivery, "eta": await service.deliveries.estimate_eta(delivery_id)}


@router.post("/deliveries/{delivery_id}/accept", response_model=Delivery)
async def accept_delivery(delivery_id: str, user=Depends(require_roles(DRIVER)),
                          service: FulfillmentService = Depends(get_service)):
    return await service.dispatch.accept(delivery_id, user["id"], trace_id=user["trace_id"])


@router.post("/deliveries/{delivery_id}/reject", response_model=Delivery)
async def reject_delivery(delivery_id: str, user=Depends(require_roles(DRIVER)),
                          service: FulfillmentService = Depends(get_service)):
    return await service.dispatch.reject(delivery_id, user["id"], trace_id=user["trace_id"])


@router.put("/deliveries/{delivery_id}/status", response_model=Delivery)
async def update_delivery_status(delivery_id: str, body: DeliveryStatusUpdate, user=Depends(require_roles(DRIVER)),
                                 service: FulfillmentService = Depends(get_service)):
    trace_id = user["trace_id"]
    if body.status == DeliveryStatus.CANCELLED:
        if not is_admin(user):
            raise HTTPException(status_code=403, detail="Only admins can cancel a delivery")
        return await service.deliveries.cancel(delivery_id, body.reason, trace_id=trace_id)

    if body.location is not None:
        service.tracker.report_location(user["id"], body.location)
    return await service.deliveries.driver_action(
        delivery_id, user["id"], body.status, reason=body.reason, trace_id=trace_id,
    )


# ------------------------- DRIVERS -------------------------
@router.post("/drivers", response_model=Driver, status_code=201)
async def register_driver(body: DriverCreate, user=Depends(require_roles()),
                          service: FulfillmentService = Depends(get_service)):
    return await service.register_driver(body)


@router.get("/drivers/{driver_id}/location")
async def driver_location(driver_id: str, user=Depends(require_roles(*STORE_ROLES)),
                          service: FulfillmentService = Depends(get_service)):
    location = service.tracker.get_last_known(driver_id)
    if location is not None:
        return location.as_dict()

    driver = await fetch_driver(service.db, driver_id)
    if driver.current_location is None:
        raise HTTPException(status_code=404, detail="No known location for this driver")
    return {
        "driver_id": driver_id,
        "lat": driver.current_location.lat,
        "lng": driver.current_location.lng,
        "timestamp": driver.location_updated_at.isoformat() if driver.location_updated_at else None,
        "flags": [],
    }


# ------------------------- REALTIME -------------------------
@router.websocket("/ws/events")
async def events_ws(websocket: WebSocket, token: Optional[str] = None, scope: List[str] = Query([])):
    service: FulfillmentService = websocket.app.state.service
    user = decode_token(token)
    if not user["id"] or not user["role"]:
        await websocket.close(code=1008)
        return

    scopes = [s for raw in scope for s in raw.split(",") if s] or default_scopes(user)
    for requested in scopes:
        if not await scope_allowed(service, user, requested):
            logger.warning(f"[WS] {user['role']} {user['id']} denied scope {requested}")
            await websocket.close(code=1008)
            return

    manager: ConnectionManager = websocket.app.state.ws_manager
    await manager.connect(websocket, scopes)
    await manager.serve(websocket)


# ------------------------- HEALTH / METRICS -------------------------
@router.get("/health")
async def health(request: Request):
    db: Database = request.app.state.service.db
    return {"service": "fulfillment-service", "status": "healthy" if db.is_connected else "degraded"}


@router.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ------------------------- APP -------------------------
def create_app(db: Database = database, gateway: Optional[PaymentGateway] = None, init_schema: bool = True,
               **options) -> FastAPI:
    app = FastAPI(title="Fulfillment Service", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    service = FulfillmentService(db, gateway=gateway, **options)
    app.state.service = service
    app.state.ws_manager = ConnectionManager(service.broadcaster)
    app.include_router(router)

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        if exc.status_code >= 409:
            logger.warning(f"[{exc.code}] {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.on_event("startup")
    async def startup():
        await db.connect()
        if init_schema:
            init_db(str(db.url))
        logger.info("📦 Fulfillment DB connected.")
        await service.start()

    @app.on_event("shutdown")
    async def shutdown():
        await service.stop()
        await db.disconnect()

    return app


app = create_app()
