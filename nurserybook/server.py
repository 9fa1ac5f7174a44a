from __future__ import annotations
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.responses import ORJSONResponse

import redis.asyncio as redis

from .config import Settings, load_settings
from .errors import NurseryError, NotFound, Unauthorized, ValidationError
from .gateway import MockGateway, new_gateway
from .infra.sql import GatedAsyncSession, create_schema, make_async_engine
from .infra.timings import aggregates, timeit
from .logging_setup import setup_logging
from .model import bookings, centers, inventory, payments
from .model import paymentintent
from .model.orm import Base

log = logging.getLogger(__name__)

ROLE_FARMER = "farmer"
ROLE_ADMIN = "admin"
ROLE_FIELD_WORKER = "field_worker"
STAFF_ROLES = (ROLE_ADMIN, ROLE_FIELD_WORKER)


# ----------------------------
# Caller identity (forwarded by the auth gateway)
# ----------------------------
@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    if not x_user_id or not x_user_role:
        raise Unauthorized("missing caller identity")
    return Actor(user_id=x_user_id, role=x_user_role.strip().lower())


def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_admin:
        raise Unauthorized("admin only")
    return actor


def require_staff(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_staff:
        raise Unauthorized("admin or staff only")
    return actor


def ensure_owner_or_staff(actor: Actor, booking: dict) -> None:
    if actor.is_staff:
        return
    if booking["farmer_id"] != actor.user_id:
        raise Unauthorized("not allowed")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(
        title="Nursery Booking",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.pool = settings.pool

    # ---
    # dependencies
    # ---
    async def gated_db(request: Request) -> GatedAsyncSession:
        async with request.app.state.SessionAsync() as session:
            yield GatedAsyncSession(session=session,
                                    gated=request.app.state.gated)

    async def intents(request: Request):
        st = request.app.state
        if settings.intent_backend == "pg":
            async with st.SessionAsync() as session:
                yield paymentintent.new_store(
                    backend="pg", db=session, gated=st.gated,
                    ttl_seconds=settings.intent_ttl_seconds,
                )
        else:
            yield paymentintent.new_store(
                backend="redis", r=st.redis,
                ttl_seconds=settings.intent_ttl_seconds,
            )

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        setup_logging(settings.log_level)
        log.info("Nursery booking service starting up")
        log.info("   - Database:       %s",
                 settings.database_url.split("@")[-1])
        log.info("   - Intent backend: %s", settings.intent_backend)
        log.info("   - Gateway:        %s", settings.payment_gateway)
        log.info("   - Varieties:      %d", len(settings.pool))

    @app.on_event("startup")
    async def _db_init():
        engine, SessionAsync, gated = make_async_engine(
            settings.database_url
        )
        app.state.engine = engine
        app.state.SessionAsync = SessionAsync
        app.state.gated = gated
        await create_schema(engine, Base.metadata)
        if settings.intent_backend == "pg":
            async with engine.begin() as conn:
                await paymentintent.create_schema(conn)

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if settings.intent_backend != "pg":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _gateway_start():
        app.state.gateway = new_gateway(
            settings.payment_gateway,
            settings.gateway_key_id,
            settings.gateway_key_secret,
            settings.gateway_base_url,
        )

    @app.on_event("startup")
    async def _sweeper_start():
        app.state.sweeper = None
        if settings.expiry_sweep_seconds > 0:
            app.state.sweeper = asyncio.create_task(
                _sweep_forever(app, settings.expiry_sweep_seconds)
            )

    @app.on_event("shutdown")
    async def _sweeper_stop():
        task = getattr(app.state, "sweeper", None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            app.state.sweeper = None

    @app.on_event("shutdown")
    async def _gateway_stop():
        gw = getattr(app.state, "gateway", None)
        if gw is not None:
            await gw.aclose()

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()

    @app.exception_handler(NurseryError)
    async def _nursery_error(request: Request, exc: NurseryError):
        return ORJSONResponse(status_code=exc.status_code,
                              content=exc.to_dict())

    # ----------------------------
    # Varieties & centers
    # ----------------------------
    @app.get("/api/varieties")
    async def list_varieties(request: Request):
        return {"ok": True,
                "data": [v.to_dict() for v in request.app.state.pool]}

    @app.get("/api/centers")
    async def list_centers(db: GatedAsyncSession = Depends(gated_db)):
        return {"ok": True, "data": await centers.list_centers(db)}

    @app.post("/api/centers/bulk", status_code=201)
    async def upsert_centers(
        payload: List[Dict[str, Any]] = Body(...),
        actor: Actor = Depends(require_admin),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        return {"ok": True, "data": await centers.upsert_centers(db, payload)}

    @app.get("/api/centers/{center_id}/varieties")
    async def list_variety_assignment(
        center_id: str, request: Request,
        db: GatedAsyncSession = Depends(gated_db),
    ):
        data = await centers.variety_assignment(
            db, request.app.state.pool, center_id
        )
        return {"ok": True, "data": data}

    # ----------------------------
    # Plants
    # ----------------------------
    @app.get("/api/plants")
    async def list_plants(center_id: Optional[str] = None,
                          db: GatedAsyncSession = Depends(gated_db)):
        return {"ok": True,
                "data": await inventory.list_plants(db, center_id)}

    @app.get("/api/plants/{plant_id}")
    async def get_plant(plant_id: str,
                        db: GatedAsyncSession = Depends(gated_db)):
        return {"ok": True, "data": await inventory.get_plant(db, plant_id)}

    @app.post("/api/plants", status_code=201)
    async def create_plant(
        payload: dict, request: Request,
        actor: Actor = Depends(require_admin),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        center_id = payload.get("center_id")
        if not center_id:
            raise ValidationError("nursery center id is required")
        async with timeit("inventory.create_plant"):
            plant = await inventory.create_plant(
                db, request.app.state.pool, center_id, payload,
                enforce_assignment=settings.enforce_variety_assignment,
            )
        return {"ok": True, "data": plant}

    @app.patch("/api/plants/{plant_id}")
    async def update_plant(
        plant_id: str, payload: dict, request: Request,
        actor: Actor = Depends(require_admin),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        plant = await inventory.update_plant(
            db, request.app.state.pool, plant_id, payload,
            enforce_assignment=settings.enforce_variety_assignment,
        )
        return {"ok": True, "data": plant}

    @app.post("/api/plants/{plant_id}/restock")
    async def restock_plant(
        plant_id: str, payload: dict,
        actor: Actor = Depends(require_admin),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        data = await inventory.restock(db, plant_id, payload.get("quantity"))
        return {"ok": True, "data": data}

    @app.delete("/api/plants/{plant_id}")
    async def delete_plant(
        plant_id: str,
        actor: Actor = Depends(require_admin),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        await inventory.deactivate_plant(db, plant_id)
        return {"ok": True, "data": {"id": plant_id}}

    # ----------------------------
    # Bookings
    # ----------------------------
    @app.post("/api/bookings", status_code=201)
    async def create_booking(
        payload: dict,
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        async with timeit("booking.create"):
            booking = await bookings.create_booking(
                db,
                farmer_id=actor.user_id,
                plant_id=payload.get("plant_id"),
                center_id=payload.get("center_id"),
                quantity=payload.get("quantity"),
                advance_percent=payload.get("advance_percent"),
                advance_floor_percent=settings.min_advance_percent,
                currency=settings.currency,
            )
        return {"ok": True, "data": booking}

    @app.get("/api/bookings/my")
    async def my_bookings(
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        return {"ok": True,
                "data": await bookings.list_bookings(db, actor.user_id)}

    @app.get("/api/bookings")
    async def all_bookings(
        limit: int = 200,
        actor: Actor = Depends(require_staff),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        return {"ok": True,
                "data": await bookings.list_bookings(db, limit=limit)}

    @app.get("/api/bookings/{booking_id}")
    async def get_booking(
        booking_id: str,
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        booking = await bookings.get_booking(db, booking_id)
        ensure_owner_or_staff(actor, booking)
        return {"ok": True, "data": booking}

    @app.post("/api/bookings/{booking_id}/advance-intent")
    async def create_advance_intent(
        booking_id: str, request: Request,
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
        store=Depends(intents),
    ):
        ensure_owner_or_staff(actor, await bookings.get_booking(db,
                                                                booking_id))
        data = await payments.create_advance_intent(
            db, store, request.app.state.gateway, booking_id
        )
        return {"ok": True, "data": data}

    @app.post("/api/bookings/{booking_id}/verify-advance")
    async def verify_advance(
        booking_id: str, payload: dict, request: Request,
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
        store=Depends(intents),
    ):
        ensure_owner_or_staff(actor, await bookings.get_booking(db,
                                                                booking_id))
        async with timeit("payment.verify_advance"):
            booking = await payments.verify_advance_payment(
                db, store, request.app.state.gateway, booking_id,
                order_id=str(payload.get("order_id") or ""),
                payment_id=str(payload.get("payment_id") or ""),
                signature=str(payload.get("signature") or ""),
            )
        return {"ok": True, "data": booking}

    @app.put("/api/bookings/{booking_id}/decision")
    async def decide_booking(
        booking_id: str, payload: dict,
        actor: Actor = Depends(require_staff),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        async with timeit("booking.decide"):
            booking = await bookings.decide_booking(
                db, booking_id,
                action=payload.get("action"),
                notes=payload.get("notes"),
                reservation_seconds=settings.reservation_seconds,
            )
        return {"ok": True, "data": booking}

    @app.post("/api/bookings/{booking_id}/cancel")
    async def cancel_booking(
        booking_id: str, request: Request,
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        ensure_owner_or_staff(actor, await bookings.get_booking(db,
                                                                booking_id))
        payload = await _optional_json(request)
        booking = await bookings.cancel_booking(
            db, booking_id, notes=payload.get("notes")
        )
        return {"ok": True, "data": booking}

    @app.post("/api/bookings/{booking_id}/balance-intent")
    async def create_balance_intent(
        booking_id: str, request: Request,
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
        store=Depends(intents),
    ):
        ensure_owner_or_staff(actor, await bookings.get_booking(db,
                                                                booking_id))
        data = await payments.create_balance_intent(
            db, store, request.app.state.gateway, booking_id
        )
        return {"ok": True, "data": data}

    @app.post("/api/bookings/{booking_id}/verify-balance")
    async def verify_balance(
        booking_id: str, payload: dict, request: Request,
        actor: Actor = Depends(current_actor),
        db: GatedAsyncSession = Depends(gated_db),
        store=Depends(intents),
    ):
        ensure_owner_or_staff(actor, await bookings.get_booking(db,
                                                                booking_id))
        booking = await payments.verify_balance_payment(
            db, store, request.app.state.gateway, booking_id,
            order_id=str(payload.get("order_id") or ""),
            payment_id=str(payload.get("payment_id") or ""),
            signature=str(payload.get("signature") or ""),
        )
        return {"ok": True, "data": booking}

    # ----------------------------
    # Admin
    # ----------------------------
    @app.get("/api/admin/pending-intents")
    async def pending_intents(
        limit: int = 100,
        actor: Actor = Depends(require_admin),
        store=Depends(intents),
    ):
        total, items = await store.get_recent_intents(limit=limit)
        return {"items": items, "limit": limit, "total": total}

    @app.post("/api/admin/expire-reservations")
    async def expire_now(
        actor: Actor = Depends(require_admin),
        db: GatedAsyncSession = Depends(gated_db),
    ):
        released = await bookings.expire_reservations(db)
        return {"ok": True, "data": {"released": released}}

    @app.get("/api/admin/timings")
    async def timings(actor: Actor = Depends(require_admin)):
        return {"items": aggregates()}

    # ----------------------------
    # MockPay: signs a payment the way the checkout widget would
    # ----------------------------
    @app.post("/mockpay/{order_id}/pay")
    async def mockpay_pay(order_id: str, request: Request):
        gw = request.app.state.gateway
        if not isinstance(gw, MockGateway):
            raise NotFound("mock gateway disabled")
        return {"ok": True, "data": gw.pay(order_id)}

    return app


async def _optional_json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except ValueError as e:
        raise ValidationError("request body is not valid JSON") from e
    return data if isinstance(data, dict) else {}


async def _sweep_forever(app: FastAPI, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            async with app.state.SessionAsync() as session:
                db = GatedAsyncSession(session=session,
                                       gated=app.state.gated)
                async with timeit("booking.expiry_sweep"):
                    await bookings.expire_reservations(db)
        except Exception:
            # keep sweeping; the next round retries the same bookings
            log.exception("reservation expiry sweep failed")


app = create_app()
