# orderflow/app.py
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .errors import OrderflowError
from .gateway import Contact
from .legs import LegKind
from .models import (
    ActorIn,
    BatchIn,
    CallbackIn,
    CreditApplication,
    CreditApplyIn,
    DigitalPaymentIn,
    DriverIn,
    InspectionIn,
    Order,
    OrderIn,
    PaymentHandle,
    PaymentIn,
    PaymentReceipt,
    StageDoneIn,
    StageIn,
    Transaction,
    TransferBatch,
    TransitionIn,
)
from .pipeline import compute_pipeline_stats
from .services import Services, build_services
from .statuses import valid_next_statuses


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Orderflow API", version="0.1.0")
    app.state.services = services

    @app.on_event("startup")
    def startup():
        # build the store eagerly so a bad DATABASE_URL fails at boot
        get_services(app)

    @app.on_event("shutdown")
    def shutdown():
        if app.state.services is not None:
            app.state.services.close()

    @app.exception_handler(OrderflowError)
    def orderflow_error(request: Request, exc: OrderflowError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    register_routes(app)
    return app


def get_services(app: FastAPI) -> Services:
    if app.state.services is None:
        app.state.services = build_services()
    return app.state.services


def services_dep(request: Request) -> Services:
    return get_services(request.app)


def register_routes(app: FastAPI) -> None:
    # Health

    @app.get("/health/store")
    def health_store(svc: Services = Depends(services_dep)):
        try:
            return {"store_ok": svc.store.ping()}
        except Exception as e:
            return JSONResponse(status_code=500, content={"store_ok": False, "error": str(e)})

    # Orders

    @app.post("/orders", response_model=Order, status_code=201)
    def create_order(body: OrderIn, svc: Services = Depends(services_dep)):
        return svc.lifecycle.create_order(
            body.customer_id, body.branch_id, [g.model_dump() for g in body.garments], body.actor,
            estimated_completion=body.estimated_completion, express=body.express,
        )

    @app.get("/orders/{order_id}", response_model=Order)
    def get_order(order_id: str, svc: Services = Depends(services_dep)):
        return svc.lifecycle.get(order_id)

    @app.get("/orders/{order_id}/next-statuses")
    def next_statuses(order_id: str, svc: Services = Depends(services_dep)):
        order = svc.lifecycle.get(order_id)
        return [s.value for s in valid_next_statuses(order.status)]

    @app.post("/orders/{order_id}/transition", response_model=Order)
    def transition_order(order_id: str, body: TransitionIn, svc: Services = Depends(services_dep)):
        return svc.lifecycle.transition(order_id, body.target_status, body.actor, body.note)

    # Workstation

    @app.post("/orders/{order_id}/route", response_model=Order)
    def route_order(order_id: str, body: ActorIn, svc: Services = Depends(services_dep)):
        return svc.workstation.route_order(order_id, body.actor)

    @app.post("/orders/{order_id}/stage", response_model=Order)
    def advance_stage(order_id: str, body: StageIn, svc: Services = Depends(services_dep)):
        return svc.workstation.advance_stage(order_id, body.stage, body.actor, body.staff_id)

    @app.post("/orders/{order_id}/garments/{garment_id}/inspection", response_model=Order)
    def inspect_garment(order_id: str, garment_id: str, body: InspectionIn,
                        svc: Services = Depends(services_dep)):
        return svc.workstation.complete_garment_inspection(
            order_id, garment_id, body.assessment, body.actor, body.notes
        )

    @app.post("/orders/{order_id}/garments/{garment_id}/stage", response_model=Order)
    def garment_stage_done(order_id: str, garment_id: str, body: StageDoneIn,
                           svc: Services = Depends(services_dep)):
        return svc.workstation.complete_stage_for_garment(
            order_id, garment_id, body.stage, body.staff_id, body.staff_name, body.started_at
        )

    @app.post("/orders/{order_id}/processing-complete", response_model=Order)
    def processing_complete(order_id: str, body: ActorIn, svc: Services = Depends(services_dep)):
        return svc.workstation.mark_processing_complete(order_id, body.actor)

    # Transfer batches

    @app.post("/transfers", response_model=TransferBatch, status_code=201)
    def create_batch(body: BatchIn, svc: Services = Depends(services_dep)):
        return svc.transfers.create_batch(
            body.satellite_branch_id, body.main_store_branch_id, body.order_ids, body.created_by
        )

    @app.get("/transfers/{batch_id}", response_model=TransferBatch)
    def get_batch(batch_id: str, svc: Services = Depends(services_dep)):
        return svc.transfers.get(batch_id)

    @app.get("/transfers", response_model=List[TransferBatch])
    def pending_batches(limit: int = Query(20, ge=1, le=200), svc: Services = Depends(services_dep)):
        return svc.transfers.pending(limit)

    @app.post("/transfers/{batch_id}/driver", response_model=TransferBatch)
    def assign_batch_driver(batch_id: str, body: DriverIn, svc: Services = Depends(services_dep)):
        return svc.transfers.assign_driver(batch_id, body.driver_id)

    @app.post("/transfers/{batch_id}/dispatch", response_model=TransferBatch)
    def dispatch_batch(batch_id: str, svc: Services = Depends(services_dep)):
        return svc.transfers.dispatch(batch_id)

    @app.post("/transfers/{batch_id}/receive", response_model=TransferBatch)
    def receive_batch(batch_id: str, body: ActorIn, svc: Services = Depends(services_dep)):
        return svc.transfers.receive(batch_id, body.actor)

    # Pickup / delivery legs

    @app.post("/orders/{order_id}/legs/{leg}/driver", response_model=Order)
    def assign_leg_driver(order_id: str, leg: LegKind, body: DriverIn, svc: Services = Depends(services_dep)):
        return svc.legs.assign_driver(order_id, leg, body.driver_id)

    @app.post("/orders/{order_id}/legs/{leg}/complete", response_model=Order)
    def complete_leg(order_id: str, leg: LegKind, svc: Services = Depends(services_dep)):
        return svc.legs.complete_leg(order_id, leg)

    # Payments

    @app.post("/orders/{order_id}/payments", response_model=PaymentReceipt, status_code=201)
    def record_payment(order_id: str, body: PaymentIn, svc: Services = Depends(services_dep)):
        return svc.payments.record_payment(
            order_id, body.amount, body.method, body.processed_by, body.amount_tendered
        )

    @app.post("/orders/{order_id}/payments/digital", response_model=PaymentHandle, status_code=202)
    def initiate_payment(order_id: str, body: DigitalPaymentIn, svc: Services = Depends(services_dep)):
        return svc.payments.initiate_payment(
            order_id, body.amount, body.method, Contact(body.phone, body.email), body.processed_by
        )

    @app.get("/orders/{order_id}/payments", response_model=List[Transaction])
    def order_transactions(order_id: str, svc: Services = Depends(services_dep)):
        svc.repo.get_order(order_id)
        return svc.payments.transactions_for_order(order_id)

    @app.post("/orders/{order_id}/credit", response_model=CreditApplication)
    def apply_credit(order_id: str, body: CreditApplyIn, svc: Services = Depends(services_dep)):
        return svc.payments.apply_customer_credit(order_id, body.processed_by, body.amount)

    @app.get("/customers/{customer_id}/credit")
    def credit_balance(customer_id: str, svc: Services = Depends(services_dep)):
        return {"customer_id": customer_id, "balance": svc.payments.credit_balance(customer_id),
                "currency": svc.settings.currency}

    @app.get("/payments/{transaction_id}/status")
    def payment_status(transaction_id: str, svc: Services = Depends(services_dep)):
        txn = svc.payments.confirm_payment(transaction_id)
        return {"transaction_id": txn.transaction_id, "status": txn.status.value}

    @app.post("/payments/callback")
    def payment_callback(body: CallbackIn, svc: Services = Depends(services_dep)):
        txn = svc.payments.handle_gateway_callback(body.order_tracking_id)
        return {"transaction_id": txn.transaction_id, "status": txn.status.value}

    # Pipeline

    @app.get("/pipeline/stats")
    def pipeline_stats(branch_id: Optional[str] = None, svc: Services = Depends(services_dep)):
        orders = svc.repo.find_orders(branch_id=branch_id) if branch_id else svc.repo.find_orders()
        stats = compute_pipeline_stats(orders, svc.clock(), svc.settings.bottleneck_minutes)
        return stats.to_dict()


app = create_app()
