from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import InvalidStateTransitionError, LedgerError, MemberNotFoundError
from .logging_config import get_logger, setup_logging
from .models import (
    ClickRequest,
    Creator,
    CreatorRequest,
    Leaderboard,
    Member,
    MemberRequest,
    MemberStats,
    ParkedEvent,
    PaymentEvent,
    PaymentResult,
    RankMetric,
    ReconciliationReport,
    RefundEvent,
    RefundResult,
    ReviewItem,
)
from .service import CommissionProcessor
from .settings import settings

setup_logging()
logger = get_logger(__name__)

processor = CommissionProcessor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    processor.start_background()
    logger.info("api_started", app=settings.app_name, env=settings.env)
    yield
    processor.stop_background()


app = FastAPI(
    title="Commission Ledger API",
    description="Referral attribution, 10/70/20 commission splits, first-referral bonuses and leaderboards",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.app_name, "env": settings.env}


@app.post("/creators", response_model=Creator, status_code=status.HTTP_201_CREATED, tags=["Onboarding"])
def create_creator(request: CreatorRequest) -> Creator:
    return processor.register_creator(request.creator_id, request.name, request.tier_thresholds)


@app.post("/members", response_model=Member, status_code=status.HTTP_201_CREATED, tags=["Onboarding"])
def create_member(request: MemberRequest) -> Member:
    try:
        return processor.register_member(
            request.creator_id,
            request.member_id,
            user_id=request.user_id,
            username=request.username,
            referred_by=request.referred_by,
        )
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/clicks", tags=["Attribution"])
def track_click(request: ClickRequest, http_request: Request):
    if request.ip_address is None and http_request.client:
        request = request.model_copy(update={"ip_address": http_request.client.host})
    click = processor.record_click(request)
    return {"tracked": click is not None, "click_id": click.id if click else None}


@app.post("/payments", response_model=PaymentResult, tags=["Webhooks"])
def receive_payment(event: PaymentEvent) -> PaymentResult:
    return processor.process_payment_event(event)


@app.post("/refunds", response_model=RefundResult, tags=["Webhooks"])
def receive_refund(event: RefundEvent) -> RefundResult:
    try:
        return processor.process_refund_event(event)
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/members/{member_id}/stats", response_model=MemberStats, tags=["Members"])
def get_member_stats(member_id: str) -> MemberStats:
    try:
        return processor.get_member_stats(member_id)
    except MemberNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Member {member_id} not found")


@app.get("/members/{member_id}/risk", tags=["Members"])
def get_member_risk(member_id: str):
    try:
        return processor.get_risk_assessment(member_id).to_dict()
    except MemberNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Member {member_id} not found")


@app.get("/leaderboards/{scope}", response_model=Leaderboard, tags=["Leaderboards"])
def get_leaderboard(
    scope: str,
    metric: RankMetric = RankMetric.TOTAL_REFERRALS,
    limit: int = Query(10, ge=1, le=100),
) -> Leaderboard:
    return processor.get_leaderboard(scope, metric, limit)


@app.get("/review-queue", response_model=list[ReviewItem], tags=["Admin"])
def get_review_queue() -> list[ReviewItem]:
    return processor.list_review_queue()


@app.get("/parked-events", response_model=list[ParkedEvent], tags=["Admin"])
def get_parked_events() -> list[ParkedEvent]:
    return processor.list_parked_events()


@app.post("/jobs/confirm-bonuses", tags=["Jobs"])
def confirm_bonuses():
    confirmed = processor.confirm_bonuses()
    return {"confirmed": len(confirmed), "bonus_ids": [b.id for b in confirmed]}


@app.post("/jobs/pay-bonuses", tags=["Jobs"])
def pay_bonuses():
    try:
        paid = processor.pay_bonuses()
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return {"paid": len(paid), "bonus_ids": [b.id for b in paid]}


@app.post("/jobs/refresh-snapshot", tags=["Jobs"])
def refresh_snapshot():
    results = processor.refresh_snapshot()
    return {"scopes": results, "failed": [scope for scope, ok in results.items() if not ok]}


@app.post("/jobs/reconcile", response_model=ReconciliationReport, tags=["Jobs"])
def reconcile() -> ReconciliationReport:
    return processor.reconcile()


@app.post("/jobs/reset-monthly", tags=["Jobs"])
def reset_monthly():
    return {"reset": processor.reset_monthly()}


@app.post("/jobs/reprocess-parked", tags=["Jobs"])
def reprocess_parked():
    results = processor.reprocess_parked()
    return {"processed": len(results), "results": [r.model_dump(mode="json") for r in results]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
