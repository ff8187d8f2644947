import logging
from typing import Optional

from fastapi import FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gateway.costs import FeatureCostResolver
from gateway.identity import IdentityVerifier, require_admin
from gateway.metering import MeteringGateway
from gateway.provider import GenerationProvider, GroqProvider
from gateway.settings import Settings
from grants.engine import GrantEngine
from grants.payments import PaymentWebhookHandler

from .errors import LedgerServiceError
from .models import (
    Account, AccountBalance, AdminGrantRequest, AppConfig, AuditRecord,
    FeatureCostUpdate, FeatureToggleUpdate, GenerateRequest, GenerateResponse,
    GrantResponse, LedgerHistoryResponse, MilestoneClaimRequest,
    PackageGrantRequest, ReferralClaimRequest, RefundClaimRequest, SignInRequest,
    SupportRefundRequest,
)
from .service import LedgerService
from .store import InMemoryStorage

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    provider: Optional[GenerationProvider] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    storage = storage or InMemoryStorage()
    provider = provider or GroqProvider(
        settings.groq_api_key,
        default_model=settings.groq_model,
        timeout=settings.provider_timeout_seconds,
    )

    verifier = IdentityVerifier(settings.require_jwt_secret())
    ledger_service = LedgerService(storage, starting_credits=settings.starting_credits)
    resolver = FeatureCostResolver(storage, default_cost=settings.default_feature_cost)
    gateway = MeteringGateway(
        verifier=verifier,
        resolver=resolver,
        service=ledger_service,
        provider=provider,
        mode=settings.deployment_mode,
    )
    grant_engine = GrantEngine(ledger_service)
    webhook = PaymentWebhookHandler(grant_engine, settings.payment_webhook_secret)

    app = FastAPI(
        title="Credit Ledger API",
        description="Credit-metered generation gateway with an append-only ledger and exactly-once grants",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.ledger_service = ledger_service
    app.state.gateway = gateway
    app.state.grant_engine = grant_engine

    @app.exception_handler(LedgerServiceError)
    def handle_ledger_error(request: Request, exc: LedgerServiceError) -> JSONResponse:
        body = exc.to_dict()
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.kind, request.url.path, exc)
            body["message"] = "Internal Server Error"
            if settings.expose_error_detail:
                body["detail"] = str(exc)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(Exception)
    def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        body = {"error": "INTERNAL", "message": "Internal Server Error"}
        if settings.expose_error_detail:
            body["detail"] = str(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "credit-ledger", "mode": settings.deployment_mode.value}

    @app.post("/accounts/me", response_model=Account, tags=["Accounts"])
    def sign_in(request: SignInRequest, authorization: Optional[str] = Header(default=None)) -> Account:
        identity = verifier.verify_header(authorization)
        return ledger_service.get_or_create_account(
            identity.account_id,
            name=request.name or identity.name,
            email=request.email or identity.email,
            is_admin=identity.is_admin,
        )

    @app.get("/accounts/me", response_model=AccountBalance, tags=["Accounts"])
    def get_balance(authorization: Optional[str] = Header(default=None)) -> AccountBalance:
        identity = verifier.verify_header(authorization)
        return ledger_service.get_balance(identity.account_id)

    @app.get("/accounts/me/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
    def get_ledger(limit: int = 50, offset: int = 0, authorization: Optional[str] = Header(default=None)) -> LedgerHistoryResponse:
        identity = verifier.verify_header(authorization)
        return ledger_service.get_ledger_history(identity.account_id, limit, offset)

    @app.get("/config/costs", tags=["Config"])
    def get_feature_costs() -> dict:
        config = storage.get_app_config()
        return {"feature_costs": config.feature_costs, "default_cost": resolver.default_cost}

    @app.post("/generate", response_model=GenerateResponse, tags=["Gateway"])
    def generate(request: GenerateRequest, authorization: Optional[str] = Header(default=None)) -> GenerateResponse:
        return gateway.handle(authorization, request)

    @app.post("/claims/daily", response_model=GrantResponse, tags=["Claims"])
    def claim_daily(authorization: Optional[str] = Header(default=None)) -> GrantResponse:
        return grant_engine.daily_claim(verifier.verify_header(authorization))

    @app.post("/claims/referral", response_model=GrantResponse, tags=["Claims"])
    def claim_referral(request: ReferralClaimRequest, authorization: Optional[str] = Header(default=None)) -> GrantResponse:
        return grant_engine.referral_claim(verifier.verify_header(authorization), request.code)

    @app.post("/claims/milestone", response_model=GrantResponse, tags=["Claims"])
    def claim_milestone(request: MilestoneClaimRequest, authorization: Optional[str] = Header(default=None)) -> GrantResponse:
        return grant_engine.milestone_claim(verifier.verify_header(authorization), request.generation_count)

    @app.post("/claims/refund", response_model=GrantResponse, tags=["Claims"])
    def claim_refund(request: RefundClaimRequest, authorization: Optional[str] = Header(default=None)) -> GrantResponse:
        return grant_engine.refund_claim(verifier.verify_header(authorization), request.cost, request.reason)

    @app.post("/admin/refunds", response_model=GrantResponse, tags=["Admin"])
    def support_refund(request: SupportRefundRequest, authorization: Optional[str] = Header(default=None)) -> GrantResponse:
        admin = verifier.verify_header(authorization)
        return grant_engine.support_refund(admin, request.target_account_id, request.amount, request.reference)

    @app.post("/admin/grants", response_model=GrantResponse, tags=["Admin"])
    def admin_grant(request: AdminGrantRequest, authorization: Optional[str] = Header(default=None)) -> GrantResponse:
        admin = verifier.verify_header(authorization)
        return grant_engine.admin_grant(admin, request.target_account_id, request.amount, request.reason)

    @app.post("/admin/packages", response_model=GrantResponse, tags=["Admin"])
    def package_grant(request: PackageGrantRequest, authorization: Optional[str] = Header(default=None)) -> GrantResponse:
        admin = verifier.verify_header(authorization)
        return grant_engine.package_grant(admin, request.target_account_id, request.pack_name)

    @app.put("/admin/config/costs/{feature}", response_model=AppConfig, tags=["Admin"])
    def set_feature_cost(feature: str, request: FeatureCostUpdate, authorization: Optional[str] = Header(default=None)) -> AppConfig:
        return resolver.set_cost(verifier.verify_header(authorization), feature, request.cost)

    @app.put("/admin/config/toggles/{feature}", response_model=AppConfig, tags=["Admin"])
    def set_feature_toggle(feature: str, request: FeatureToggleUpdate, authorization: Optional[str] = Header(default=None)) -> AppConfig:
        return resolver.set_enabled(verifier.verify_header(authorization), feature, request.enabled)

    @app.get("/admin/audit", response_model=list[AuditRecord], tags=["Admin"])
    def list_audit(authorization: Optional[str] = Header(default=None)) -> list[AuditRecord]:
        require_admin(verifier.verify_header(authorization))
        return storage.list_audit_records()

    @app.post("/webhooks/payments", tags=["Payments"])
    async def payment_webhook(request: Request, x_razorpay_signature: Optional[str] = Header(default=None)) -> dict:
        raw_body = await request.body()
        return webhook.handle(raw_body, x_razorpay_signature)

    return app


if __name__ == "__main__":
    import uvicorn
    from gateway.settings import configure_logging

    app_settings = Settings.from_env()
    configure_logging(app_settings.log_level)
    uvicorn.run(create_app(app_settings), host="0.0.0.0", port=8000)
