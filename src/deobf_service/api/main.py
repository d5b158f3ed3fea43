import base64
import logging
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile

from deobf_service.config import Settings, settings
from deobf_service.errors import (
    ExternalToolTimeout,
    InsufficientBalance,
    PipelineError,
    StorageError,
    TransformError,
    ValidationError,
)
from deobf_service.ledger import TokenLedger, build_ledger
from deobf_service.pipeline import JobPipeline
from deobf_service.roles import AdminTokenRoles
from deobf_service.schemas import AdminGrantRequest, CreditBalanceResponse, DailyClaimResponse, TransformResponse
from deobf_service.transformer import ExternalTransformer

logger = logging.getLogger(__name__)


def envelope(data: dict, version: str, status: str = "ok", error: dict | None = None, latency_ms: int = 0) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"version": version, "latency_ms": latency_ms},
        "error": error,
    }


def _status_for(exc: PipelineError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, InsufficientBalance):
        return 402
    if isinstance(exc, ExternalToolTimeout):
        return 504
    if isinstance(exc, TransformError):
        return 502
    return 500


def _require_admin(x_admin_token: str | None, cfg: Settings) -> None:
    if not cfg.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    roles = AdminTokenRoles(x_admin_token, cfg.admin_api_token, granted=[cfg.gift_role_id])
    if not roles.has_role(cfg.gift_role_id):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def get_ledger(request: Request) -> TokenLedger:
    return request.app.state.ledger


def get_pipeline(request: Request) -> JobPipeline:
    return request.app.state.pipeline


def create_app(
    ledger: TokenLedger | None = None,
    transformer: ExternalTransformer | None = None,
    cfg: Settings = settings,
) -> FastAPI:
    app = FastAPI(title="Deobfuscation Service", version=cfg.app_version)
    app.state.ledger = ledger or build_ledger(cfg)
    app.state.pipeline = JobPipeline.from_settings(
        app.state.ledger,
        transformer or ExternalTransformer.from_settings(cfg),
        cfg,
    )

    @app.get("/health")
    def health() -> dict:
        return envelope({"service": "deobf-service"}, cfg.app_version)

    @app.get("/version")
    def version() -> dict:
        return envelope({"service": "deobf-service", "version": cfg.app_version}, cfg.app_version)

    @app.post("/v1/jobs")
    async def create_job(
        pipeline: Annotated[JobPipeline, Depends(get_pipeline)],
        file: UploadFile = File(...),
        user_id: str = Form(...),
    ) -> dict:
        data = await file.read()
        filename = file.filename or ""
        try:
            result = await pipeline.submit(user_id, data, filename)
        except PipelineError as exc:
            raise HTTPException(
                status_code=_status_for(exc),
                detail={"code": exc.code, "message": str(exc)},
            ) from exc

        body = TransformResponse(
            request_id=result.request_id,
            user_id=user_id,
            source_filename=filename,
            output_filename=result.output_filename,
            output_b64=base64.b64encode(result.output_bytes).decode("ascii"),
            original_size=result.original_size,
            output_size=result.output_size,
            links=sorted(result.links),
            diagnostic_output=result.diagnostic_output,
            elapsed_sec=round(result.elapsed_sec, 3),
            charged=result.charged,
            remaining_balance=result.remaining_balance,
        )
        return envelope(body.model_dump(), cfg.app_version, latency_ms=int(result.elapsed_sec * 1000))

    @app.get("/v1/credits/{user_id}")
    def get_credits(user_id: str, ledger: Annotated[TokenLedger, Depends(get_ledger)]) -> dict:
        balance = CreditBalanceResponse(user_id=user_id, balance=ledger.get_balance(user_id))
        return envelope({"balance": balance.model_dump()}, cfg.app_version)

    @app.post("/v1/credits/{user_id}/daily")
    def claim_daily(user_id: str, ledger: Annotated[TokenLedger, Depends(get_ledger)]) -> dict:
        claimed = ledger.claim_daily(user_id)
        return envelope(
            DailyClaimResponse(user_id=user_id, claimed=claimed, balance=ledger.get_balance(user_id)).model_dump(),
            cfg.app_version,
        )

    @app.post("/v1/admin/credits/grant")
    def admin_grant_credits(
        payload: AdminGrantRequest,
        ledger: Annotated[TokenLedger, Depends(get_ledger)],
        x_admin_token: Annotated[str | None, Header()] = None,
    ) -> dict:
        _require_admin(x_admin_token, cfg)
        try:
            balance = ledger.grant(payload.user_id, payload.amount)
        except StorageError as exc:
            logger.exception("Grant to user %s failed", payload.user_id)
            raise HTTPException(status_code=503, detail="Ledger unavailable") from exc
        logger.info("Admin grant of %d to %s (%s)", payload.amount, payload.user_id, payload.note)
        return envelope({"user_id": payload.user_id, "balance": balance}, cfg.app_version)

    return app


app = create_app()
