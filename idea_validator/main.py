from __future__ import annotations

import hmac
import logging
import os
from pathlib import Path

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .ai_providers import (
    AnalysisError,
    Attachment,
    ConfigurationError,
    ProviderConfig,
    ProviderTimeoutError,
)
from .idea_analysis import IdeaAnalysisService
from .mailer import ResendMailer
from .user_store import InsufficientCreditsError, UserNotFoundError, UserStore, UserStoreError

logging.basicConfig(
    level=os.getenv("IDEA_VALIDATOR_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("IDEA_VALIDATOR_DATA_DIR") or BASE_DIR / "data")
BILLING_SECRET = os.getenv("IDEA_VALIDATOR_BILLING_SECRET", "").strip()

analysis_service = IdeaAnalysisService.from_env()
user_store = UserStore(root=DATA_DIR)
mailer = ResendMailer.from_env()

app = FastAPI(title="Idea Validator Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class AttachmentBody(BaseModel):
    mimeType: str
    data: str


class CustomModelBody(BaseModel):
    provider: str = ""
    model: str = ""
    apiKey: str = ""


class AnalyzeBody(BaseModel):
    idea: str | None = None
    attachment: AttachmentBody | None = None
    email: str | None = None
    customModel: CustomModelBody | None = None


class ChatContextBody(BaseModel):
    originalIdea: str = ""
    report: dict = Field(default_factory=dict)


class ChatBody(BaseModel):
    message: str
    context: ChatContextBody = Field(default_factory=ChatContextBody)
    customModel: CustomModelBody | None = None


class LoginBody(BaseModel):
    email: str
    name: str = ""


class UpdateProfileBody(BaseModel):
    name: str | None = None
    avatarUrl: str | None = None
    preferences: dict | None = None


class SaveReportBody(BaseModel):
    email: str
    report: dict


class WaitlistBody(BaseModel):
    email: str
    source: str = "landing"


class PaymentEventBody(BaseModel):
    customerEmail: str
    planType: str = "single"
    paymentStatus: str


def _provider_config(body: CustomModelBody | None) -> ProviderConfig | None:
    if body is None:
        return None
    return ProviderConfig(provider=body.provider, model=body.model, api_key=body.apiKey)


def _analysis_http_error(exc: AnalysisError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ProviderTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def _store_http_error(exc: UserStoreError) -> HTTPException:
    if isinstance(exc, UserNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/providers")
async def list_providers():
    return analysis_service.list_providers()


@app.post("/api/analyze")
async def analyze_idea(body: AnalyzeBody):
    if body.email:
        try:
            user_store.ensure_can_analyze(body.email)
        except UserStoreError as exc:
            raise _store_http_error(exc)

    attachment = None
    if body.attachment is not None:
        attachment = Attachment(mime_type=body.attachment.mimeType, data=body.attachment.data)

    try:
        outcome = await analysis_service.run_analysis(
            idea=body.idea,
            attachment=attachment,
            provider_config=_provider_config(body.customModel),
        )
    except AnalysisError as exc:
        raise _analysis_http_error(exc)

    if body.email:
        try:
            user_store.record_analysis(body.email, outcome.report)
        except UserStoreError as exc:
            raise _store_http_error(exc)

    logger.info("Analysis %s completed via %s", outcome.report.id, outcome.tier)
    return outcome.report.to_dict()


@app.post("/api/chat")
async def chat_about_idea(body: ChatBody):
    try:
        text = await analysis_service.chat(
            body.message,
            context=body.context.model_dump(),
            provider_config=_provider_config(body.customModel),
        )
    except AnalysisError as exc:
        raise _analysis_http_error(exc)
    return {"text": text}


@app.post("/api/users/login")
async def login(body: LoginBody):
    try:
        return user_store.upsert(body.email, name=body.name).to_dict()
    except UserStoreError as exc:
        raise _store_http_error(exc)


@app.put("/api/users/{email}")
async def update_user(email: str, body: UpdateProfileBody):
    fields = body.model_dump(exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return user_store.update_profile(email, fields).to_dict()
    except UserStoreError as exc:
        raise _store_http_error(exc)


@app.delete("/api/users/{email}")
async def delete_user(email: str):
    try:
        user_store.delete(email)
    except UserStoreError as exc:
        raise _store_http_error(exc)
    return {"success": True}


@app.post("/api/users/{email}/deduct-credit")
async def deduct_credit(email: str):
    try:
        user = user_store.deduct_credit(email)
    except UserStoreError as exc:
        raise _store_http_error(exc)
    return {"credits": user.credits}


@app.post("/api/reports")
async def save_report(body: SaveReportBody):
    try:
        return user_store.append_report(body.email, body.report)
    except UserStoreError as exc:
        raise _store_http_error(exc)


@app.get("/api/reports/{email}")
async def list_reports(email: str):
    try:
        return user_store.list_reports(email)
    except UserStoreError as exc:
        raise _store_http_error(exc)


@app.post("/api/waitlist")
async def join_waitlist(body: WaitlistBody, background_tasks: BackgroundTasks):
    if "@" not in body.email:
        raise HTTPException(status_code=400, detail="Invalid email address.")
    try:
        entry = user_store.join_waitlist(body.email, body.source)
    except UserStoreError as exc:
        raise _store_http_error(exc)

    background_tasks.add_task(mailer.send_waitlist_confirmation, entry["email"])
    return {"success": True, "id": entry["id"]}


@app.post("/api/billing/events")
async def apply_payment_event(
    body: PaymentEventBody,
    x_billing_secret: str | None = Header(default=None),
):
    if not BILLING_SECRET:
        raise HTTPException(status_code=404, detail="Billing events are not enabled")
    if not hmac.compare_digest((x_billing_secret or "").encode("utf-8"), BILLING_SECRET.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid billing secret")

    try:
        user = user_store.apply_payment_event(
            customer_email=body.customerEmail,
            plan_type=body.planType,
            payment_status=body.paymentStatus,
        )
    except UserStoreError as exc:
        raise _store_http_error(exc)

    if user is None:
        return {"received": True, "applied": False}
    logger.info("Applied %s plan for %s", body.planType, user.email)
    return {"received": True, "applied": True, "credits": user.credits, "isPro": user.is_pro}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("idea_validator.main:app", host="0.0.0.0", port=8000, reload=True)
