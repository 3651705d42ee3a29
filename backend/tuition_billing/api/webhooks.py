"""Stripe webhook API routes (one endpoint per program's Stripe account)"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from tuition_billing.core.config import Program, WEBHOOK_SIGNATURE_HEADER
from tuition_billing.db.session import get_db
from tuition_billing.services.stripe_service import StripeAccount
from tuition_billing.services.webhook_service import process_webhook

router = APIRouter(prefix="/api/webhook", tags=["webhooks"])
logger = logging.getLogger(__name__)


def get_stripe_accounts(request: Request) -> Dict[Program, StripeAccount]:
    """Per-program Stripe accounts built at startup"""
    return request.app.state.stripe_accounts


async def _handle(program: Program, request: Request, accounts: Dict[Program, StripeAccount], db: Session):
    # Read body as raw bytes (critical for signature verification)
    payload = await request.body()
    sig_header = request.headers.get(WEBHOOK_SIGNATURE_HEADER)

    response = process_webhook(payload, sig_header, accounts[program], db)
    return JSONResponse(status_code=response.status_code, content=response.body)


@router.post("/dugsi")
async def dugsi_webhook(
    request: Request,
    accounts: Dict[Program, StripeAccount] = Depends(get_stripe_accounts),
    db: Session = Depends(get_db)
):
    """Handle events from the Dugsi Stripe account"""
    return await _handle(Program.DUGSI, request, accounts, db)


@router.post("/mahad")
async def mahad_webhook(
    request: Request,
    accounts: Dict[Program, StripeAccount] = Depends(get_stripe_accounts),
    db: Session = Depends(get_db)
):
    """Handle events from the Mahad Stripe account"""
    return await _handle(Program.MAHAD, request, accounts, db)
