"""
Talk to My Lawyer - Payment Webhooks Router

Signed subscription events from the payment processor. The signature is
checked against the raw body before anything is parsed or stored.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from .. import config
from ..database import get_db
from ..errors import WebhookVerificationError
from ..services.billing import BillingReconciler, SIGNATURE_HEADER, verify_signature
from ..services.realtime import dispatch_changes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment")
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    try:
        verify_signature(
            body,
            request.headers.get(SIGNATURE_HEADER),
            config.PAYMENT_WEBHOOK_SECRET,
            tolerance=config.WEBHOOK_TOLERANCE_SECONDS,
        )
    except WebhookVerificationError as e:
        logger.warning("Rejected payment webhook with bad signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    outcome = BillingReconciler(db).handle_event(event)
    await dispatch_changes(db)
    return {"received": True, **outcome}
