import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shopbot.conversation.orchestrator import ConversationOrchestrator, InboundMessage
from shopbot.core import config
from shopbot.core.conversation_lock import conversation_locks
from shopbot.core.database import get_db
from shopbot.core.request_context import set_request_context
from shopbot.messenger.webhook import MessengerEvent, event_id_for, parse_messenger_webhook, verify_signature
from shopbot.models.facebook_page import FacebookPage
from shopbot.models.webhook_event import WebhookEvent
from shopbot.services.conversations import get_or_create_conversation, log_customer_message

router = APIRouter()
logger = logging.getLogger(__name__)

_orchestrator = ConversationOrchestrator()


def get_orchestrator() -> ConversationOrchestrator:
    return _orchestrator


@router.get("/webhook/messenger")
async def verify_messenger_webhook(request: Request):
    verify_token = config.FACEBOOK_WEBHOOK_VERIFY_TOKEN
    if not verify_token:
        logger.error("FACEBOOK_WEBHOOK_VERIFY_TOKEN not configured")
        raise HTTPException(status_code=500, detail="Verify token not configured")

    qp = request.query_params
    mode = qp.get("hub.mode")
    token = qp.get("hub.verify_token")
    challenge = qp.get("hub.challenge")

    if mode == "subscribe" and token == verify_token:
        return PlainTextResponse(challenge or "")

    raise HTTPException(status_code=403, detail="Invalid verify token")


def _claim_event(db: Session, event_id: str, event: MessengerEvent) -> bool:
    """Records the event id; False when it was already processed."""
    if db.get(WebhookEvent, event_id) is not None:
        return False

    db.add(WebhookEvent(event_id=event_id, event_type=event.message_type, payload=event.raw))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def handle_event(db: Session, event: MessengerEvent, orchestrator: ConversationOrchestrator) -> dict:
    event_id = event_id_for(event)

    with conversation_locks.hold((event.page_id, event.sender_psid)):
        if not _claim_event(db, event_id, event):
            logger.info("Duplicate webhook event skipped", extra={"event_id": event_id})
            return {"status": "duplicate", "event_id": event_id}

        page = db.get(FacebookPage, event.page_id)
        if page is None:
            logger.warning("Webhook event for unknown page", extra={"page_id": event.page_id, "event_id": event_id})
            return {"status": "ignored", "event_id": event_id}

        conversation = get_or_create_conversation(
            db,
            workspace_id=page.workspace_id,
            page_id=event.page_id,
            customer_psid=event.sender_psid,
        )
        set_request_context(workspace_id=str(page.workspace_id), conversation_id=str(conversation.id))
        log_customer_message(
            db,
            conversation,
            text=event.text or None,
            message_type=event.message_type,
            attachments=event.attachments or None,
        )

        result = orchestrator.process_message(
            db,
            InboundMessage(
                page_id=event.page_id,
                customer_psid=event.sender_psid,
                text=None if event.is_postback else event.text,
                image_url=event.image_url,
                postback_payload=event.postback_payload,
                event_id=event_id,
            ),
        )

    if result is None:
        return {"status": "no_reply", "event_id": event_id}
    return {
        "status": "processed",
        "event_id": event_id,
        "action": result.action,
        "state": result.state.value,
    }


@router.post("/webhook/messenger")
async def messenger_webhook(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    app_secret = config.FACEBOOK_APP_SECRET
    if not app_secret:
        logger.error("FACEBOOK_APP_SECRET not configured")
        raise HTTPException(status_code=500, detail="App secret not configured")

    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get("X-Hub-Signature-256"), app_secret):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    events = parse_messenger_webhook(payload) if isinstance(payload, dict) else []
    if not events:
        return {"status": "ignored"}

    request.state.page_ids = sorted({event.page_id for event in events})
    request.state.event_count = len(events)
    results = []
    for event in events:
        try:
            results.append(await run_in_threadpool(handle_event, db, event, orchestrator))
        except Exception:
            # the platform redelivers on non-2xx, so failures are only logged
            db.rollback()
            logger.exception("Webhook event processing failed", extra={"page_id": event.page_id})
            results.append({"status": "error"})

    return {"status": "ok", "events": results}
