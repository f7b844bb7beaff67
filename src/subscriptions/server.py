"""ADAO Subscription Service.

FastAPI application exposing:
- Crypto subscription payments (process, status, cancel, gas estimate)
- Reconciliation of transfers without a recorded subscription
- The subscription webhook endpoint
"""

from typing import Any, Dict, Optional

from eth_account import Account
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from src.config import build_payment_settings, config, validate_config
from src.database import db
from src.logging_utils import RequestIdContext, get_logger, setup_logging
from src.models import (
    PaymentMode,
    PaymentRequest,
    PaymentResult,
    SubscriptionWebhook,
    isoformat_z,
    utc_now,
)
from src.subscriptions.chain import ChainClient
from src.subscriptions.gateway import LedgerSubscriptionGateway
from src.subscriptions.notifier import WebhookNotifier
from src.subscriptions.processor import PaymentProcessor
from src.subscriptions.webhooks import handle_subscription_event

SKILL_PREFIX = "/api/skills/web3-subscription"

# Validate configuration
validate_config()

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="ADAO Subscriptions",
    description="Crypto subscription payments with the ADAO token",
)

notifier = (
    WebhookNotifier(config.webhook_url, config.webhook_secret)
    if config.webhook_notifications_enabled
    else None
)
payment_processor = PaymentProcessor(
    settings=build_payment_settings(config),
    chain=ChainClient(
        rpc_url=config.base_rpc_url,
        token_address=config.adao_token_address,
        chain_id=config.chain_id,
        confirmation_timeout=config.confirmation_timeout_seconds,
    ),
    gateway=LedgerSubscriptionGateway(db, notifier),
    ledger=db,
    notifier=notifier,
)

PAYMENT_MODE = PaymentMode(config.payment_mode)
payment_signer = Account.from_key(config.signer_private_key) if PAYMENT_MODE is PaymentMode.ONCHAIN else None


def get_processor() -> PaymentProcessor:
    return payment_processor


def _pick(body: Dict[str, Any], camel: str, snake: str) -> Any:
    """camelCase wins unless it is null; otherwise fall back to snake_case."""
    value = body.get(camel)
    return value if value is not None else body.get(snake)


def normalize_payment_body(body: Dict[str, Any]) -> PaymentRequest:
    """Map a camelCase or snake_case request body to a PaymentRequest.

    Args:
        body: Parsed JSON body.

    Returns:
        The canonical payment request.
    """
    return PaymentRequest(
        user_address=_pick(body, "userAddress", "user_address"),
        plan_id=_pick(body, "planId", "plan_id"),
        billing_cycle=_pick(body, "billingCycle", "billing_period"),
        amount=body.get("amount"),
        receiver_address=_pick(body, "receiverAddress", "receiver_address"),
        signature=body.get("signature"),
        message=body.get("message"),
    )


def _failure_body(result: PaymentResult) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": False,
        "error": result.error,
        "errorKind": result.failure.kind.value,
    }
    if result.transaction_hash:
        body["transactionHash"] = result.transaction_hash
    reconciliation_id = result.failure.context.get("reconciliation_id")
    if reconciliation_id:
        body["reconciliationId"] = reconciliation_id
    return body


@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    logger.info("Initializing subscription service...")
    await db.initialize()
    logger.info(f"Subscription service initialized ({PAYMENT_MODE.value} payments)")


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    with RequestIdContext(request.headers.get("X-Request-Id")) as request_id:
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "subscriptions", "paymentMode": PAYMENT_MODE.value}


@app.post(f"{SKILL_PREFIX}/process-payment")
async def process_payment(request: Request, processor: PaymentProcessor = Depends(get_processor)):
    """Process a subscription payment.

    Accepts camelCase fields as well as the snake_case fields emitted by the
    AgentDAO SDK (user_address, plan_id, billing_period).
    """
    try:
        body = await request.json()
        logger.info(f"Received request body: {body}")
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")

        payment_request = normalize_payment_body(body)

        logger.info(
            f"Processed request data: user={payment_request.user_address}, "
            f"plan={payment_request.plan_id}, cycle={payment_request.billing_cycle}, "
            f"amount={payment_request.amount}, receiver={payment_request.receiver_address}, "
            f"has_signature={bool(payment_request.signature)}, "
            f"has_message={bool(payment_request.message)}, agent_id={body.get('agent_id')}, "
            f"sdk_subscription_id={body.get('subscription_id')}, plan_name={body.get('plan_name')}, "
            f"payment_token={body.get('payment_token')}, sdk_tx={body.get('transaction_hash')}"
        )

        result = await processor.process_payment(
            payment_request, mode=PAYMENT_MODE, signer=payment_signer
        )
        logger.info(f"Payment processor result: {result.model_dump(exclude_none=True)}")

        echoed = {
            "userAddress": payment_request.user_address,
            "planId": payment_request.plan_id,
            "billingCycle": payment_request.billing_cycle,
            "amount": payment_request.amount,
        }

        if not result.success:
            return JSONResponse({**_failure_body(result), **echoed}, status_code=400)

        details = result.payment_details
        return JSONResponse(
            {
                "success": True,
                "subscriptionId": result.subscription_id,
                "transactionHash": result.transaction_hash,
                **echoed,
                "receiverAddress": details.to_address,
                "timestamp": isoformat_z(utc_now()),
                "message": "Payment processed successfully",
                "gasUsed": result.gas_used,
                "blockNumber": result.block_number,
                "simulated": result.simulated,
                "paymentDetails": details.model_dump(by_alias=True),
            }
        )

    except Exception as e:
        logger.error(f"API error: {e}", exc_info=True)
        return JSONResponse(
            {"success": False, "error": "Internal server error", "message": str(e)},
            status_code=500,
        )


@app.get(f"{SKILL_PREFIX}/process-payment")
async def payment_status(
    userAddress: Optional[str] = None,
    processor: PaymentProcessor = Depends(get_processor),
):
    """Check the subscription status of a user."""
    if not userAddress:
        return JSONResponse(
            {"success": False, "error": "User address is required", "userAddress": userAddress},
            status_code=400,
        )

    result = await processor.check_subscription_status(userAddress)
    if result["success"]:
        return result
    return JSONResponse(result, status_code=400)


@app.post(f"{SKILL_PREFIX}/cancel")
async def cancel_subscription(request: Request, processor: PaymentProcessor = Depends(get_processor)):
    """Cancel the subscription of a user."""
    try:
        body = await request.json()
        user_address = _pick(body, "userAddress", "user_address") if isinstance(body, dict) else None
    except ValueError:
        user_address = None

    if not user_address:
        return JSONResponse(
            {"success": False, "error": "User address is required"}, status_code=400
        )

    result = await processor.cancel_subscription(user_address)
    if result["success"]:
        return result
    return JSONResponse(result, status_code=400)


@app.get(f"{SKILL_PREFIX}/estimate-gas")
async def estimate_gas(
    userAddress: Optional[str] = None,
    planId: Optional[str] = None,
    billingCycle: Optional[str] = None,
    processor: PaymentProcessor = Depends(get_processor),
):
    """Estimate the gas cost of paying for a plan."""
    if not userAddress or not planId or not billingCycle:
        return JSONResponse(
            {"success": False, "error": "userAddress, planId and billingCycle are required"},
            status_code=400,
        )

    result = await processor.estimate_gas_cost(userAddress, planId, billingCycle)
    if result["success"]:
        return result
    return JSONResponse(result, status_code=400)


@app.get(f"{SKILL_PREFIX}/plans")
async def list_plans(processor: PaymentProcessor = Depends(get_processor)):
    """List subscription plans and the payment token."""
    settings = processor.settings
    return {
        "success": True,
        "token": {
            "symbol": settings.token_symbol,
            "address": settings.token_address,
            "decimals": settings.token_decimals,
            "chainId": settings.chain_id,
        },
        "plans": [plan.model_dump(mode="json") for plan in settings.plans.values()],
    }


@app.get(f"{SKILL_PREFIX}/reconciliations")
async def list_reconciliations(
    status: Optional[str] = "pending",
    processor: PaymentProcessor = Depends(get_processor),
):
    """List transfers that still need a subscription."""
    try:
        records = await processor.ledger.list_reconciliations(None if status == "all" else status)
        return {
            "success": True,
            "count": len(records),
            "reconciliations": [record.model_dump(mode="json") for record in records],
        }
    except Exception as e:
        logger.error(f"Reconciliation listing error: {e}", exc_info=True)
        return JSONResponse(
            {"success": False, "error": "Internal server error", "message": str(e)},
            status_code=500,
        )


@app.post(f"{SKILL_PREFIX}/reconciliations/{{reconciliation_id}}/retry")
async def retry_reconciliation(
    reconciliation_id: str,
    processor: PaymentProcessor = Depends(get_processor),
):
    """Retry subscription creation for a recorded transfer."""
    try:
        result = await processor.retry_reconciliation(reconciliation_id)
    except Exception as e:
        logger.error(f"Reconciliation retry error: {e}", exc_info=True)
        return JSONResponse(
            {"success": False, "error": "Internal server error", "message": str(e)},
            status_code=500,
        )

    if not result.success:
        context = result.failure.context
        if context.get("field") == "reconciliation_id":
            status_code = 404
        elif context.get("in_progress"):
            status_code = 409
        else:
            status_code = 502
        return JSONResponse(_failure_body(result), status_code=status_code)

    return {
        "success": True,
        "reconciliationId": reconciliation_id,
        "subscriptionId": result.subscription_id,
        "transactionHash": result.transaction_hash,
    }


@app.post("/api/webhooks/subscription")
async def receive_subscription_webhook(request: Request):
    """Acknowledge a subscription webhook.

    Every parseable event is acknowledged, including unknown event types.
    """
    try:
        raw_payload = await request.body()
        body = await request.json()
        if not isinstance(body, dict):
            logger.warning(f"Webhook body is not a JSON object: {body!r}")
            body = {}
        webhook = SubscriptionWebhook.model_validate(body)

        handle_subscription_event(
            webhook,
            raw_payload=raw_payload,
            signature=request.headers.get("X-Webhook-Signature"),
            secret=config.webhook_secret,
        )

        return {
            "success": True,
            "message": "Webhook processed successfully",
            "event": webhook.event,
            "subscriptionId": webhook.subscription_id,
            "timestamp": isoformat_z(utc_now()),
        }

    except Exception as e:
        logger.error(f"Webhook processing error: {e}", exc_info=True)
        return JSONResponse(
            {"success": False, "error": "Webhook processing failed", "message": str(e)},
            status_code=500,
        )


@app.get("/api/webhooks/subscription")
async def verify_subscription_webhook(challenge: Optional[str] = None):
    """Webhook verification handshake."""
    if challenge:
        return {"success": True, "challenge": challenge, "message": "Webhook endpoint is active"}

    return {
        "success": True,
        "message": "Webhook endpoint is ready",
        "timestamp": isoformat_z(utc_now()),
    }


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting subscription service on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
