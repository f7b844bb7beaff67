"""Quick debug script to test the subscription payment flow.

Signs a message with a throwaway key (or TEST_PRIVATE_KEY) and posts a basic
monthly payment to a running service.
"""
import asyncio
import os

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from src.config import config
from src.subscriptions.plans import plan_price

SKILL_URL = f"{config.app_url.rstrip('/')}/api/skills/web3-subscription"


async def test_payment(plan_id: str = "basic", billing_cycle: str = "monthly"):
    """Send one payment and query the resulting subscription."""
    print("🔍 Testing subscription payment flow...\n")

    private_key = os.getenv("TEST_PRIVATE_KEY")
    account = Account.from_key(private_key) if private_key else Account.create()
    amount = plan_price(plan_id, billing_cycle)
    message = f"Subscribe {account.address} to {plan_id} ({billing_cycle})"
    signature = account.sign_message(encode_defunct(text=message)).signature.hex()

    print(f"Payer: {account.address}")
    print(f"Service: {SKILL_URL}")
    print(f"Plan: {plan_id}/{billing_cycle} for {amount:g} {config.adao_token_symbol}\n")

    async with httpx.AsyncClient(timeout=config.confirmation_timeout_seconds + 10) as http:
        print("📡 Posting payment...\n")
        response = await http.post(
            f"{SKILL_URL}/process-payment",
            json={
                "userAddress": account.address,
                "planId": plan_id,
                "billingCycle": billing_cycle,
                "amount": amount,
                "message": message,
                "signature": signature,
            },
        )

        print(f"Status: {response.status_code}")
        print(f"Request ID: {response.headers.get('X-Request-Id')}\n")

        if response.status_code == 200:
            data = response.json()
            print("✅ Payment succeeded!")
            print(f"Subscription: {data['subscriptionId']}")
            print(f"Transaction: {data['transactionHash']} (simulated={data['simulated']})\n")

            status = await http.get(
                f"{SKILL_URL}/process-payment", params={"userAddress": account.address}
            )
            print(f"Subscription status: {status.json().get('status')}")
        else:
            print(f"❌ Payment failed: {response.status_code}")
            print(f"Response: {response.text}")


if __name__ == "__main__":
    asyncio.run(test_payment())
