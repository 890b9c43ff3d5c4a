"""Payment Request Example.

Creates a payment request as the creator agent and, when a transaction hash
is given, submits it for verification as the payer agent.

Usage:
    python examples/pay_request.py                 # create a request
    python examples/pay_request.py REQ-XXXX 0x...  # verify a payment
"""

import asyncio
import os
import sys

from dotenv import load_dotenv

from payagent_sdk.client import PayAgentClient
from payagent_sdk.types import PayAgentAPIError

load_dotenv()

PAYAGENT_URL = os.getenv("PAYAGENT_URL", "http://localhost:4020")
API_KEY_ID = os.getenv("PAYAGENT_API_KEY_ID")
API_SECRET = os.getenv("PAYAGENT_API_SECRET")
RECEIVER = os.getenv("RECEIVER_WALLET", "0x0000000000000000000000000000000000000000")


async def create_request(client: PayAgentClient):
    quote = await client.quote_fee(network="sepolia", token="USDC")
    print(f"💸 Current fee quote: {quote['fee_total']} {quote['fee_token']}")

    request = await client.payments.create("5", RECEIVER, token="USDC", network="sepolia")
    print(f"✅ Created payment request {request['id']}")
    print(f"   Pay {request['amount']} {request['token']} to {request['receiver']} on {request['network']}")

    instructions = await client.payments.instructions(request["id"])
    for transfer in instructions["transfers"]:
        print(f"   - {transfer['description']}: {transfer['amount']} {transfer['token']} to {transfer['to']}")


async def verify_payment(client: PayAgentClient, request_id: str, tx_hash: str):
    print(f"🔎 Verifying {tx_hash} for {request_id}...")
    result = await client.payments.verify(request_id, tx_hash)

    if result.success:
        print(f"✅ Paid! Block {result.verification['block_number']}")
        if result.fee:
            print(f"   Fee: {result.fee['fee_total']} {result.fee['fee_token']}")
    else:
        print(f"⚠️ Verification failed: {result.reason or result.error}")
        if result.details:
            print(f"   Details: {result.details}")


async def main():
    if not API_KEY_ID or not API_SECRET:
        print("❌ Error: PAYAGENT_API_KEY_ID and PAYAGENT_API_SECRET must be set")
        print("   Issue credentials with: python scripts/issue_credentials.py <party_id>")
        return

    async with PayAgentClient(PAYAGENT_URL, api_key_id=API_KEY_ID, api_secret=API_SECRET) as client:
        try:
            if len(sys.argv) >= 3:
                await verify_payment(client, sys.argv[1], sys.argv[2])
            else:
                await create_request(client)
        except PayAgentAPIError as e:
            print(f"❌ Error: {e}")


if __name__ == "__main__":
    asyncio.run(main())
