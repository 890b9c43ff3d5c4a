"""Webhook Receiver Example.

A minimal FastAPI endpoint that accepts PayAgent webhooks and checks their
signature before trusting the payload.

Usage:
    WEBHOOK_SECRET=whsec_... uvicorn examples.webhook_receiver:app --port 9000

Register ``http://localhost:9000/payagent`` as a webhook with
WEBHOOK_ALLOW_PRIVATE_URLS=true on the PayAgent service for local testing.
"""

import json
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request

from payagent_sdk.utils import verify_webhook_signature

load_dotenv()

WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")

app = FastAPI(title="PayAgent webhook receiver")


@app.post("/payagent")
async def receive(
    request: Request,
    x_signature: str = Header(None),
    x_event_type: str = Header(None),
):
    body = await request.body()
    if not verify_webhook_signature(body, x_signature, WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = json.loads(body)
    payment = event.get("payment", {})
    print(f"📬 {x_event_type}: {payment.get('id')} is {payment.get('status')}")
    if event.get("fee"):
        print(f"   Fee: {event['fee']['fee_total']} {event['fee']['fee_token']}")

    return {"received": True}
