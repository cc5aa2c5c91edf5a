#!/usr/bin/env python3
"""
Send signed sample analytics webhooks to the ingestion API.

Usage:
    # Send 10 query/response pairs
    WEBHOOK_SECRET=... python scripts/send_test_webhooks.py --count 10

    # One pair every 5 seconds to a custom source
    WEBHOOK_SECRET=... python scripts/send_test_webhooks.py --source cv-app --interval 5
"""

import argparse
import hashlib
import hmac
import json
import os
import random
import sys
import time
import uuid

import requests


def get_api_url():
    """Get API URL from environment variables."""
    host = os.environ.get("API_HOST", "localhost")
    port = int(os.environ.get("API_PORT", "8000"))
    return f"http://{host}:{port}"


def sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sample_events(request_id: str):
    """A query and its response, shaped like the CV assistant's analytics events."""
    now_ms = int(time.time() * 1000)
    match_type = random.choice(["full", "partial", "none"])
    query = {
        "eventType": "query",
        "requestId": request_id,
        "timestamp": now_ms,
        "query": random.choice(["kubernetes experience?", "led a platform team?", "rust in production?"]),
    }
    response = {
        "eventType": "response",
        "requestId": request_id,
        "timestamp": now_ms + random.randint(200, 2000),
        "matchType": match_type,
        "matchScore": {"full": random.randint(80, 100), "partial": random.randint(40, 79), "none": random.randint(0, 39)}[match_type],
        "reasoning": "sample",
        "performance": {"totalTime": random.randint(300, 3000), "cacheHit": random.random() < 0.3},
    }
    return [query, response]


def send_webhook(event: dict, source: str, secret: str, api_url: str) -> bool:
    body = json.dumps(event).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Hub-Signature-256": sign(body, secret),
        "X-GitHub-Delivery": str(uuid.uuid4()),
    }

    try:
        response = requests.post(f"{api_url}/webhooks/{source}", data=body, headers=headers, timeout=30)
        if response.status_code == 200:
            print(f"Accepted: {response.json()['event_key']}")
            return True
        print(f"Failed: {response.status_code} - {response.text[:200]}")
        return False

    except requests.exceptions.RequestException as e:
        print(f"Request failed: {e}")
        return False


def main():
    parser = argparse.ArgumentParser(description="Send signed sample webhooks to the ingestion API")
    parser.add_argument("--count", type=int, default=5, help="Number of query/response pairs to send")
    parser.add_argument("--source", default="cv-assistant", help="Webhook source (partition)")
    parser.add_argument("--interval", type=float, default=0, help="Seconds to wait between pairs")
    args = parser.parse_args()

    secret = os.environ.get("WEBHOOK_SECRET")
    if not secret:
        print("WEBHOOK_SECRET must be set")
        sys.exit(1)

    api_url = get_api_url()
    sent = 0
    for i in range(args.count):
        for event in sample_events(f"req-{uuid.uuid4().hex[:12]}"):
            sent += send_webhook(event, args.source, secret, api_url)
        if args.interval and i < args.count - 1:
            time.sleep(args.interval)

    print(f"Sent {sent} of {args.count * 2} webhooks")


if __name__ == "__main__":
    main()
