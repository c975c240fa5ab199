#!/usr/bin/env python3
"""
End-to-end smoke test against a running API (uvicorn mailqueue.main:app) with
Postgres and RabbitMQ behind it. Start `mailqueue-worker` to see the jobs sent.
"""
import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone

import httpx

API_URL = os.getenv("API_URL", "http://localhost:8000")
API_KEY = os.getenv("API_KEY")


async def verify():
    headers = {"X-API-Key": API_KEY} if API_KEY else {}

    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0, headers=headers) as client:
        # 0. Wait for API Readiness
        print("Waiting for API to be ready...")
        for _ in range(30):
            try:
                resp = await client.get("/health")
                if resp.status_code == 200:
                    print("API is ready!")
                    break
            except httpx.HTTPError:
                pass
            await asyncio.sleep(1)
        else:
            print("API failed to become ready.")
            return

        # 1. Quota snapshot
        stats = (await client.get("/api/v1/email/stats")).json()["data"]
        print(f"1. Quota: {stats['current_count']}/{stats['daily_limit']} (paused={stats['is_paused']})")

        # 2. Single send
        run = uuid.uuid4().hex[:8]
        resp = await client.post("/api/v1/email/send", json={
            "to": f"e2e-{run}@example.com",
            "subject": f"E2E single {run}",
            "html": "<h1>Hello</h1><p>End-to-end check.</p>",
            "email_type": "test",
        })
        print(f"2. Send: HTTP {resp.status_code} {resp.json()}")

        # 3. Bulk send
        resp = await client.post("/api/v1/email/bulk", json={
            "recipients": [f"e2e-{run}-{i}@example.com" for i in range(3)],
            "subject": f"E2E bulk {run}",
            "text": "Line one\nLine two",
            "email_type": "test",
        })
        body = resp.json()
        print(f"3. Bulk: HTTP {resp.status_code} {body.get('message')}")
        data = body.get("data", {})
        if data and data["sent"] + data["scheduled"] + data["failed"] != data["total"]:
            print("   FAILURE: bulk result does not account for every recipient")

        # 4. Persisted schedule, two minutes out
        when = datetime.now(timezone.utc) + timedelta(minutes=2)
        resp = await client.post("/api/v1/scheduled-emails", json={
            "to": [f"e2e-{run}-later@example.com"],
            "subject": f"E2E scheduled {run}",
            "html": "<p>Later</p>",
            "scheduled_time": when.isoformat(),
        })
        resp.raise_for_status()
        record = resp.json()[0]
        print(f"4. Scheduled email {record['id']} pending for {record['scheduled_time']}")

        # 5. Broker depth
        resp = await client.get("/api/v1/email/queue")
        print(f"5. Queues: HTTP {resp.status_code} {resp.json()}")

    print("E2E smoke run finished.")


if __name__ == "__main__":
    asyncio.run(verify())
