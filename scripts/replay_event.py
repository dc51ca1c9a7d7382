#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from minutes_pipeline.errors import ApiError
from minutes_pipeline.http_client import http_request
from minutes_pipeline.security import compute_slack_signature


def main() -> int:
    parser = argparse.ArgumentParser(description="Sign a saved Slack event payload and POST it to the events endpoint.")
    parser.add_argument("event_file", help="JSON file holding the event_callback envelope")
    parser.add_argument("--url", default="http://localhost:8000/api/slack/events", help="events endpoint URL")
    parser.add_argument("--timeout", type=float, default=30.0, help="request timeout in seconds")
    args = parser.parse_args()

    secret = os.environ.get("SLACK_SIGNING_SECRET", "").strip()
    if not secret:
        print(json.dumps({"success": False, "message": "SLACK_SIGNING_SECRET is not set"}, ensure_ascii=True))
        return 2

    payload = json.loads(Path(args.event_file).read_text(encoding="utf-8"))
    # http_request serialises the payload this way; the signature must cover those exact bytes.
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    timestamp = str(int(time.time()))
    headers = {
        "Content-Type": "application/json",
        "X-Slack-Request-Timestamp": timestamp,
        "X-Slack-Signature": compute_slack_signature(signing_secret=secret, timestamp=timestamp, body=body),
    }
    try:
        raw = http_request(
            args.url,
            method="POST",
            payload=payload,
            headers=headers,
            timeout_s=args.timeout,
            upstream="events",
        )
    except ApiError as exc:
        print(json.dumps({"success": False, "code": exc.code, "message": exc.message}, ensure_ascii=True))
        return 1
    print(raw.decode("utf-8", errors="replace"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
