#!/usr/bin/env python3
"""Synthetic probe for the order service.

Places an order, walks it through payment, fulfillment, shipment and
delivery via the lifecycle events API, then checks the status history
chain and (optionally) that the transition counters moved.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import httpx

_METRIC_LINE = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>[^}]*)\})?\s+(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)$"
)
_LABEL = re.compile(r'(?P<key>[a-zA-Z_][a-zA-Z0-9_]*)="(?P<value>(?:[^"\\]|\\.)*)"')

LIFECYCLE = (
    ("payment_succeeded", {"transactionId": None}),
    ("fulfillment_started", {}),
    ("shipped", {"trackingNumber": None}),
    ("delivered", {}),
)
EXPECTED_CHAIN = ["pending", "paid", "processing", "shipped", "delivered"]


@dataclass(slots=True)
class MetricSample:
    name: str
    labels: Mapping[str, str]
    value: float


class ProbeError(RuntimeError):
    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = dict(context or {})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synthetic probe for order service")
    parser.add_argument(
        "--base-url",
        default=os.getenv("ORDER_SERVICE_BASE_URL", "http://127.0.0.1:8000"),
        help="Base URL for the order service (default: %(default)s or ORDER_SERVICE_BASE_URL)",
    )
    parser.add_argument(
        "--metrics-path",
        default=os.getenv("ORDER_METRICS_PATH", "/metrics"),
        help="Path to Prometheus metrics endpoint (default: %(default)s or ORDER_METRICS_PATH)",
    )
    parser.add_argument(
        "--skip-metrics",
        action="store_true",
        help="Skip verification of Prometheus metric deltas",
    )
    parser.add_argument(
        "--user-id",
        type=int,
        default=int(os.getenv("ORDER_PROBE_USER_ID", "1")),
        help="User placing the synthetic order (default: %(default)s or ORDER_PROBE_USER_ID)",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=5.0,
        help="HTTP client timeout in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--max-transition-ms",
        type=float,
        default=float(os.getenv("ORDER_PROBE_MAX_TRANSITION_MS", "1000")),
        help="Maximum allowed latency per lifecycle event (default: %(default)s or ORDER_PROBE_MAX_TRANSITION_MS)",
    )
    return parser.parse_args()


def parse_metrics(text: str) -> List[MetricSample]:
    samples: List[MetricSample] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _METRIC_LINE.match(stripped)
        if not match:
            continue
        labels = {m.group("key"): m.group("value") for m in _LABEL.finditer(match.group("labels") or "")}
        samples.append(MetricSample(name=match.group("name"), labels=labels, value=float(match.group("value"))))
    return samples


def find_metric_value(samples: Sequence[MetricSample], name: str, *, labels: Mapping[str, str]) -> float:
    return sum(
        sample.value
        for sample in samples
        if sample.name == name and all(sample.labels.get(key) == value for key, value in labels.items())
    )


async def fetch_metrics(client: httpx.AsyncClient, path: str) -> List[MetricSample]:
    response = await client.get(path)
    response.raise_for_status()
    return parse_metrics(response.text)


def build_order(user_id: int) -> Dict[str, Any]:
    identifier = uuid.uuid4().hex[:8]
    return {
        "userId": user_id,
        "items": [
            {"productId": 1, "productName": f"Synthetic item {identifier}", "quantity": 1, "unitPrice": "1.00"},
        ],
        "shippingCost": "0.00",
        "taxAmount": "0.00",
        "paymentMethod": "synthetic",
        "notes": f"synthetic probe {identifier}",
        "shippingAddress": {
            "recipientName": "Synthetic Probe",
            "phone": "000-0000",
            "addressLine1": "1 Probe Way",
            "city": "Probe",
            "state": "PR",
            "postalCode": "00000",
        },
    }


async def _post_event(
    client: httpx.AsyncClient,
    order_id: str,
    etag: str,
    event: str,
    fields: Mapping[str, Any],
) -> tuple[httpx.Response, float]:
    body = {"event": event, "note": "synthetic probe"}
    for key, value in fields.items():
        body[key] = value if value is not None else f"SYN-{uuid.uuid4().hex[:10]}"
    start = time.monotonic()
    response = await client.post(f"/orders/{order_id}/events", json=body, headers={"If-Match": etag})
    duration = (time.monotonic() - start) * 1000.0
    if response.status_code != 200:
        raise ProbeError(
            f"Lifecycle event {event} failed",
            context={"status_code": response.status_code, "body": response.text, "order_id": order_id},
        )
    return response, duration


async def run_probe(args: argparse.Namespace) -> Dict[str, Any]:
    timeout = httpx.Timeout(args.request_timeout)
    async with httpx.AsyncClient(base_url=args.base_url, timeout=timeout) as client:
        metrics_before: Sequence[MetricSample] = ()
        if not args.skip_metrics:
            metrics_before = await fetch_metrics(client, args.metrics_path)

        response = await client.post("/orders", json=build_order(args.user_id))
        if response.status_code != 201:
            raise ProbeError(
                "Failed to create order",
                context={"status_code": response.status_code, "body": response.text},
            )
        order_id = response.json()["id"]
        etag = response.headers["ETag"]

        durations: Dict[str, float] = {}
        for event, fields in LIFECYCLE:
            response, durations[event] = await _post_event(client, order_id, etag, event, fields)
            etag = response.headers["ETag"]
            if durations[event] > args.max_transition_ms:
                raise ProbeError(
                    "Lifecycle event latency exceeded threshold",
                    context={"event": event, "ms": round(durations[event], 2), "threshold_ms": args.max_transition_ms},
                )

        history = (await client.get(f"/orders/{order_id}/history")).json()
        chain = [entry["toStatus"] for entry in history]
        if chain != EXPECTED_CHAIN:
            raise ProbeError("Status history does not match lifecycle", context={"order_id": order_id, "chain": chain})
        for previous, current in zip(history, history[1:]):
            if current["fromStatus"] != previous["toStatus"]:
                raise ProbeError("Status history chain is broken", context={"order_id": order_id, "entry": current})

        deltas: List[Dict[str, Any]] = []
        if not args.skip_metrics:
            metrics_after = await fetch_metrics(client, args.metrics_path)
            for event, _ in LIFECYCLE:
                labels = {"event": event}
                before = find_metric_value(metrics_before, "order_transitions_total", labels=labels)
                after = find_metric_value(metrics_after, "order_transitions_total", labels=labels)
                deltas.append({"event": event, "before": before, "after": after, "delta": after - before})
                if after - before < 1:
                    raise ProbeError("order_transitions_total did not increment", context={"event": event})

        return {
            "status": "ok",
            "orderId": order_id,
            "finalEtag": etag,
            "durationsMs": {event: round(ms, 2) for event, ms in durations.items()},
            "metrics": deltas,
        }


async def main_async() -> int:
    args = parse_args()
    try:
        result = await run_probe(args)
    except ProbeError as exc:
        print(json.dumps({"status": "error", "message": str(exc), "context": exc.context}, indent=2, sort_keys=True))
        return 1
    except httpx.HTTPError as exc:
        payload = {"status": "error", "message": str(exc), "context": {"exc_type": exc.__class__.__name__}}
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 1
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
