"""
turnstile/utils/metrics.py

Prometheus metrics definitions for Turnstile.

Design Decisions:
- Metrics are module-level singletons so they can be imported anywhere
  without double-registration.
- Label cardinality is kept low: tier and outcome only, never the
  client IP.
- The fail-open counter separates "disabled" from "store degraded".
  Both look identical to a client (-1/-1 quota) so this is the only
  place an operator can tell them apart.
- prometheus-fastapi-instrumentator covers HTTP-level metrics; these
  are rate-limit specific.
"""

from __future__ import annotations

from prometheus_client import Counter

rate_limit_checks_total = Counter(
    name="turnstile_rate_limit_checks_total",
    documentation="Rate limit checks evaluated, by tier and outcome",
    labelnames=["tier", "outcome"],
)

rate_limit_rejections_total = Counter(
    name="turnstile_rate_limit_rejections_total",
    documentation="Requests answered with 429, by enforcement point",
    labelnames=["enforcement"],
)

rate_limit_fail_open_total = Counter(
    name="turnstile_rate_limit_fail_open_total",
    documentation="Checks that admitted a request without enforcing a quota",
    labelnames=["reason"],
)

ttl_arm_failures_total = Counter(
    name="turnstile_ttl_arm_failures_total",
    documentation="Counter keys whose window expiry could not be set",
)
