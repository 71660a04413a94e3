"""Application metrics using the Prometheus client library.

One inventory of everything the service measures.  Modules import the
metric they own and increment/observe it at the point of action.

WHAT WE MEASURE
----------------
HTTP traffic (populated by MetricsMiddleware):
  http_requests_total, http_request_duration_seconds

Progress core:
  progress_mutations_total{operation}
      One increment per store mutation call.  rate() by operation shows
      how learners actually use the product (accesses vs completions).

  certificates_issued_total
      Should track course completions one-for-one.  A divergence means
      the at-most-one-certificate guard is firing more than expected.

  readiness_score
      Histogram of computed scores.  The buckets line up with the status
      cut-offs (40 / 70) so the At Risk share can be read straight off
      the bucket counts.

Degradation signals (the core never raises, so these are how you see it
failing):
  progress_state_loads_total{result}     ok | missing | corrupt | error
  dashboard_fetches_total{result}        ok | error
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# ---------------------------------------------------------------------------
# Progress core
# ---------------------------------------------------------------------------

PROGRESS_MUTATIONS = Counter(
    "progress_mutations_total",
    "Progress store mutation calls by operation",
    ["operation"],
)

CERTIFICATES_ISSUED = Counter(
    "certificates_issued_total",
    "Certificates created on first course completion",
)

READINESS_SCORE = Histogram(
    "readiness_score",
    "Computed learner readiness scores",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)

PROGRESS_STATE_LOADS = Counter(
    "progress_state_loads_total",
    "Persisted learner state loads by result",
    ["result"],  # ok | missing | corrupt | error
)

DASHBOARD_FETCHES = Counter(
    "dashboard_fetches_total",
    "Backend learner-dashboard aggregate fetches by result",
    ["result"],  # ok | error
)
