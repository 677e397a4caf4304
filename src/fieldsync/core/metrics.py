"""
Prometheus metrics for allocation and synchronization monitoring.

This module defines all metrics for the sync core including:
- Allocation operations (by operation and outcome)
- Transactional writes (commits, rollbacks, durations)
- Sync queue (depth, delivery attempts, abandonments)
- Conflicts (detected, resolved)

Usage:
    from fieldsync.core.metrics import track_allocation, track_transaction

    track_allocation(operation="allocate", outcome="success")
"""

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# Allocation Metrics
# ==============================================================================

allocation_operations_total = Counter(
    'fieldsync_allocation_operations_total',
    'Allocation engine operations by outcome',
    ['operation', 'outcome']
)

status_transitions_total = Counter(
    'fieldsync_status_transitions_total',
    'Equipment status transitions applied',
    ['from_status', 'to_status']
)

# ==============================================================================
# Transactional Writer Metrics
# ==============================================================================

transactions_total = Counter(
    'fieldsync_transactions_total',
    'Transactional writer calls by outcome',
    ['outcome']
)

transaction_duration_seconds = Histogram(
    'fieldsync_transaction_duration_seconds',
    'Time spent applying a transaction',
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))
)

compensating_rollbacks_total = Counter(
    'fieldsync_compensating_rollbacks_total',
    'Compensating rollbacks by outcome',
    ['outcome']
)

# ==============================================================================
# Sync Queue Metrics
# ==============================================================================

sync_queue_depth = Gauge(
    'fieldsync_sync_queue_depth',
    'Operations waiting in the sync queue',
    ['state']
)

sync_delivery_attempts_total = Counter(
    'fieldsync_sync_delivery_attempts_total',
    'Queued operation delivery attempts by outcome',
    ['outcome']
)

# ==============================================================================
# Conflict Metrics
# ==============================================================================

conflicts_total = Counter(
    'fieldsync_conflicts_total',
    'Conflicts detected and resolved',
    ['event', 'kind']
)


def track_allocation(operation: str, outcome: str):
    """Track an allocation engine operation."""
    allocation_operations_total.labels(operation=operation, outcome=outcome).inc()


def track_status_transition(from_status: str, to_status: str):
    """Track a status transition."""
    status_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def track_transaction(outcome: str, duration_seconds: float):
    """Track a transactional writer call.

    Args:
        outcome: committed, rolled_back, unavailable or failed
        duration_seconds: Time taken
    """
    transactions_total.labels(outcome=outcome).inc()
    transaction_duration_seconds.observe(duration_seconds)


def track_compensation(success: bool):
    """Track a compensating rollback."""
    compensating_rollbacks_total.labels(outcome="success" if success else "failure").inc()


def track_queue_depth(pending: int, blocked: int, abandoned: int):
    """Publish the current queue depth by state."""
    sync_queue_depth.labels(state="pending").set(pending)
    sync_queue_depth.labels(state="blocked").set(blocked)
    sync_queue_depth.labels(state="abandoned").set(abandoned)


def track_delivery_attempt(outcome: str):
    """Track a sync queue delivery attempt (delivered, retry, blocked, abandoned)."""
    sync_delivery_attempts_total.labels(outcome=outcome).inc()


def track_conflict(event: str, kind: str):
    """Track a conflict lifecycle event (detected or resolved)."""
    conflicts_total.labels(event=event, kind=kind).inc()
