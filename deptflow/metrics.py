"""Prometheus metrics for deptflow."""

from prometheus_client import Counter

# action: submit|approve|request_changes|complete_step|configure_timeline
# outcome: success|rejected|conflict|error
workflow_transitions_total = Counter(
    "deptflow_workflow_transitions_total",
    "Workflow transitions attempted",
    ["action", "outcome"],
)

notifications_created_total = Counter(
    "deptflow_notifications_created_total",
    "Notifications written to user inboxes",
    ["type"],
)
