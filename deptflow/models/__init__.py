from deptflow.models.directory import (  # noqa: F401
    Department,
    User,
    UserRole,
    user_departments,
)
from deptflow.models.approval import (  # noqa: F401
    OPEN_STEP_STATUSES,
    Document,
    DocumentPriority,
    DocumentStatus,
    DocumentVersion,
    Notification,
    WorkflowInstance,
    WorkflowInstanceStatus,
    WorkflowStep,
    WorkflowStepStatus,
    document_departments,
)
