# Import all models so SQLAlchemy metadata is fully populated on startup.
from formflow.db.models.user import UserRow
from formflow.db.models.submission import SubmissionRow
from formflow.db.models.workflow import WorkflowRow
from formflow.db.models.permission import PermissionRow


__all__ = [
    "UserRow",
    "SubmissionRow",
    "WorkflowRow",
    "PermissionRow",
]
